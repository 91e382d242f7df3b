# backend/roadscan/__init__.py
# Marks the 'roadscan' directory as a Python package.
import logging

logger = logging.getLogger(__name__)
logger.debug("roadscan package initialized.")
