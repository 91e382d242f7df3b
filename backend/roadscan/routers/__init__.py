# backend/roadscan/routers/__init__.py

import logging

logger = logging.getLogger(__name__)
logger.debug("roadscan.routers package initialized.")
