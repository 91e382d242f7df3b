# backend/roadscan/services/exceptions.py

class PavementPipelineError(Exception):
    """Base exception for pavement pipeline errors."""
    pass

class UnsupportedModeError(PavementPipelineError):
    """Raised when a load is requested with an unknown mode."""
    def __init__(self, mode: str):
        self.mode = mode
        super().__init__(f"Unsupported load mode '{mode}'. Expected 'data' or 'tracks'.")
