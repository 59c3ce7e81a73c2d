# HTTP layer: thin callers of certchain.core
from .routes import router, certchain_error_handler

__all__ = ["router", "certchain_error_handler"]
