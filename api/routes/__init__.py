# Routes module
from .downloads import router as downloads_router
from .scheduler import router as scheduler_router

__all__ = ["downloads_router", "scheduler_router"]
