"""API routers."""
from .status import router as status_router
from .services import router as services_router
from .notifications import router as notifications_router

__all__ = ["status_router", "services_router", "notifications_router"]
