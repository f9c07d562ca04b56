"""API routers."""

from beverage_sync.routers.admin import router as admin_router
from beverage_sync.routers.health import router as health_router

__all__ = ["admin_router", "health_router"]
