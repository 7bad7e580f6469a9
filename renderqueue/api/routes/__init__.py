"""
API routes module.
"""

from renderqueue.api.routes.assets import router as assets_router
from renderqueue.api.routes.health import router as health_router
from renderqueue.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "assets_router", "health_router"]
