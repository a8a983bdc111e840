# API Routes
from .stage_routes import router as stage_router
from .manuscript_routes import router as manuscript_router
from .invitation_routes import router as invitation_router
from .admin_routes import router as admin_router

__all__ = [
    "stage_router",
    "manuscript_router",
    "invitation_router",
    "admin_router",
]
