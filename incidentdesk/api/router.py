"""Master API router — includes all sub-routers."""

from fastapi import APIRouter

from .routes.analytics import router as analytics_router
from .routes.categories import router as categories_router
from .routes.incidents import router as incidents_router
from .routes.notifications import router as notifications_router
from .routes.users import router as users_router
from .websockets.live import router as ws_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(incidents_router)
api_router.include_router(users_router)
api_router.include_router(notifications_router)
api_router.include_router(categories_router)
api_router.include_router(analytics_router)

# WebSocket router is mounted at root level (no prefix)
websocket_router = ws_router
