"""Central API router that aggregates all route modules."""

from fastapi import APIRouter

from chatrelay.api.chat import router as chat_router
from chatrelay.api.health import router as health_router
from chatrelay.api.logout import router as logout_router
from chatrelay.api.upload import router as upload_router

api_router = APIRouter()

api_router.include_router(health_router, prefix="/health", tags=["health"])
api_router.include_router(chat_router, prefix="/chat", tags=["chat"])
api_router.include_router(upload_router, prefix="/upload", tags=["upload"])
api_router.include_router(logout_router, prefix="/logout", tags=["auth"])
