"""
API v1 Router - Aggregates all domain routers.
"""
from fastapi import APIRouter

from sessionguard.api.v1.endpoints import sessions, health

api_router = APIRouter()

# Mount domain routers
api_router.include_router(sessions.router, prefix="/sessions", tags=["Sessions"])
api_router.include_router(health.router, prefix="/health", tags=["Health & Monitoring"])
