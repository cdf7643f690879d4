"""
API v1 router.
"""
from fastapi import APIRouter

from cloudaudit.api.v1.endpoints import consistency, health, inspections, ws

api_router = APIRouter()

# Health check endpoint (no prefix, so it's /api/v1/health)
api_router.include_router(health.router, tags=["health"])

api_router.include_router(inspections.router, prefix="/inspections", tags=["inspections"])
api_router.include_router(consistency.router, prefix="/consistency", tags=["consistency"])
api_router.include_router(ws.router, tags=["progress"])
