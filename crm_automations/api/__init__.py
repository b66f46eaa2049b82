"""
API package for the CRM automation backend.

This package aggregates all API routers to be included in the FastAPI
application. The API is versioned under ``/api/v1``.
"""

from fastapi import APIRouter
from .v1.automations import router as automations_router
from .v1.events import router as events_router
from .v1.health import router as health_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(automations_router)
api_router.include_router(events_router)
