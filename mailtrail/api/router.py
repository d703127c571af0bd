"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from mailtrail.api.notifications import router as notifications_router
from mailtrail.api.metrics import router as metrics_router
from mailtrail.api.emails import router as emails_router
from mailtrail.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(notifications_router)
api_router.include_router(metrics_router)
api_router.include_router(emails_router)
api_router.include_router(health_router)
