"""Health check and status endpoints"""
from fastapi import APIRouter, Depends

from keyhub.api.dependencies import get_services
from keyhub.core.config import settings
from keyhub.models.schemas import HealthCheck
from keyhub.services.container import Services
from keyhub.utils.clock import utcnow

router = APIRouter(tags=["Health"])


@router.get("/", summary="Root Endpoint")
async def root():
    """Root endpoint - API welcome message"""
    return {
        "message": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "docs": "/docs",
        "health": "/health"
    }


@router.get("/health", response_model=HealthCheck, summary="Health Check")
async def health_check(services: Services = Depends(get_services)):
    """
    Check API health status and database availability.

    No authentication required.
    """
    database_ok = await services.gateway.ping()
    return HealthCheck(
        status="healthy" if database_ok else "degraded",
        timestamp=utcnow(),
        database=database_ok,
        version=settings.VERSION
    )
