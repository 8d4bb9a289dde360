# /covima/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from datetime import datetime

from covima.config.settings import settings
from covima.utils.dependencies import verify_metrics_access
from covima.services.db_service import db_service
from covima.services.event_service import event_service

# Health checks and the root endpoint need no authentication. /metrics is
# protected by an API key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Covima Bot",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment,
        "provider": settings.messaging_provider,
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.utcnow()}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Readiness probe: MongoDB must answer; Redis only feeds live screens and is reported, not required."""
    if not await db_service.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")

    redis_status = "connected"
    try:
        await event_service.redis.ping()
    except Exception:
        redis_status = "error"
    return {"status": "ready", "services": {"database": "connected", "events": redis_status}}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
