# /covima/utils/dependencies.py

import secrets
import structlog
from fastapi import HTTPException, Request

from covima.config.settings import settings
from covima.services.security_service import SecurityService
from covima.utils.metrics import webhook_signature_counter
from covima.utils.rate_limiter import get_remote_address

log = structlog.get_logger(__name__)


async def verify_webhook_signature(request: Request) -> bytes:
    """Checks X-Hub-Signature-256 when an app secret is configured; returns the raw body."""
    body = await request.body()
    if not settings.whatsapp_app_secret:
        return body

    signature = request.headers.get("x-hub-signature-256", "")
    if not SecurityService.verify_webhook_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("invalid_webhook_signature", ip=get_remote_address(request), signature=signature[:50])
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body


async def verify_metrics_access(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
