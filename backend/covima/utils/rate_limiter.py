# /covima/utils/rate_limiter.py

from fastapi import Request
from slowapi import Limiter

from covima.config.settings import settings

# Shared limiter instance; both the app and the route modules import it from here.


def get_remote_address(request: Request) -> str:
    """Client IP, honouring the first X-Forwarded-For hop when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.environment != "test",
)
