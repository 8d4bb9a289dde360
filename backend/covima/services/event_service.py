# /covima/services/event_service.py

import json
import logging
from typing import Any, Dict

import redis.asyncio as redis

from covima.config.settings import settings
from covima.utils.circuit_breaker import CircuitBreaker
from covima.utils.metrics import event_publish_counter

# Publishes live events (new attendance rows) on Redis pub/sub for the
# attendance room screens. Publishing is fire-and-forget: a failure is logged
# and never reaches the chat flow.

logger = logging.getLogger(__name__)


class EventService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=10)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker("redis", failure_threshold=3, timeout=30)
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None

    async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self.redis:
            return
        try:
            message = json.dumps(payload, default=str, ensure_ascii=False)
            await self.circuit_breaker.call(self.redis.publish, channel, message)
            event_publish_counter.labels(channel=channel, status="success").inc()
        except Exception as e:
            event_publish_counter.labels(channel=channel, status="error").inc()
            logger.warning(f"Event publish failed on {channel}: {e}")

    async def close(self) -> None:
        if self.redis:
            await self.redis.aclose()


# Globally accessible instance
event_service = EventService(settings.redis_url)
