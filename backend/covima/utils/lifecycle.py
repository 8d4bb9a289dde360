# /covima/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from covima.utils.logging import setup_logging
from covima.services.db_service import db_service
from covima.services.event_service import event_service
from covima.services.intent_router import messaging_gateway
from covima.config.settings import settings

# Startup creates the MongoDB indexes the duplicate-attendance guard relies
# on; shutdown closes the HTTP, Redis and MongoDB clients.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info(f"Application starting up with the '{settings.messaging_provider}' provider...")

    await db_service.create_indexes()

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    await messaging_gateway.close()
    await event_service.close()
    if db_service.client:
        db_service.client.close()
