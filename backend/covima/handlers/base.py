# /covima/handlers/base.py

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from covima.models.conversation import MessageContext

logger = logging.getLogger(__name__)


class BaseHandler(ABC):
    """Shared plumbing for the domain handlers: replies and conversation resets."""

    module: str = ""

    def __init__(self, db, conversations, gateway):
        self.db = db
        self.conversations = conversations
        self.gateway = gateway

    async def reply(self, ctx: MessageContext, content: str) -> None:
        await self.gateway.send_message(ctx.conversation_id, content)

    async def reply_many(self, ctx: MessageContext, contents: Iterable[str]) -> None:
        await self.gateway.send_messages(ctx.conversation_id, list(contents))

    async def reset(self, ctx: MessageContext, reason: str = "completed") -> None:
        await self.conversations.reset(ctx.telefono, reason)

    @abstractmethod
    async def continue_flow(self, ctx: MessageContext, message: str) -> None:
        """Handles the next message of a conversation parked in one of this module's estados."""
