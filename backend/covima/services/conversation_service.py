# /covima/services/conversation_service.py

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError

from covima.models.conversation import Conversation, ESTADO_INICIO
from covima.models.flow import module_for
from covima.utils.metrics import flow_resets_counter

logger = logging.getLogger(__name__)

# Per-phone conversation state on top of the database service. There is no
# locking: two messages from the same phone race and the last write wins.


class ConversationService:
    def __init__(self, db):
        self.db = db

    async def get_or_create(self, telefono: str) -> Conversation:
        document = await self.db.get_or_create_conversation(telefono)
        try:
            return Conversation.model_validate(document)
        except ValidationError as e:
            logger.warning(f"Unreadable conversation for {telefono[-4:]}, resetting: {e.error_count()} error(s)")
            await self.reset(telefono, "corrupt")
            return Conversation(telefono=telefono)

    async def update(self, telefono: str, patch: Dict[str, Any]) -> None:
        fields = dict(patch)
        if isinstance(fields.get("contexto"), BaseModel):
            fields["contexto"] = fields["contexto"].model_dump(mode="json")
        await self.db.update_conversation(telefono, fields)

    async def start_flow(self, telefono: str, estado: str, payload: BaseModel, modulo: Optional[str] = None) -> None:
        """Moves the conversation into `estado` with `payload` as its contexto."""
        await self.update(
            telefono,
            {"estado": estado, "modulo_activo": modulo or module_for(estado), "contexto": payload},
        )

    async def save_flow(self, telefono: str, payload: BaseModel) -> None:
        """Persists an updated payload without changing the estado."""
        await self.update(telefono, {"contexto": payload})

    async def reset(self, telefono: str, reason: str = "completed") -> None:
        flow_resets_counter.labels(reason=reason).inc()
        logger.debug(f"Resetting conversation for {telefono[-4:]} ({reason})")
        await self.db.update_conversation(
            telefono, {"estado": ESTADO_INICIO, "modulo_activo": None, "contexto": {}}
        )
