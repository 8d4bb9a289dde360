# /covima/models/conversation.py

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

ESTADO_INICIO = "inicio"


class Conversation(BaseModel):
    """Per-phone conversation state used to resume multi-turn flows."""
    telefono: str = Field(..., description="Normalized phone number (digits only)")
    estado: str = Field(default=ESTADO_INICIO, description="Current state name")
    modulo_activo: Optional[str] = Field(default=None, description="Module that owns the active flow")
    contexto: Dict[str, Any] = Field(default_factory=dict, description="Flow payload, meaningful only outside 'inicio'")
    ultimo_mensaje_at: Optional[datetime] = Field(default=None)
    created_at: Optional[datetime] = Field(default=None)

    @field_validator("contexto", mode="before")
    @classmethod
    def coerce_contexto(cls, v: Any) -> Any:
        # Anything but an object is unreadable; the flow decoder reports it as corrupt.
        return v if isinstance(v, dict) else {}

    @property
    def is_idle(self) -> bool:
        return self.estado == ESTADO_INICIO


class MessageContext(BaseModel):
    """Everything a handler needs to know about the message being processed."""
    conversation_id: str = Field(..., description="Provider conversation id used for replies")
    telefono: str = Field(..., description="Sender phone, digits only")
    nombre_whatsapp: str = Field(default="Usuario", description="Sender display name")
    message_id: Optional[str] = Field(default=None, description="Provider id of the inbound message")
    usuario_id: Optional[str] = Field(default=None, description="Registered user id, when the sender is known")
    usuario_nombre: Optional[str] = Field(default=None)
    roles: List[str] = Field(default_factory=list)
    conversation: Conversation

    @property
    def is_registered(self) -> bool:
        return self.usuario_id is not None

    def has_any_role(self, roles: List[str]) -> bool:
        return any(role in self.roles for role in roles)
