# /covima/models/api.py

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, Field

# Request/response models for the HTTP surface. Provider payloads are
# normalized into InboundMessage at the webhook boundary.


class InboundMessage(BaseModel):
    """A provider-agnostic inbound chat message."""
    conversation_id: str
    telefono: str
    nombre: str = "Usuario"
    content: str
    message_id: Optional[str] = None
    source: str = Field(default="whatsapp", pattern="^(whatsapp|chatwoot|test)$")


class TestMessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4096)
    telefono: str = Field(..., min_length=6, max_length=20)
    nombre: Optional[str] = None


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: str
