# /covima/models/intent.py

from enum import Enum
from typing import Any, Dict, List
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    ADMIN = "admin"
    LIDER = "lider"
    PARTICIPANTE = "participante"


class Intent(str, Enum):
    """Closed set of intents the router knows how to dispatch."""
    REGISTRAR_ASISTENCIA = "registrar_asistencia"
    REGISTRAR_ASISTENCIA_MANUAL = "registrar_asistencia_manual"
    CREAR_USUARIO = "crear_usuario"
    BUSCAR_USUARIO = "buscar_usuario"
    CREAR_PROGRAMA = "crear_programa"
    VER_PROGRAMA = "ver_programa"
    ASIGNAR_PARTE = "asignar_parte"
    ENVIAR_PROGRAMA = "enviar_programa"
    EDITAR_PROGRAMA_TEXTO = "editar_programa_texto"
    AYUDA = "ayuda"
    SALUDO = "saludo"
    DESCONOCIDO = "desconocido"

    @classmethod
    def parse(cls, value: Any) -> "Intent":
        """Maps any string to a member; anything unrecognised becomes DESCONOCIDO."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.DESCONOCIDO


LEADER_ROLES = [Role.ADMIN.value, Role.LIDER.value]
MEMBER_ROLES = [Role.ADMIN.value, Role.LIDER.value, Role.PARTICIPANTE.value]
ADMIN_ROLES = [Role.ADMIN.value]


class IntentResult(BaseModel):
    """Classifier output for one message. Never persisted."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    intent: Intent = Field(default=Intent.DESCONOCIDO, description="Detected intent")
    entities: Dict[str, Any] = Field(default_factory=dict, description="Values extracted from the text")
    confidence: float = Field(default=0.5, description="Confidence in [0, 1]")
    requires_auth: bool = Field(default=False, alias="requiresAuth")
    required_roles: List[str] = Field(default_factory=list, alias="requiredRoles")

    @field_validator("intent", mode="before")
    @classmethod
    def coerce_intent(cls, v):
        return Intent.parse(v) if v is not None else Intent.DESCONOCIDO

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        return min(max(value, 0.0), 1.0)

    @field_validator("entities", mode="before")
    @classmethod
    def entities_must_be_mapping(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("required_roles", mode="before")
    @classmethod
    def roles_must_be_strings(cls, v):
        if not isinstance(v, (list, tuple)):
            return []
        return [str(role).lower() for role in v if role]
