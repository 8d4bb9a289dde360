# /covima/models/flow.py

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from covima.utils.exceptions import FlowContextError

# Payload shapes persisted in Conversation.contexto, one per flow estado.
# These are pure data models; the handlers own the transitions.

ESTADO_FORMULARIO_ASISTENCIA = "formulario_asistencia"
ESTADO_FORMULARIO_ASISTENCIA_MANUAL = "formulario_asistencia_manual"
ESTADO_CONFIRMAR_ENVIO = "confirmar_envio"

MODULO_ASISTENCIA = "asistencia"
MODULO_USUARIOS = "usuarios"
MODULO_PROGRAMAS = "programas"
MODULO_NOTIFICACIONES = "notificaciones"


class FieldType(str, Enum):
    NUMBER = "number"
    CHECKBOX = "checkbox"
    SELECT = "select"
    TEXT = "text"


class FieldOption(BaseModel):
    value: str
    label: str

    @model_validator(mode="before")
    @classmethod
    def fill_missing_side(cls, data):
        # Options stored as {"value": ...} or {"label": ...} only
        if isinstance(data, dict):
            data = dict(data)
            if data.get("value") is None and data.get("label") is not None:
                data["value"] = data["label"]
            if data.get("label") is None and data.get("value") is not None:
                data["label"] = data["value"]
            for key in ("value", "label"):
                if data.get(key) is not None:
                    data[key] = str(data[key])
        return data


class FormField(BaseModel):
    """One question of an attendance form."""
    nombre: str = Field(..., description="Key under which the answer is stored")
    label: str = Field(..., description="Question shown to the user")
    tipo: FieldType = Field(default=FieldType.TEXT)
    requerido: bool = Field(default=False)
    valor_minimo: Optional[float] = Field(default=None)
    valor_maximo: Optional[float] = Field(default=None)
    placeholder: Optional[str] = Field(default=None)
    opciones: List[FieldOption] = Field(default_factory=list)
    orden: int = Field(default=0)

    @field_validator("tipo", mode="before")
    @classmethod
    def unknown_types_are_text(cls, v):
        try:
            return FieldType(str(v).lower())
        except ValueError:
            return FieldType.TEXT

    @field_validator("opciones", mode="before")
    @classmethod
    def none_is_empty(cls, v):
        return v or []


class AttendanceFlowState(BaseModel):
    """Payload of the attendance form flows (self and manual)."""
    codigo_qr: str
    qr_id: str
    tipo_id: str
    tipo_nombre: str = Field(default="Asistencia")
    campos: List[FormField] = Field(..., min_length=1)
    campo_actual: int = Field(default=0, ge=0)
    respuestas: Dict[str, Any] = Field(default_factory=dict)

    # Manual registration sidecar
    es_manual: bool = Field(default=False)
    usuario_objetivo_id: Optional[str] = Field(default=None)
    telefono_registro: Optional[str] = Field(default=None)
    nombre_registro: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def cursor_within_bounds(self):
        if self.campo_actual > len(self.campos):
            raise ValueError("campo_actual is past the end of campos")
        return self

    @property
    def is_complete(self) -> bool:
        return self.campo_actual == len(self.campos)

    @property
    def current_field(self) -> FormField:
        return self.campos[self.campo_actual]

    def with_answer(self, value: Any) -> "AttendanceFlowState":
        """Returns a copy with the current field answered and the cursor advanced by one."""
        field = self.current_field
        respuestas = dict(self.respuestas)
        respuestas[field.nombre] = value
        return self.model_copy(update={"respuestas": respuestas, "campo_actual": self.campo_actual + 1})


class DispatchParticipant(BaseModel):
    usuario_id: str
    nombre: str
    telefono: str = Field(..., description="Full phone with country code, digits only")
    partes: List[str] = Field(default_factory=list)


class ProgramDispatchState(BaseModel):
    """Payload while waiting for the leader to confirm a program broadcast."""
    programa_id: str
    codigo: str
    fecha_formateada: str
    participantes: List[DispatchParticipant] = Field(..., min_length=1)
    texto: str = Field(default="")


# estado -> (owning module, payload model)
FLOW_STATES: Dict[str, Tuple[str, Type[BaseModel]]] = {
    ESTADO_FORMULARIO_ASISTENCIA: (MODULO_ASISTENCIA, AttendanceFlowState),
    ESTADO_FORMULARIO_ASISTENCIA_MANUAL: (MODULO_ASISTENCIA, AttendanceFlowState),
    ESTADO_CONFIRMAR_ENVIO: (MODULO_NOTIFICACIONES, ProgramDispatchState),
}


def module_for(estado: str, modulo_activo: Optional[str] = None) -> Optional[str]:
    """The module owning a flow: the stored tag first, then the estado registry."""
    if modulo_activo:
        return modulo_activo
    entry = FLOW_STATES.get(estado)
    return entry[0] if entry else None


def decode_flow_context(estado: str, contexto: Any) -> BaseModel:
    """
    Decodes a persisted contexto into the payload model registered for `estado`.
    Raises FlowContextError when the estado is unknown or the payload is malformed.
    """
    entry = FLOW_STATES.get(estado)
    if entry is None:
        raise FlowContextError(estado, "no payload registered for this estado")
    if not isinstance(contexto, dict) or not contexto:
        raise FlowContextError(estado, "empty or non-object payload")
    _, model = entry
    try:
        return model.model_validate(contexto)
    except ValidationError as e:
        raise FlowContextError(estado, f"{e.error_count()} validation error(s)") from e
