# /covima/models/domain.py

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from covima.models.flow import FormField

# Core domain documents as they come out of MongoDB.


class MongoModel(BaseModel):
    """Base for documents read from MongoDB; `_id` is exposed as a string `id`."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id")

    @field_validator("id", mode="before")
    @classmethod
    def stringify_object_id(cls, v):
        return str(v) if v is not None else v


class User(MongoModel):
    nombre: str
    telefono: str = Field(..., description="Local number, last 9 digits")
    codigo_pais: str = Field(default="51")
    roles: List[str] = Field(default_factory=list)
    activo: bool = True

    @property
    def telefono_completo(self) -> str:
        return f"{self.codigo_pais}{self.telefono}"


class AttendanceType(MongoModel):
    nombre: str
    label: str
    solo_presencia: bool = False
    campos: List[FormField] = Field(default_factory=list)


class QRCode(MongoModel):
    """An attendance session token with its daily validity window."""
    codigo: str
    tipo_id: str
    hora_inicio: str = Field(..., description="HH:MM local time")
    hora_fin: str = Field(..., description="HH:MM local time")
    margen_temprana: int = Field(default=0, ge=0, description="Minutes the window opens early")
    activo: bool = True
    tipo: Optional[AttendanceType] = None

    @field_validator("tipo_id", mode="before")
    @classmethod
    def stringify_tipo_id(cls, v):
        return str(v)

    @field_validator("hora_inicio", "hora_fin", mode="before")
    @classmethod
    def datetime_to_hhmm(cls, v):
        if isinstance(v, datetime):
            return f"{v.hour:02d}:{v.minute:02d}"
        return v

    @property
    def tipo_label(self) -> str:
        return self.tipo.label if self.tipo else "Asistencia"

    @property
    def requires_form(self) -> bool:
        return bool(self.tipo and not self.tipo.solo_presencia and self.tipo.campos)


class AttendanceRecord(BaseModel):
    """Row written to `asistencias`; unique on (identidad, semana_inicio, tipo_id)."""
    usuario_id: Optional[str] = None
    telefono_registro: Optional[str] = None
    nombre_registro: Optional[str] = None
    identidad: str
    tipo_id: str
    qr_id: str
    fecha: datetime
    semana_inicio: datetime
    datos_formulario: Dict[str, Any] = Field(default_factory=dict)
    metodo_registro: str
    estado: str
    confirmado_por: Optional[str] = None
    confirmado_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def identity_for(usuario_id: Optional[str], telefono: Optional[str], nombre: Optional[str]) -> str:
        """Who the row is about: the user id, else the phone, else the lowercased free-text name."""
        if usuario_id:
            return f"usuario:{usuario_id}"
        if telefono:
            return f"telefono:{telefono}"
        return f"nombre:{(nombre or '').strip().lower()}"


class ProgramPart(BaseModel):
    parte_id: str
    nombre: str
    orden: int = 0
    es_fija: bool = False
    texto_fijo: Optional[str] = None


class Assignment(BaseModel):
    parte_id: str
    usuario_id: Optional[str] = None
    nombre: str = Field(..., description="User name or free-text name")
    orden: int = 0

    @property
    def es_usuario(self) -> bool:
        return self.usuario_id is not None


class ProgramLink(BaseModel):
    parte_id: str
    nombre: str
    url: str
    orden: int = 0


class Program(MongoModel):
    codigo: str
    fecha: datetime
    titulo: str
    estado: str = "borrador"
    hora_inicio: Optional[str] = None
    partes: List[ProgramPart] = Field(default_factory=list)
    asignaciones: List[Assignment] = Field(default_factory=list)
    links: List[ProgramLink] = Field(default_factory=list)
    enviado_at: Optional[datetime] = None
    creado_por: Optional[str] = None

    def assignments_for(self, parte_id: str) -> List[Assignment]:
        return [a for a in self.asignaciones if a.parte_id == parte_id]

    def links_for(self, parte_id: str) -> List[ProgramLink]:
        return [link for link in self.links if link.parte_id == parte_id]

    def find_part(self, nombre: str) -> Optional[ProgramPart]:
        """Case-insensitive containment in either direction."""
        needle = nombre.strip().lower()
        if not needle:
            return None
        for parte in self.partes:
            hay = parte.nombre.lower()
            if needle in hay or hay in needle:
                return parte
        return None


class PartCatalogEntry(MongoModel):
    nombre: str
    orden: int = 0
    obligatoria: bool = False
    es_fija: bool = False
    texto_fijo: Optional[str] = None
