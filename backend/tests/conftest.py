import copy
import os
import itertools
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any covima imports, so the
# settings singleton is built from it.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"), override=True)

from covima.utils.exceptions import DuplicateAttendanceError  # noqa: E402
from covima.services.conversation_service import ConversationService  # noqa: E402
from covima.models.conversation import Conversation, MessageContext  # noqa: E402

LIMA = ZoneInfo("America/Lima")
# Wednesday 2026-01-21 10:00 in Lima; its ISO week starts Monday 2026-01-19.
FIXED_NOW = datetime(2026, 1, 21, 10, 0, tzinfo=LIMA)


def fixed_clock():
    return FIXED_NOW


class FakeDatabase:
    """In-memory stand-in for DatabaseService with the same method contract."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.conversations = {}
        self.users = []
        self.attendance_types = {}
        self.qrs = []
        self.attendance = []
        self.programs = []
        self.catalog = []
        self.notifications = []

    def _next_id(self, prefix):
        return f"{prefix}{next(self._ids)}"

    @staticmethod
    def phone_suffix(phone):
        return "".join(ch for ch in (phone or "") if ch.isdigit())[-9:]

    # --- seeding ---

    def add_user(self, nombre, telefono, roles=("participante",), activo=True, codigo_pais="51"):
        user = {
            "_id": self._next_id("u"),
            "nombre": nombre,
            "telefono": telefono,
            "codigo_pais": codigo_pais,
            "roles": list(roles),
            "activo": activo,
        }
        self.users.append(user)
        return user

    def add_qr(self, codigo="JA-A1B2C3D4", campos=None, activo=True, hora_inicio="09:00", hora_fin="12:00",
               margen_temprana=0, label="Escuela Sabática", solo_presencia=False):
        tipo_id = self._next_id("t")
        self.attendance_types[tipo_id] = {
            "_id": tipo_id,
            "nombre": label.lower().replace(" ", "_"),
            "label": label,
            "solo_presencia": solo_presencia,
            "campos": campos or [],
        }
        qr = {
            "_id": self._next_id("q"),
            "codigo": codigo,
            "tipo_id": tipo_id,
            "hora_inicio": hora_inicio,
            "hora_fin": hora_fin,
            "margen_temprana": margen_temprana,
            "activo": activo,
        }
        self.qrs.append(qr)
        return qr

    def add_catalog_part(self, nombre, orden, obligatoria=False, es_fija=False, texto_fijo=None):
        entry = {
            "_id": self._next_id("p"),
            "nombre": nombre,
            "orden": orden,
            "obligatoria": obligatoria,
            "es_fija": es_fija,
            "texto_fijo": texto_fijo,
        }
        self.catalog.append(entry)
        return entry

    def add_program(self, codigo, fecha, partes=None, asignaciones=None, titulo="Programa Maranatha Adoración"):
        program = {
            "_id": self._next_id("g"),
            "codigo": codigo,
            "fecha": fecha,
            "titulo": titulo,
            "estado": "borrador",
            "partes": partes or [],
            "asignaciones": asignaciones or [],
            "links": [],
        }
        self.programs.append(program)
        return program

    # --- conversations ---

    async def get_or_create_conversation(self, telefono):
        conversation = self.conversations.setdefault(
            telefono, {"telefono": telefono, "estado": "inicio", "modulo_activo": None, "contexto": {}}
        )
        return copy.deepcopy(conversation)

    async def update_conversation(self, telefono, fields):
        conversation = self.conversations.setdefault(
            telefono, {"telefono": telefono, "estado": "inicio", "modulo_activo": None, "contexto": {}}
        )
        conversation.update(copy.deepcopy(fields))

    # --- users ---

    async def find_user_by_phone(self, phone):
        suffix = self.phone_suffix(phone)
        if not suffix:
            return None
        for user in self.users:
            if user["telefono"].endswith(suffix):
                return dict(user)
        return None

    async def get_user(self, user_id):
        return next((dict(u) for u in self.users if u["_id"] == user_id), None)

    async def find_users_by_name(self, name, limit=5):
        needle = name.strip().lower()
        return [dict(u) for u in self.users if u["activo"] and needle in u["nombre"].lower()][:limit]

    async def search_users(self, busqueda, limit=5):
        digits = "".join(ch for ch in busqueda if ch.isdigit())
        if len(digits) >= 6:
            found = [u for u in self.users if u["telefono"].endswith(digits[-9:])]
        else:
            found = [u for u in self.users if busqueda.strip().lower() in u["nombre"].lower()]
        found = sorted(found, key=lambda u: u["nombre"])
        return [dict(u) for u in found[:limit]], len(found)

    async def list_active_users(self):
        return [dict(u) for u in self.users if u["activo"]]

    async def create_user(self, data):
        document = dict(data)
        document.setdefault("activo", True)
        document["_id"] = self._next_id("u")
        self.users.append(document)
        return dict(document)

    # --- attendance ---

    def _with_type(self, qr):
        if not qr:
            return None
        document = dict(qr)
        document["tipo"] = copy.deepcopy(self.attendance_types.get(qr["tipo_id"]))
        return document

    async def get_qr_by_code(self, codigo):
        return self._with_type(next((q for q in self.qrs if q["codigo"] == codigo.upper()), None))

    async def get_qr_by_id(self, qr_id):
        return self._with_type(next((q for q in self.qrs if q["_id"] == qr_id), None))

    async def find_attendance(self, tipo_id, semana_inicio, alternatives):
        identities = {alt["identidad"] for alt in alternatives}
        for row in self.attendance:
            if row["tipo_id"] == tipo_id and row["semana_inicio"] == semana_inicio and row["identidad"] in identities:
                return dict(row)
        return None

    async def insert_attendance(self, record):
        for row in self.attendance:
            if (row["identidad"], row["semana_inicio"], row["tipo_id"]) == (
                record["identidad"], record["semana_inicio"], record["tipo_id"]
            ):
                raise DuplicateAttendanceError("E11000 duplicate key")
        document = dict(record)
        document["_id"] = self._next_id("a")
        self.attendance.append(document)
        return document["_id"]

    # --- programs ---

    async def get_program_by_code(self, codigo):
        return copy.deepcopy(next((p for p in self.programs if p["codigo"].lower() == codigo.lower()), None))

    async def get_programs_by_date(self, fecha):
        return [copy.deepcopy(p) for p in self.programs if p["fecha"] == fecha]

    async def get_next_program(self, desde):
        upcoming = sorted((p for p in self.programs if p["fecha"] >= desde), key=lambda p: p["fecha"])
        return copy.deepcopy(upcoming[0]) if upcoming else None

    async def get_part_catalog(self, only_mandatory=False):
        parts = [dict(p) for p in self.catalog if p["obligatoria"] or not only_mandatory]
        return sorted(parts, key=lambda p: p["orden"])

    async def insert_program(self, data):
        document = copy.deepcopy(data)
        document["_id"] = self._next_id("g")
        self.programs.append(document)
        return copy.deepcopy(document)

    async def update_program(self, program_id, fields):
        program = next(p for p in self.programs if p["_id"] == program_id)
        program.update(copy.deepcopy(fields))

    async def insert_notification(self, data):
        self.notifications.append(dict(data))


class FakeGateway:
    """Records everything the handlers send."""

    provider = "fake"

    def __init__(self):
        self.sent = []
        self.templates = []
        self.typing = []
        self.registered = []
        self.template_results = {}

    @property
    def texts(self):
        return [content for _, content in self.sent]

    @property
    def last(self):
        return self.sent[-1][1] if self.sent else None

    def register_conversation(self, conversation_id, telefono, message_id=None, source=None):
        self.registered.append((conversation_id, telefono, message_id, source))

    async def toggle_typing(self, conversation_id, is_typing):
        self.typing.append((conversation_id, is_typing))

    async def send_message(self, conversation_id, content):
        self.sent.append((conversation_id, content))
        return f"msg-{len(self.sent)}"

    async def send_messages(self, conversation_id, contents):
        for content in contents:
            await self.send_message(conversation_id, content)

    async def send_template_to_phone(self, phone, template_name, language_code, body_params):
        self.templates.append((phone, template_name, language_code, list(body_params)))
        return self.template_results.get(phone, {"success": True, "message_id": f"wamid.{phone}"})


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def events():
    service = AsyncMock()
    service.publish = AsyncMock()
    return service


@pytest.fixture
def conversations(fake_db):
    return ConversationService(fake_db)


@pytest.fixture
def clock():
    return fixed_clock


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    TestClient around the real app with the lifespan's external calls
    stubbed out; the intent router itself is replaced per test as needed.
    """
    from fastapi.testclient import TestClient
    from covima.main import app

    mocker.patch("covima.services.db_service.DatabaseService.create_indexes", new_callable=AsyncMock)
    mocker.patch("covima.services.event_service.EventService.close", new_callable=AsyncMock)
    mocker.patch("covima.services.messaging_service.MessagingGateway.close", new_callable=AsyncMock)

    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_ctx(fake_db):
    """Builds the MessageContext the router would build, reading the stored conversation."""

    def _make(telefono="51987654321", user=None, nombre="Juan WA"):
        stored = fake_db.conversations.get(telefono) or {"telefono": telefono}
        return MessageContext(
            conversation_id=telefono,
            telefono=telefono,
            nombre_whatsapp=nombre,
            usuario_id=user["_id"] if user else None,
            usuario_nombre=user["nombre"] if user else None,
            roles=list(user["roles"]) if user else [],
            conversation=Conversation.model_validate(copy.deepcopy(stored)),
        )

    return _make
