# backend/tests/unit/test_intent_router.py
from datetime import datetime
from enum import Enum

import pytest
from unittest.mock import AsyncMock

from covima.config import strings
from covima.models.api import InboundMessage
from covima.models.flow import ESTADO_FORMULARIO_ASISTENCIA
from covima.models.intent import Intent
from covima.services.intent_router import build_intent_router
from covima.services.intent_service import LocalIntentClassifier

PHONE = "51987654321"


@pytest.fixture
def router(fake_db, gateway, events, clock):
    return build_intent_router(fake_db, LocalIntentClassifier(), gateway, events, clock=clock)


def inbound(content, telefono=PHONE, nombre="Juan WA"):
    return InboundMessage(conversation_id=telefono, telefono=telefono, nombre=nombre, content=content, source="test")


def park(fake_db, estado, contexto=None, modulo=None):
    fake_db.conversations[PHONE] = {
        "telefono": PHONE,
        "estado": estado,
        "modulo_activo": modulo,
        "contexto": contexto or {},
    }


# --- Routing of idle conversations ---

@pytest.mark.asyncio
async def test_greeting_for_unknown_sender(router, gateway):
    await router.process_message(inbound("Hola"))

    assert gateway.texts == [strings.GREETING.format(nombre=strings.GREETING_ANONYMOUS_NAME)]
    assert gateway.registered == [(PHONE, PHONE, None, "test")]
    assert gateway.typing == [(PHONE, True)]


@pytest.mark.asyncio
async def test_greeting_uses_whatsapp_name_for_members(router, fake_db, gateway):
    fake_db.add_user("Juan Pérez", "987654321")

    await router.process_message(inbound("buenas tardes"))

    assert gateway.last == strings.GREETING.format(nombre="Juan WA")


@pytest.mark.asyncio
async def test_help_grows_with_roles(router, fake_db, gateway):
    await router.process_message(inbound("ayuda"))
    public = gateway.last
    assert strings.HELP_PUBLIC in public
    assert strings.HELP_LEADERS not in public
    assert strings.HELP_ADMIN not in public

    fake_db.add_user("Ana Admin", "987654321", roles=("admin",))
    await router.process_message(inbound("ayuda"))

    assert gateway.last == (
        strings.HELP_HEADER + strings.HELP_PUBLIC + strings.HELP_LEADERS + strings.HELP_ADMIN + strings.HELP_FOOTER
    )


@pytest.mark.asyncio
async def test_unknown_text(router, gateway):
    await router.process_message(inbound("qué tal el clima"))
    assert gateway.last == strings.UNKNOWN_INTENT


@pytest.mark.asyncio
async def test_leader_intent_requires_registration(router, gateway):
    await router.process_message(inbound("crear programa para el 25/01"))
    assert gateway.last == strings.AUTH_REQUIRED


@pytest.mark.asyncio
async def test_leader_intent_rejects_participants(router, fake_db, gateway):
    fake_db.add_user("Juan Pérez", "987654321", roles=("participante",))

    await router.process_message(inbound("crear programa para el 25/01"))

    assert gateway.last == strings.ROLE_REQUIRED.format(roles="admin o lider")
    assert fake_db.programs == []


@pytest.mark.asyncio
async def test_member_can_look_up_program_by_code(router, fake_db, gateway):
    fake_db.add_user("Juan Pérez", "987654321")
    fake_db.add_program(
        "PMA-X3KP9M",
        datetime(2026, 1, 24),
        partes=[{"parte_id": "p1", "nombre": "Bienvenida", "orden": 1}],
        asignaciones=[{"parte_id": "p1", "nombre": "María", "orden": 1}],
    )

    await router.process_message(inbound("PMA-X3KP9M"))

    assert "🔖 Código: PMA-X3KP9M" in gateway.last
    assert "*Bienvenida:* María" in gateway.last


@pytest.mark.asyncio
async def test_unusable_phone_is_ignored(router, gateway, fake_db):
    await router.process_message(inbound("hola", telefono="123"))

    assert gateway.sent == []
    assert fake_db.conversations == {}


# --- Conversations inside a flow ---

@pytest.mark.asyncio
@pytest.mark.parametrize("word", ["cancelar", "SALIR"])
async def test_cancel_word_leaves_any_flow(router, fake_db, gateway, word):
    park(fake_db, ESTADO_FORMULARIO_ASISTENCIA, {"foo": "bar"}, "asistencia")

    await router.process_message(inbound(word))

    assert gateway.last == strings.FLOW_CANCELLED
    assert fake_db.conversations[PHONE]["estado"] == "inicio"


@pytest.mark.asyncio
async def test_corrupt_flow_context_resets(router, fake_db, gateway):
    park(fake_db, ESTADO_FORMULARIO_ASISTENCIA, {}, "asistencia")

    await router.process_message(inbound("5"))

    assert gateway.last == strings.CORRUPT_FLOW
    assert fake_db.conversations[PHONE] == {
        "telefono": PHONE, "estado": "inicio", "modulo_activo": None, "contexto": {}
    }


@pytest.mark.asyncio
async def test_orphaned_estado_is_reset_and_reclassified(router, fake_db, gateway):
    park(fake_db, "esperando_algo")

    await router.process_message(inbound("hola"))

    assert gateway.last == strings.GREETING.format(nombre=strings.GREETING_ANONYMOUS_NAME)
    assert fake_db.conversations[PHONE]["estado"] == "inicio"


@pytest.mark.asyncio
async def test_module_without_pending_flow_resets(router, fake_db, gateway):
    park(fake_db, "editando", {"x": 1}, "programas")

    await router.process_message(inbound("algo"))

    assert gateway.last == strings.PROGRAMS_NOTHING_PENDING
    assert fake_db.conversations[PHONE]["estado"] == "inicio"


@pytest.mark.asyncio
async def test_unexpected_flow_error_resets_with_generic_reply(router, fake_db, gateway, mocker):
    park(fake_db, ESTADO_FORMULARIO_ASISTENCIA, {"foo": "bar"}, "asistencia")
    mocker.patch.object(router.flow_handlers["asistencia"], "continue_flow", AsyncMock(side_effect=RuntimeError("boom")))

    await router.process_message(inbound("5"))

    assert gateway.last == strings.GENERIC_ERROR
    assert fake_db.conversations[PHONE]["estado"] == "inicio"


@pytest.mark.asyncio
async def test_classifier_crash_gets_generic_reply(fake_db, gateway, events):
    classifier = AsyncMock()
    classifier.classify = AsyncMock(side_effect=RuntimeError("down"))
    router = build_intent_router(fake_db, classifier, gateway, events)

    await router.process_message(inbound("hola"))

    assert gateway.last == strings.GENERIC_ERROR


# --- Construction ---

def test_every_intent_has_a_handler(router):
    assert set(router.dispatch) == set(Intent)
    assert set(router.flow_handlers) == {"asistencia", "usuarios", "programas", "notificaciones"}


def test_missing_handler_fails_at_construction(fake_db, gateway, events, mocker):
    members = {member.name: member.value for member in Intent}
    members["NUEVA_INTENCION"] = "nueva_intencion"
    mocker.patch("covima.services.intent_router.Intent", Enum("Intent", members, type=str))

    with pytest.raises(ValueError, match="nueva_intencion"):
        build_intent_router(fake_db, LocalIntentClassifier(), gateway, events)


@pytest.mark.asyncio
async def test_oversized_message_gets_generic_reply(router, gateway):
    await router.process_message(inbound("a" * 5000))
    assert gateway.last == strings.GENERIC_ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("contexto", [None, "garbage", ["x"]])
async def test_non_object_contexto_is_reset_instead_of_locking_the_phone(router, fake_db, gateway, contexto):
    fake_db.conversations[PHONE] = {
        "telefono": PHONE,
        "estado": ESTADO_FORMULARIO_ASISTENCIA,
        "modulo_activo": "asistencia",
        "contexto": contexto,
    }

    await router.process_message(inbound("5"))

    assert gateway.last == strings.CORRUPT_FLOW
    assert fake_db.conversations[PHONE]["estado"] == "inicio"
    assert fake_db.conversations[PHONE]["contexto"] == {}

    await router.process_message(inbound("hola"))
    assert gateway.last == strings.GREETING.format(nombre=strings.GREETING_ANONYMOUS_NAME)


@pytest.mark.asyncio
async def test_unreadable_conversation_document_is_reset(router, fake_db, gateway):
    fake_db.conversations[PHONE] = {"telefono": PHONE, "estado": None, "modulo_activo": 7, "contexto": {}}

    await router.process_message(inbound("hola"))

    assert gateway.last == strings.GREETING.format(nombre=strings.GREETING_ANONYMOUS_NAME)
    assert fake_db.conversations[PHONE]["estado"] == "inicio"
    assert fake_db.conversations[PHONE]["modulo_activo"] is None


# --- End to end through classification ---

@pytest.mark.asyncio
async def test_bare_qr_from_unregistered_phone_creates_pending_record(router, fake_db, gateway, events):
    fake_db.add_qr()

    await router.process_message(inbound("JA-A1B2C3D4"))

    assert len(fake_db.attendance) == 1
    row = fake_db.attendance[0]
    assert row["estado"] == "pendiente_confirmacion"
    assert row["metodo_registro"] == "qr_bot"
    assert row["identidad"] == "telefono:987654321"
    assert gateway.last.startswith(strings.ATTENDANCE_CONFIRMED_TITLE)
    assert fake_db.conversations[PHONE]["estado"] == "inicio"
    events.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_admin_registers_member_by_single_name_match(router, fake_db, gateway, events):
    fake_db.add_qr()
    admin = fake_db.add_user("María Admin", "987654321", roles=("admin",))
    juan = fake_db.add_user("Juan Pérez", "922000222")

    await router.process_message(inbound("registrar asistencia de Juan en JA-A1B2C3D4"))

    assert len(fake_db.attendance) == 1
    row = fake_db.attendance[0]
    assert row["estado"] == "confirmado"
    assert row["metodo_registro"] == "manual"
    assert row["usuario_id"] == juan["_id"]
    assert row["confirmado_por"] == admin["_id"]
    assert "👤 Juan Pérez" in gateway.last
    assert fake_db.conversations[PHONE]["estado"] == "inicio"
    events.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_manual_registration_from_plain_member_is_refused(router, fake_db, gateway):
    fake_db.add_qr()
    fake_db.add_user("Pedro Miembro", "987654321")
    fake_db.add_user("Juan Pérez", "922000222")

    await router.process_message(inbound("registrar asistencia de Juan en JA-A1B2C3D4"))

    assert gateway.last == strings.ROLE_REQUIRED.format(roles="admin o lider")
    assert fake_db.attendance == []
