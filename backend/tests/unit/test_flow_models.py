# backend/tests/unit/test_flow_models.py
import pytest

from covima.handlers.base import BaseHandler
from covima.models.conversation import Conversation
from covima.models.flow import (
    ESTADO_CONFIRMAR_ENVIO,
    ESTADO_FORMULARIO_ASISTENCIA,
    MODULO_ASISTENCIA,
    MODULO_NOTIFICACIONES,
    AttendanceFlowState,
    ProgramDispatchState,
    decode_flow_context,
    module_for,
)
from covima.models.intent import Intent, IntentResult
from covima.utils.exceptions import FlowContextError

CAMPOS = [
    {"nombre": "dias", "label": "¿Días?", "tipo": "number"},
    {"nombre": "biblia", "label": "¿Biblia?", "tipo": "checkbox"},
]


def attendance_payload(**overrides):
    payload = {"codigo_qr": "JA-A1B2C3D4", "qr_id": "q1", "tipo_id": "t1", "campos": CAMPOS}
    payload.update(overrides)
    return payload


def test_decode_attendance_state():
    state = decode_flow_context(ESTADO_FORMULARIO_ASISTENCIA, attendance_payload())
    assert isinstance(state, AttendanceFlowState)
    assert state.current_field.nombre == "dias"
    assert state.is_complete is False


def test_with_answer_advances_cursor_by_one_without_mutating():
    state = AttendanceFlowState.model_validate(attendance_payload())
    advanced = state.with_answer(3.0)
    assert advanced.campo_actual == 1
    assert advanced.respuestas == {"dias": 3.0}
    assert state.campo_actual == 0
    assert state.respuestas == {}

    done = advanced.with_answer(True)
    assert done.is_complete is True


@pytest.mark.parametrize(
    "contexto",
    [
        {},
        None,
        "not-an-object",
        {"codigo_qr": "JA-A1B2C3D4"},
        attendance_payload(campos=[]),
        attendance_payload(campo_actual=5),
    ],
)
def test_malformed_contexts_raise(contexto):
    with pytest.raises(FlowContextError):
        decode_flow_context(ESTADO_FORMULARIO_ASISTENCIA, contexto)


def test_unknown_estado_raises():
    with pytest.raises(FlowContextError):
        decode_flow_context("esperando_pizza", attendance_payload())


def test_dispatch_state_requires_participants():
    with pytest.raises(FlowContextError):
        decode_flow_context(
            ESTADO_CONFIRMAR_ENVIO,
            {"programa_id": "g1", "codigo": "PMA-X3kP9m", "fecha_formateada": "sábado 24 de enero", "participantes": []},
        )

    state = decode_flow_context(
        ESTADO_CONFIRMAR_ENVIO,
        {
            "programa_id": "g1",
            "codigo": "PMA-X3kP9m",
            "fecha_formateada": "sábado 24 de enero",
            "participantes": [{"usuario_id": "u1", "nombre": "Ana", "telefono": "51911111111", "partes": ["Bienvenida"]}],
        },
    )
    assert isinstance(state, ProgramDispatchState)


def test_module_for_prefers_stored_tag():
    assert module_for(ESTADO_FORMULARIO_ASISTENCIA) == MODULO_ASISTENCIA
    assert module_for(ESTADO_CONFIRMAR_ENVIO) == MODULO_NOTIFICACIONES
    assert module_for("algo", "usuarios") == "usuarios"
    assert module_for("algo") is None


def test_intent_result_normalizes_llm_values():
    result = IntentResult.model_validate(
        {"intent": "VER_PROGRAMA", "confidence": 3, "requiredRoles": ["admin", 7], "entities": None}
    )
    assert result.intent == Intent.VER_PROGRAMA
    assert result.confidence == 1.0
    assert result.entities == {}
    assert result.required_roles == ["admin", "7"]


@pytest.mark.parametrize("contexto", [None, "garbage", ["x"]])
def test_conversation_treats_non_object_contexto_as_empty(contexto):
    conversation = Conversation.model_validate(
        {"telefono": "51987654321", "estado": ESTADO_FORMULARIO_ASISTENCIA, "contexto": contexto}
    )
    assert conversation.contexto == {}
    with pytest.raises(FlowContextError):
        decode_flow_context(conversation.estado, conversation.contexto)


def test_handlers_must_implement_continue_flow():
    class IncompleteHandler(BaseHandler):
        module = "incompleto"

    with pytest.raises(TypeError):
        IncompleteHandler(db=None, conversations=None, gateway=None)
