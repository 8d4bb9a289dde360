# backend/tests/unit/test_intent_service.py
import pytest
from unittest.mock import AsyncMock, MagicMock

from covima.models.intent import Intent
from covima.services.intent_service import (
    LocalIntentClassifier,
    OpenAIIntentClassifier,
    build_intent_classifier,
    looks_like_program_text,
    match_shortcuts,
)
from covima.utils.exceptions import ClassifierError

PASTED_PROGRAM = """Programa Maranatha Adoración 24/01/2026
Bienvenida: María Pérez
Espacio de cantos: Juan - Ana
Oración intercesora: Pedro"""


# --- Shortcuts ---

def test_bare_qr_code_is_attendance_without_roles():
    result = match_shortcuts("ja-a1b2c3d4")
    assert result.intent == Intent.REGISTRAR_ASISTENCIA
    assert result.entities == {"codigoQR": "JA-A1B2C3D4"}
    assert result.confidence == 1.0
    assert result.requires_auth is False
    assert result.required_roles == []


def test_manual_registration_wins_over_bare_qr():
    result = match_shortcuts("registrar asistencia de Juan Pérez en JA-A1B2C3D4")
    assert result.intent == Intent.REGISTRAR_ASISTENCIA_MANUAL
    assert result.entities["nombreUsuario"] == "Juan Pérez"
    assert result.entities["codigoQR"] == "JA-A1B2C3D4"
    assert "telefonoUsuario" not in result.entities
    assert set(result.required_roles) == {"admin", "lider"}


def test_manual_registration_with_phone_subject():
    result = match_shortcuts("registrar a 987 654 321 en JA-A1B2C3D4")
    assert result.intent == Intent.REGISTRAR_ASISTENCIA_MANUAL
    assert result.entities["telefonoUsuario"] == "987654321"


def test_explicit_edit_program_command():
    result = match_shortcuts("editar programa PMA-X3kP9m\nBienvenida: Ana")
    assert result.intent == Intent.EDITAR_PROGRAMA_TEXTO
    assert result.entities["codigo"] == "PMA-X3kP9m"
    assert result.confidence == 1.0


def test_pasted_program_is_not_read_as_lookup():
    text = "PMA-X3kP9m\n" + PASTED_PROGRAM
    result = match_shortcuts(text)
    assert result.intent == Intent.EDITAR_PROGRAMA_TEXTO
    assert result.confidence == 0.95


def test_bare_program_code_is_lookup_for_members():
    result = match_shortcuts("PMA-X3kP9m")
    assert result.intent == Intent.VER_PROGRAMA
    assert result.entities == {"codigo": "PMA-X3kP9m"}
    assert "participante" in result.required_roles


def test_lowercase_hyphenated_word_is_not_a_program_code():
    assert match_shortcuts("soy ex-alumno1 de aquí") is None


def test_free_text_has_no_shortcut():
    assert match_shortcuts("quiero saber cuándo es el culto") is None


# --- Program text heuristic ---

def test_program_text_heuristic_needs_three_lines_and_two_labels():
    assert looks_like_program_text(PASTED_PROGRAM) is True
    assert looks_like_program_text("Bienvenida: Ana\nCantos: Juan") is False
    assert looks_like_program_text("hola\nque tal\nBienvenida: Ana") is False


def test_bulleted_lines_do_not_count_as_labels():
    text = "Programa\n• Himno: 100\n- Link: https://x.y\nBienvenida: Ana"
    assert looks_like_program_text(text) is False


# --- Local fallback ---

@pytest.mark.parametrize(
    "message, intent",
    [
        ("Hola, buenos días", Intent.SALUDO),
        ("ayuda", Intent.AYUDA),
        ("crear programa para el 25/01", Intent.CREAR_PROGRAMA),
        ("enviar programa", Intent.ENVIAR_PROGRAMA),
        ("ver programa del sábado", Intent.VER_PROGRAMA),
        ("buscar María", Intent.BUSCAR_USUARIO),
        ("qué tal el clima", Intent.DESCONOCIDO),
    ],
)
def test_fallback_rules(message, intent):
    assert LocalIntentClassifier.fallback(message).intent == intent


def test_fallback_assign_extracts_part_user_and_code():
    result = LocalIntentClassifier.fallback("asignar bienvenida a María Pérez en PMA-X3kP9m")
    assert result.intent == Intent.ASIGNAR_PARTE
    assert result.entities == {"parte": "bienvenida", "usuario": "María Pérez", "codigo": "PMA-X3kP9m"}


def test_fallback_create_user_splits_country_code():
    result = LocalIntentClassifier.fallback("registrar a Rubí Díaz +51 924 999 954")
    assert result.intent == Intent.CREAR_USUARIO
    assert result.entities == {"nombre": "Rubí Díaz", "telefono": "924999954", "codigoPais": "51"}
    assert result.required_roles == ["admin"]


def test_fallback_unknown_has_low_confidence():
    result = LocalIntentClassifier.fallback("asdf")
    assert result.intent == Intent.DESCONOCIDO
    assert result.confidence == 0.3


# --- OpenAI classifier ---

@pytest.mark.asyncio
async def test_openai_classifier_skips_llm_for_shortcuts():
    ai = MagicMock()
    ai.complete_json = AsyncMock()
    classifier = OpenAIIntentClassifier(ai)

    result = await classifier.classify("JA-A1B2C3D4")

    assert result.intent == Intent.REGISTRAR_ASISTENCIA
    ai.complete_json.assert_not_awaited()


@pytest.mark.asyncio
async def test_openai_classifier_parses_llm_payload():
    ai = MagicMock()
    ai.complete_json = AsyncMock(return_value={
        "intent": "CREAR_PROGRAMA",
        "entities": {"fecha": "mañana"},
        "confidence": 0.92,
        "requiresAuth": True,
        "requiredRoles": ["admin", "lider"],
    })
    classifier = OpenAIIntentClassifier(ai)

    result = await classifier.classify("arma el programa de mañana porfa")

    assert result.intent == Intent.CREAR_PROGRAMA
    assert result.entities == {"fecha": "mañana"}
    assert result.confidence == pytest.approx(0.92)
    assert result.requires_auth is True


@pytest.mark.asyncio
async def test_openai_classifier_unknown_intent_string_becomes_desconocido():
    ai = MagicMock()
    ai.complete_json = AsyncMock(return_value={"intent": "pedir_pizza", "confidence": 0.9})
    result = await OpenAIIntentClassifier(ai).classify("una pizza por favor")
    assert result.intent == Intent.DESCONOCIDO


@pytest.mark.asyncio
async def test_openai_failure_falls_back_to_local_rules_without_retry():
    ai = MagicMock()
    ai.complete_json = AsyncMock(side_effect=ClassifierError("timeout"))
    classifier = OpenAIIntentClassifier(ai)

    result = await classifier.classify("Hola hermanos")

    assert result.intent == Intent.SALUDO
    ai.complete_json.assert_awaited_once()


def test_classifier_strategy_follows_api_key(mocker):
    settings_obj = MagicMock(openai_api_key=None)
    assert type(build_intent_classifier(settings_obj)) is LocalIntentClassifier

    settings_obj = MagicMock(openai_api_key="sk-test", openai_model="gpt-4o-mini")
    assert isinstance(build_intent_classifier(settings_obj, ai=MagicMock()), OpenAIIntentClassifier)


@pytest.mark.parametrize(
    "payload, confidence, requires_auth",
    [
        ({"intent": "SALUDO", "confidence": 0, "requiresAuth": False}, 0.0, False),
        ({"intent": "SALUDO", "requiresAuth": "false"}, 0.5, False),
        ({"intent": "SALUDO", "requiresAuth": 1}, 0.5, False),
        ({"intent": "SALUDO", "confidence": 1.7, "requiresAuth": True}, 1.0, True),
    ],
)
def test_llm_payload_keeps_zero_confidence_and_needs_a_real_boolean(payload, confidence, requires_auth):
    result = OpenAIIntentClassifier.parse_llm_payload(payload)
    assert result.confidence == confidence
    assert result.requires_auth is requires_auth
