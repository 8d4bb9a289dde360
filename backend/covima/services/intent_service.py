# /covima/services/intent_service.py

import logging
import re
from typing import Any, Dict, Optional

from covima.config.prompts import INTENT_CLASSIFICATION_PROMPT
from covima.config.settings import Settings, settings
from covima.models.intent import ADMIN_ROLES, LEADER_ROLES, MEMBER_ROLES, Intent, IntentResult
from covima.services.ai_service import AIService, ai_service
from covima.utils.exceptions import ClassifierError
from covima.utils.metrics import intent_counter

# Turns free text into an IntentResult. Unambiguous shapes (QR codes,
# program codes, explicit phrasings) are matched locally first; the LLM only
# sees free-form text, and a local keyword classifier covers its absence or
# failure. classify() never raises.

logger = logging.getLogger(__name__)

QR_CODE_PATTERN = r"[A-Z]{2}-[A-Z0-9]{8}"
PROGRAM_CODE_PATTERN = r"[A-Z]{2,3}-[A-Za-z0-9]{6}"

MANUAL_REGISTRATION_RE = re.compile(
    r"(?:registrar|register)\s+(?:asistencia\s+de\s+|a\s+)?(.+?)\s+(?:en|at|in)\s+(" + QR_CODE_PATTERN + r")\b",
    re.IGNORECASE,
)
QR_CODE_RE = re.compile(r"\b" + QR_CODE_PATTERN + r"\b", re.IGNORECASE)
EDIT_PROGRAM_RE = re.compile(
    r"^editar\s+programa\s+(" + PROGRAM_CODE_PATTERN + r")\b", re.IGNORECASE | re.MULTILINE
)
# Prefix letters must be upper case so hyphenated words ("ex-alumno") are not codes.
PROGRAM_CODE_RE = re.compile(r"\b" + PROGRAM_CODE_PATTERN + r"\b")
LABEL_VALUE_LINE_RE = re.compile(r"^[^•\-*].+?:\s*.+")

GREETING_RE = re.compile(r"hola|buen[oa]s?\s*(d[ií]as?|tardes?|noches?)", re.IGNORECASE)
HELP_RE = re.compile(r"ayuda|help|comandos|men[uú]", re.IGNORECASE)
CREATE_PROGRAM_RE = re.compile(r"crear\s*(programa|sesi[oó]n)", re.IGNORECASE)
SEND_PROGRAM_RE = re.compile(r"enviar\s*programa", re.IGNORECASE)
ASSIGN_PART_RE = re.compile(r"asignar\s+(.+?)\s+a\s+(.+)", re.IGNORECASE)
ASSIGN_CODE_SUFFIX_RE = re.compile(r"\s+en\s+(" + PROGRAM_CODE_PATTERN + r")\s*$", re.IGNORECASE)
CREATE_USER_RE = re.compile(r"(?:registrar\s+a|crear\s+usuario)\s+(.+?)\s+(\+?[\d][\d\s\-]{8,})$", re.IGNORECASE)
CREATE_USER_LOOSE_RE = re.compile(r"registrar\s*(a|usuario)|crear\s*usuario", re.IGNORECASE)
SEARCH_USER_RE = re.compile(r"^buscar\s+(.+)", re.IGNORECASE)
VIEW_PROGRAM_RE = re.compile(r"ver\s+programa|programa\s+del", re.IGNORECASE)

PHONE_LIKE_RE = re.compile(r"^\+?[\d\s\-]{9,}$")
BARE_CODE_MAX_WORDS = 4


def looks_like_program_text(message: str) -> bool:
    """
    A pasted program: at least 3 non-blank lines, 2+ of them shaped like
    'label: value' and not starting with a bullet or dash.
    """
    lines = [line.strip() for line in message.splitlines() if line.strip()]
    if len(lines) < 3:
        return False
    labelled = [line for line in lines if LABEL_VALUE_LINE_RE.match(line)]
    return len(labelled) >= 2


def _result(intent: Intent, confidence: float, roles=None, entities: Optional[Dict[str, Any]] = None) -> IntentResult:
    roles = list(roles or [])
    return IntentResult(
        intent=intent,
        entities=entities or {},
        confidence=confidence,
        requires_auth=bool(roles),
        required_roles=roles,
    )


def _manual_registration(message: str, confidence: float) -> Optional[IntentResult]:
    match = MANUAL_REGISTRATION_RE.search(message)
    if not match:
        return None
    subject = match.group(1).strip()
    entities = {"nombreUsuario": subject, "codigoQR": match.group(2).upper()}
    if PHONE_LIKE_RE.match(subject):
        entities["telefonoUsuario"] = re.sub(r"\D", "", subject)
    return _result(Intent.REGISTRAR_ASISTENCIA_MANUAL, confidence, LEADER_ROLES, entities)


def match_shortcuts(message: str) -> Optional[IntentResult]:
    """Deterministic pre-classification. First match wins; None when nothing applies."""
    manual = _manual_registration(message, 1.0)
    if manual:
        return manual

    qr = QR_CODE_RE.search(message)
    if qr:
        return _result(Intent.REGISTRAR_ASISTENCIA, 1.0, entities={"codigoQR": qr.group(0).upper()})

    edit = EDIT_PROGRAM_RE.search(message)
    if edit:
        return _result(Intent.EDITAR_PROGRAMA_TEXTO, 1.0, LEADER_ROLES, {"codigo": edit.group(1)})

    # Before the bare code check, so a pasted program is not read as a lookup.
    if looks_like_program_text(message):
        return _result(Intent.EDITAR_PROGRAMA_TEXTO, 0.95, LEADER_ROLES)

    # Only short messages ("PMA-X3kP9m", "ver programa PMA-X3kP9m"); longer ones
    # such as "asignar ... en PMA-X3kP9m" go on to classification.
    code = PROGRAM_CODE_RE.search(message)
    if code and len(message.split()) <= BARE_CODE_MAX_WORDS:
        return _result(Intent.VER_PROGRAMA, 1.0, MEMBER_ROLES, {"codigo": code.group(0)})

    return None


class LocalIntentClassifier:
    """Shortcuts plus keyword rules; needs no external service."""

    source = "local"

    async def classify(self, message: str, context: Any = None) -> IntentResult:
        shortcut = match_shortcuts(message)
        if shortcut:
            intent_counter.labels(intent=shortcut.intent.value, source="shortcut").inc()
            return shortcut
        return self._fallback(message)

    def _fallback(self, message: str) -> IntentResult:
        result = self.fallback(message)
        intent_counter.labels(intent=result.intent.value, source="fallback").inc()
        return result

    @staticmethod
    def fallback(message: str) -> IntentResult:
        """Ordered keyword rules. First match wins, otherwise DESCONOCIDO at 0.3."""
        text = message.strip()

        if GREETING_RE.search(text):
            return _result(Intent.SALUDO, 0.8)

        if HELP_RE.search(text):
            return _result(Intent.AYUDA, 0.8)

        if CREATE_PROGRAM_RE.search(text):
            return _result(Intent.CREAR_PROGRAMA, 0.7, LEADER_ROLES)

        if SEND_PROGRAM_RE.search(text):
            return _result(Intent.ENVIAR_PROGRAMA, 0.7, LEADER_ROLES)

        assign = ASSIGN_PART_RE.search(text)
        if assign:
            usuario = assign.group(2).strip()
            entities = {"parte": assign.group(1).strip()}
            code = ASSIGN_CODE_SUFFIX_RE.search(usuario)
            if code:
                entities["codigo"] = code.group(1)
                usuario = usuario[: code.start()].strip()
            entities["usuario"] = usuario
            return _result(Intent.ASIGNAR_PARTE, 0.8, LEADER_ROLES, entities)

        manual = _manual_registration(text, 0.9)
        if manual:
            return manual

        create_user = CREATE_USER_RE.search(text)
        if create_user:
            digits = re.sub(r"\D", "", create_user.group(2))
            entities = {
                "nombre": create_user.group(1).strip(),
                "telefono": digits[-9:],
                "codigoPais": digits[:-9] or "51",
            }
            return _result(Intent.CREAR_USUARIO, 0.9, ADMIN_ROLES, entities)

        if CREATE_USER_LOOSE_RE.search(text):
            return _result(Intent.CREAR_USUARIO, 0.7, ADMIN_ROLES)

        search = SEARCH_USER_RE.search(text)
        if search:
            return _result(Intent.BUSCAR_USUARIO, 0.7, LEADER_ROLES, {"busqueda": search.group(1).strip()})

        code = PROGRAM_CODE_RE.search(text)
        if code:
            return _result(Intent.VER_PROGRAMA, 0.8, MEMBER_ROLES, {"codigo": code.group(0)})

        if VIEW_PROGRAM_RE.search(text):
            return _result(Intent.VER_PROGRAMA, 0.7, MEMBER_ROLES)

        if looks_like_program_text(message):
            return _result(Intent.EDITAR_PROGRAMA_TEXTO, 0.9, LEADER_ROLES)

        return IntentResult(intent=Intent.DESCONOCIDO, confidence=0.3)


class OpenAIIntentClassifier(LocalIntentClassifier):
    """Shortcuts, then the LLM; any LLM failure degrades to the keyword rules."""

    source = "openai"

    def __init__(self, ai: AIService):
        self.ai = ai

    async def classify(self, message: str, context: Any = None) -> IntentResult:
        shortcut = match_shortcuts(message)
        if shortcut:
            intent_counter.labels(intent=shortcut.intent.value, source="shortcut").inc()
            return shortcut

        try:
            payload = await self.ai.complete_json(INTENT_CLASSIFICATION_PROMPT, message)
        except ClassifierError as e:
            logger.warning(f"LLM classification failed, using local rules: {e}")
            return self._fallback(message)

        result = self.parse_llm_payload(payload)
        logger.debug(f"Intent classified by LLM: {result.intent.value} ({result.confidence})")
        intent_counter.labels(intent=result.intent.value, source="llm").inc()
        return result

    @staticmethod
    def parse_llm_payload(payload: Dict[str, Any]) -> IntentResult:
        """Missing or unusable fields fall back to desconocido / 0.5 / empty."""
        entities = payload.get("entities")
        entities = dict(entities) if isinstance(entities, dict) else {}
        if isinstance(entities.get("codigoQR"), str):
            entities["codigoQR"] = entities["codigoQR"].strip().upper()

        return IntentResult(
            intent=payload.get("intent") or Intent.DESCONOCIDO,
            entities=entities,
            confidence=payload.get("confidence", 0.5),
            requires_auth=payload.get("requiresAuth") is True,
            required_roles=payload.get("requiredRoles") or [],
        )


def build_intent_classifier(settings_obj: Settings, ai: Optional[AIService] = None) -> LocalIntentClassifier:
    """The remote classifier when an OpenAI key is configured, the local one otherwise."""
    if settings_obj.openai_api_key:
        return OpenAIIntentClassifier(ai or AIService(settings_obj.openai_api_key, settings_obj.openai_model))
    return LocalIntentClassifier()


# Globally accessible instance
intent_classifier = build_intent_classifier(settings, ai_service)
