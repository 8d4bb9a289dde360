# /covima/workflows/form_fields.py

"""
Pure functions for dynamic attendance forms.

validate_response() turns the raw reply to one FormField into a typed value
or a user-facing error; render_question() builds the prompt for a field.
No database access, no messaging, no state mutation.
"""

import re
from typing import Any, Optional, TypedDict

from covima.config import strings
from covima.models.flow import FieldType, FormField

TRUE_WORDS = {"sí", "si", "yes", "1", "true"}
FALSE_WORDS = {"no", "0", "false"}

_LEADING_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:[.,]\d+)?|[.,]\d+)")
_INDEX_RE = re.compile(r"^\d+$")


class FieldValidation(TypedDict):
    """Result of validating one answer."""
    is_valid: bool
    value: Any
    message: Optional[str]


def _ok(value: Any) -> FieldValidation:
    return {"is_valid": True, "value": value, "message": None}


def _error(message: str) -> FieldValidation:
    return {"is_valid": False, "value": None, "message": message}


def format_number(value: float) -> str:
    """1.0 -> '1', 2.5 -> '2.5'."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def parse_number(text: str) -> Optional[float]:
    """Parses the leading numeric token ('3 días' -> 3.0); None when there is none."""
    match = _LEADING_NUMBER_RE.match(text.strip())
    if not match:
        return None
    return float(match.group(0).replace(",", "."))


def _validate_number(text: str, field: FormField) -> FieldValidation:
    number = parse_number(text)
    if number is None:
        return _error(strings.FIELD_NUMBER_INVALID)
    if field.valor_minimo is not None and number < field.valor_minimo:
        return _error(strings.FIELD_NUMBER_MIN.format(minimo=format_number(field.valor_minimo)))
    if field.valor_maximo is not None and number > field.valor_maximo:
        return _error(strings.FIELD_NUMBER_MAX.format(maximo=format_number(field.valor_maximo)))
    return _ok(number)


def _validate_checkbox(text: str) -> FieldValidation:
    lower = text.lower()
    if lower in TRUE_WORDS:
        return _ok(True)
    if lower in FALSE_WORDS:
        return _ok(False)
    return _error(strings.FIELD_CHECKBOX_INVALID)


def _validate_select(text: str, field: FormField) -> FieldValidation:
    options = field.opciones
    if _INDEX_RE.match(text):
        index = int(text)
        if 1 <= index <= len(options):
            return _ok(options[index - 1].value)

    lower = text.lower()
    for option in options:
        if option.value.lower() == lower or option.label.lower() == lower:
            return _ok(option.value)
    return _error(strings.FIELD_SELECT_INVALID)


def validate_response(response: str, field: FormField) -> FieldValidation:
    """
    Validates the raw reply for `field`.

    Args:
        response: Text exactly as the user sent it
        field: Field the cursor points at

    Returns:
        FieldValidation with the typed value, or the message to re-prompt with
    """
    text = (response or "").strip()

    if field.tipo == FieldType.NUMBER:
        return _validate_number(text, field)
    if field.tipo == FieldType.CHECKBOX:
        return _validate_checkbox(text)
    if field.tipo == FieldType.SELECT:
        return _validate_select(text, field)

    if not text and field.requerido:
        return _error(strings.FIELD_REQUIRED)
    return _ok(text)


def render_question(field: FormField) -> str:
    """Builds the prompt for one field, with the hint its type calls for."""
    lines = [f"📝 *{field.label}*"]

    if field.placeholder:
        lines.append(f"_{field.placeholder}_")

    if field.tipo == FieldType.NUMBER and (field.valor_minimo is not None or field.valor_maximo is not None):
        minimo = format_number(field.valor_minimo) if field.valor_minimo is not None else "0"
        maximo = format_number(field.valor_maximo) if field.valor_maximo is not None else "∞"
        lines.append(strings.QUESTION_RANGE_HINT.format(minimo=minimo, maximo=maximo))

    if field.tipo == FieldType.SELECT and field.opciones:
        lines.append("")
        lines.append("Opciones:")
        for i, option in enumerate(field.opciones, start=1):
            lines.append(f"{i}. {option.label}")
        lines.append("")
        lines.append(strings.QUESTION_SELECT_HINT)

    if field.tipo == FieldType.CHECKBOX:
        lines.append(strings.QUESTION_CHECKBOX_HINT)

    return "\n".join(lines)


def format_answer(value: Any) -> str:
    """Human rendering of a stored answer for confirmation messages."""
    if isinstance(value, bool):
        return "Sí" if value else "No"
    if isinstance(value, float):
        return format_number(value)
    return str(value)
