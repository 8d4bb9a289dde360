# /covima/utils/dates.py

import re
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from covima.config.settings import settings

# Date helpers for the bot. Every "today" is computed in the configured
# church timezone; stored dates are naive midnights of that local day.

_WEEKDAYS = ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"]
_MONTHS = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]

_HHMM_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")
_DATE_RE = re.compile(r"(\d{1,2})[/\-](\d{1,2})(?:[/\-](\d{2,4}))?")


def now_local() -> datetime:
    return datetime.now(ZoneInfo(settings.timezone))


def week_start(day: date) -> date:
    """Monday of the ISO week containing `day`."""
    return day - timedelta(days=day.weekday())


def as_datetime(day: date) -> datetime:
    """Midnight of `day`, the form dates are stored in."""
    return datetime.combine(day, time.min)


def to_time(value) -> time:
    """Accepts a `time`, a `datetime` or an 'HH:MM' string."""
    if isinstance(value, datetime):
        return value.time()
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        match = _HHMM_RE.match(value)
        if match:
            return time(int(match.group(1)), int(match.group(2)))
    raise ValueError(f"Unsupported time value: {value!r}")


def minutes_of_day(value) -> int:
    t = to_time(value)
    return t.hour * 60 + t.minute


def format_hhmm(value) -> str:
    t = to_time(value)
    return f"{t.hour:02d}:{t.minute:02d}"


def is_within_window(moment: datetime, hora_inicio, hora_fin, margen_minutos: int = 0) -> bool:
    """
    True when the wall-clock minute of `moment` falls in
    [hora_inicio - margen, hora_fin). The date part is ignored.
    """
    actual = moment.hour * 60 + moment.minute
    inicio = minutes_of_day(hora_inicio) - max(margen_minutos or 0, 0)
    fin = minutes_of_day(hora_fin)
    return inicio <= actual < fin


def parse_fecha(texto: Optional[str], today: date) -> Optional[date]:
    """Understands 'hoy', 'mañana', 'dd/mm' and 'dd/mm/yyyy'."""
    if not texto:
        return None
    lower = texto.lower()
    if re.search(r"\bhoy\b", lower):
        return today
    if re.search(r"ma[ñn]ana", lower):
        return today + timedelta(days=1)

    iso = re.search(r"(\d{4})-(\d{2})-(\d{2})", texto)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return None

    match = _DATE_RE.search(texto)
    if not match:
        return None
    dia, mes = int(match.group(1)), int(match.group(2))
    anio = int(match.group(3)) if match.group(3) else today.year
    if anio < 100:
        anio += 2000
    try:
        return date(anio, mes, dia)
    except ValueError:
        return None


def format_fecha(day) -> str:
    """'sábado 25 de enero' style long date."""
    if isinstance(day, datetime):
        day = day.date()
    return f"{_WEEKDAYS[day.weekday()]} {day.day} de {_MONTHS[day.month - 1]}"


def format_fecha_corta(day) -> str:
    if isinstance(day, datetime):
        day = day.date()
    return f"{day.day:02d}/{day.month:02d}/{day.year}"


def format_minutes(total: int) -> str:
    """Minutes since midnight as 'HH:MM', wrapping around the day."""
    total %= 24 * 60
    return f"{total // 60:02d}:{total % 60:02d}"
