# /covima/workflows/program_parser.py

"""
Deterministic parser for a program pasted as text, used when no language
model is configured or the model call fails.

Expected shape (only the first lines may carry the header):

    Programa Maranatha Adoración 25/01/2026
    Bienvenida: María Pérez
    Espacio de cantos: Juan - Ana
    • Himno 100 https://youtu.be/xyz
    Oración intercesora: Pedro

Bullet or URL lines attach a link to the part above them.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from covima.utils.dates import parse_fecha

HEADER_LINES = 3

_CODE_RE = re.compile(r"\b([A-Z]{2,3}-[A-Za-z0-9]{6})\b")
_URL_RE = re.compile(r"(https?://[^\s\]]+)")
_FULL_DATE_RE = re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}")
_PART_LINE_RE = re.compile(r"^(.+?):\s*(.*)$")
_BULLET_RE = re.compile(r"^[•\-*]\s*")
_INVISIBLE_RE = re.compile(r"[\u200B-\u200D\uFEFF\u2060\u00A0\u202F\u205F\u3000\u2800-\u28FF]")
_DIRIGIR_RE = re.compile(r"\s*/\s*dirigir", re.IGNORECASE)
_NON_WORD_RE = re.compile(r"[^\w\s]")
_MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
# Content that names a song or a resource rather than people
_NOT_PEOPLE_RE = re.compile(r"himno|adventista|youtube|kahoot", re.IGNORECASE)
_NAME_SEPARATOR_RE = re.compile(r"[-,]")
_EDIT_PREFIX_RE = re.compile(r"^\s*editar\s+programa\b", re.IGNORECASE)
_TRAILING_ARTICLE_RE = re.compile(r"(?:^|\s+)(?:del|para\s+el|el)$", re.IGNORECASE)


@dataclass
class ParsedLink:
    nombre: str
    url: str


@dataclass
class ParsedPart:
    parte: str
    linea: int
    nombres: List[str] = field(default_factory=list)
    links: List[ParsedLink] = field(default_factory=list)


@dataclass
class ParsedProgram:
    fecha: Optional[date]
    codigo: Optional[str]
    titulo: Optional[str]
    partes: List[ParsedPart] = field(default_factory=list)


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_part_name(text: str) -> str:
    """Lowercase, accent-free, single-spaced; used to compare part names."""
    return " ".join(strip_accents(text).lower().split())


def _clean_part_name(raw: str) -> str:
    name = _DIRIGIR_RE.sub("", raw.strip())
    name = _INVISIBLE_RE.sub("", name)
    name = _NON_WORD_RE.sub("", name)
    return " ".join(name.split())


def _split_names(contenido: str) -> List[str]:
    if not contenido or _NOT_PEOPLE_RE.search(contenido):
        return []
    return [n.strip() for n in _NAME_SEPARATOR_RE.split(contenido) if n.strip()]


def _parse_link(line: str) -> Optional[ParsedLink]:
    match = _URL_RE.search(line)
    if not match:
        return None
    url = match.group(1)
    nombre = _BULLET_RE.sub("", line)
    nombre = re.sub(r"\[link\]", "", nombre, flags=re.IGNORECASE)
    nombre = nombre.replace(url, "")
    nombre = _MARKDOWN_LINK_RE.sub(r"\1", nombre).strip(" -:")
    return ParsedLink(nombre=nombre or "Link", url=url)


def _title_from(line: str) -> Optional[str]:
    title = _EDIT_PREFIX_RE.sub("", _CODE_RE.sub("", line))
    title = re.sub(r"\d{1,2}[/\-]\d{1,2}(?:[/\-]\d{2,4})?", "", title)
    title = _INVISIBLE_RE.sub(" ", title)
    title = " ".join(title.strip(" -:|*_").split())
    title = _TRAILING_ARTICLE_RE.sub("", title)
    if not title or ":" in title:
        return None
    return title


def parse_program_text(texto: str, today: date) -> ParsedProgram:
    """
    Splits a pasted program into header data and ordered parts.

    The date and code are searched in the first lines only; every later line
    shaped 'Parte: nombres' opens a part. Line numbers are 1-based.
    """
    lines = [line.strip() for line in texto.splitlines() if line.strip()]
    header = lines[:HEADER_LINES]

    codigo = None
    for line in header:
        match = _CODE_RE.search(line)
        if match:
            codigo = match.group(1)
            break

    fecha = None
    for line in header:
        fecha = parse_fecha(line, today)
        if fecha:
            break

    titulo = _title_from(lines[0]) if lines else None

    partes: List[ParsedPart] = []
    for index, line in enumerate(lines[1:], start=2):
        is_bullet = bool(_BULLET_RE.match(line))
        if is_bullet or _URL_RE.search(line):
            link = _parse_link(line)
            if link and partes:
                partes[-1].links.append(link)
            continue

        if _FULL_DATE_RE.search(line):
            continue

        match = _PART_LINE_RE.match(line)
        if not match:
            continue

        nombre_parte = _clean_part_name(match.group(1))
        if not nombre_parte:
            continue
        contenido = _INVISIBLE_RE.sub("", match.group(2)).strip()
        partes.append(ParsedPart(parte=nombre_parte, linea=index, nombres=_split_names(contenido)))

    return ParsedProgram(fecha=fecha, codigo=codigo, titulo=titulo, partes=partes)


def from_llm_payload(payload: Dict[str, Any], texto: str, today: date) -> ParsedProgram:
    """Builds a ParsedProgram from the model's JSON, reading the code from the raw text."""
    fecha = None
    raw_fecha = payload.get("fecha")
    if isinstance(raw_fecha, str):
        fecha = parse_fecha(raw_fecha, today)

    code = _CODE_RE.search(texto)
    titulo = payload.get("titulo") if isinstance(payload.get("titulo"), str) else None

    partes: List[ParsedPart] = []
    for position, item in enumerate(payload.get("partes") or [], start=1):
        if not isinstance(item, dict) or not str(item.get("parte") or "").strip():
            continue
        nombres = [str(n).strip() for n in (item.get("nombres") or []) if str(n).strip()]
        links = [
            ParsedLink(nombre=str(link.get("nombre") or "Link"), url=str(link["url"]))
            for link in (item.get("links") or [])
            if isinstance(link, dict) and link.get("url")
        ]
        partes.append(
            ParsedPart(parte=_clean_part_name(str(item["parte"])), linea=position, nombres=nombres, links=links)
        )

    return ParsedProgram(
        fecha=fecha,
        codigo=code.group(1) if code else None,
        titulo=titulo.strip() if titulo else None,
        partes=partes,
    )
