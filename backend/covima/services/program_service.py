# /covima/services/program_service.py

import logging
import secrets
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from rapidfuzz import fuzz, process, utils

from covima.config import strings
from covima.config.prompts import PROGRAM_PARSE_PROMPT
from covima.models.domain import Assignment, PartCatalogEntry, Program, ProgramLink, ProgramPart
from covima.services.ai_service import AIService
from covima.utils.dates import as_datetime, format_fecha
from covima.utils.exceptions import ClassifierError
from covima.workflows.program_parser import (
    ParsedProgram,
    from_llm_payload,
    normalize_part_name,
    parse_program_text,
    strip_accents,
)

# Program logic shared by the programs and notifications handlers: codes,
# lookups, name-based assignment and the pasted-text importer.

logger = logging.getLogger(__name__)

# No 0/O or 1/I/L, so codes survive being read aloud or retyped
CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
CODE_LENGTH = 6
FUZZY_MATCH_THRESHOLD = 80

# Accent-free spellings people type -> catalog name
PART_ALIASES = {
    "oracion intercesora": "Oración Intercesora",
    "oracion inicial": "Oración Inicial",
    "oracion final": "Oración Final",
}


def generate_code(titulo: str) -> str:
    """Initials of the title (up to 3 letters, 'PRG' if fewer than 2) + '-' + 6 random characters."""
    words = [w for w in strip_accents(titulo or "").split() if w]
    if len(words) == 1:
        initials = words[0][:3]
    else:
        initials = "".join(w[0] for w in words[:3])
    initials = "".join(ch for ch in initials.upper() if "A" <= ch <= "Z")
    if len(initials) < 2:
        initials = "PRG"
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{initials}-{suffix}"


def _name_processor(value: str) -> str:
    return utils.default_process(strip_accents(value))


def match_catalog_part(nombre: str, catalog: List[PartCatalogEntry]) -> Optional[PartCatalogEntry]:
    """
    Exact accent-insensitive match first, then containment either way. When
    both names have several words the second words must share their first
    4 letters, so 'Oración Inicial' never lands on 'Oración Intercesora'.
    """
    wanted = normalize_part_name(PART_ALIASES.get(normalize_part_name(nombre), nombre))
    if not wanted:
        return None

    for entry in catalog:
        if normalize_part_name(entry.nombre) == wanted:
            return entry

    wanted_words = wanted.split()
    for entry in catalog:
        candidate = normalize_part_name(entry.nombre)
        if wanted not in candidate and candidate not in wanted:
            continue
        candidate_words = candidate.split()
        if len(wanted_words) > 1 and len(candidate_words) > 1:
            if wanted_words[1][:4] == candidate_words[1][:4]:
                return entry
        else:
            return entry
    return None


def render_program(program: Program) -> str:
    """Program text as shown in chat: header, then one line per part with its people and links."""
    lines = [
        f"📋 *{program.titulo}*",
        f"🔖 Código: {program.codigo}",
        f"📅 {format_fecha(program.fecha)}",
        f"📊 Estado: {program.estado}",
        "",
    ]
    for parte in sorted(program.partes, key=lambda p: p.orden):
        nombres = ", ".join(a.nombre for a in sorted(program.assignments_for(parte.parte_id), key=lambda a: a.orden))
        if parte.es_fija and parte.texto_fijo:
            lines.append(f"*{parte.nombre}:* {parte.texto_fijo}")
        elif nombres:
            lines.append(f"*{parte.nombre}:* {nombres}")
        else:
            lines.append(f"*{parte.nombre}:* {strings.PROGRAM_PART_UNASSIGNED}")
        for link in sorted(program.links_for(parte.parte_id), key=lambda link: link.orden):
            lines.append(f"• {link.nombre}: {link.url}")
    return "\n".join(lines)


@dataclass
class AssignedPart:
    parte: str
    nombre: str
    es_usuario: bool


@dataclass
class ProgramTextResult:
    codigo: str
    fecha: date
    partes_actualizadas: int = 0
    asignaciones_creadas: int = 0
    errores: List[str] = field(default_factory=list)


class ProgramService:
    def __init__(self, db, ai: Optional[AIService] = None):
        self.db = db
        self.ai = ai

    # --- Lookups ---

    async def find_by_code(self, codigo: str) -> Optional[Program]:
        document = await self.db.get_program_by_code(codigo)
        return Program.model_validate(document) if document else None

    async def find_by_date(self, fecha: date) -> List[Program]:
        documents = await self.db.get_programs_by_date(as_datetime(fecha))
        return [Program.model_validate(d) for d in documents]

    async def next_program(self, today: date) -> Optional[Program]:
        document = await self.db.get_next_program(as_datetime(today))
        return Program.model_validate(document) if document else None

    async def part_catalog(self, only_mandatory: bool = False) -> List[PartCatalogEntry]:
        return [PartCatalogEntry.model_validate(p) for p in await self.db.get_part_catalog(only_mandatory)]

    # --- Creation ---

    async def create_program(
        self, fecha: date, creado_por: Optional[str] = None, titulo: Optional[str] = None, with_mandatory_parts: bool = True
    ) -> Program:
        titulo = titulo or strings.PROGRAM_DEFAULT_TITLE
        partes: List[ProgramPart] = []
        if with_mandatory_parts:
            for orden, entry in enumerate(await self.part_catalog(only_mandatory=True), start=1):
                partes.append(
                    ProgramPart(
                        parte_id=entry.id,
                        nombre=entry.nombre,
                        orden=orden,
                        es_fija=entry.es_fija,
                        texto_fijo=entry.texto_fijo,
                    )
                )

        document = await self.db.insert_program(
            {
                "codigo": generate_code(titulo),
                "fecha": as_datetime(fecha),
                "titulo": titulo,
                "estado": "borrador",
                "partes": [p.model_dump() for p in partes],
                "asignaciones": [],
                "links": [],
                "creado_por": creado_por,
            }
        )
        logger.info(f"Program {document['codigo']} created for {fecha.isoformat()}")
        return Program.model_validate(document)

    # --- Assignment ---

    @staticmethod
    def match_user(nombre: str, users: List[Dict[str, Any]]) -> Tuple[Optional[str], str]:
        """(user id, display name) of the best active user scoring >= 80, else (None, raw name)."""
        choices = {u["_id"]: u.get("nombre", "") for u in users if u.get("nombre")}
        if not choices:
            return None, nombre
        best = process.extractOne(
            nombre, choices, scorer=fuzz.WRatio, processor=_name_processor, score_cutoff=FUZZY_MATCH_THRESHOLD
        )
        if best is None:
            return None, nombre
        matched_name, _, user_id = best
        return user_id, matched_name

    def _companion_part_name(self, parte: ProgramPart, previous: int) -> Optional[str]:
        lower = normalize_part_name(parte.nombre)
        if "bienvenida" in lower:
            return "oracion inicial" if previous == 0 else "oracion final"
        if "cantos" in lower:
            return "himno final"
        return None

    async def _find_companion(self, program: Program, wanted: str) -> Optional[ProgramPart]:
        for parte in program.partes:
            if wanted in normalize_part_name(parte.nombre):
                return parte
        for entry in await self.part_catalog():
            if wanted in normalize_part_name(entry.nombre):
                return ProgramPart(
                    parte_id=entry.id,
                    nombre=entry.nombre,
                    orden=len(program.partes) + 1,
                    es_fija=entry.es_fija,
                    texto_fijo=entry.texto_fijo,
                )
        return None

    async def assign_by_name(self, program: Program, parte: ProgramPart, nombre: str) -> List[AssignedPart]:
        """
        Assigns `nombre` to `parte`. The welcome part also takes the opening
        prayer (or the closing one when someone already welcomes), and the
        singing slot also takes the closing hymn.
        """
        users = await self.db.list_active_users()
        usuario_id, display = self.match_user(nombre, users)

        asignaciones = list(program.asignaciones)
        partes = list(program.partes)
        previous = len(program.assignments_for(parte.parte_id))
        asignaciones.append(Assignment(parte_id=parte.parte_id, usuario_id=usuario_id, nombre=display, orden=previous + 1))
        created = [AssignedPart(parte=parte.nombre, nombre=display, es_usuario=usuario_id is not None)]

        companion_name = self._companion_part_name(parte, previous)
        companion = await self._find_companion(program, companion_name) if companion_name else None
        if companion:
            existing = [a for a in asignaciones if a.parte_id == companion.parte_id]
            already = any((usuario_id and a.usuario_id == usuario_id) or a.nombre == display for a in existing)
            if not already:
                if all(p.parte_id != companion.parte_id for p in partes):
                    partes.append(companion)
                asignaciones.append(
                    Assignment(parte_id=companion.parte_id, usuario_id=usuario_id, nombre=display, orden=len(existing) + 1)
                )
                created.append(AssignedPart(parte=companion.nombre, nombre=display, es_usuario=usuario_id is not None))

        await self.db.update_program(
            program.id,
            {"partes": [p.model_dump() for p in partes], "asignaciones": [a.model_dump() for a in asignaciones]},
        )
        return created

    # --- Pasted text ---

    async def parse_text(self, texto: str, today: date, catalog: List[PartCatalogEntry]) -> ParsedProgram:
        """The language model when configured, the local parser otherwise or on failure."""
        if self.ai and self.ai.enabled:
            prompt = PROGRAM_PARSE_PROMPT + "\n\nPARTES DISPONIBLES: " + ", ".join(e.nombre for e in catalog)
            try:
                payload = await self.ai.complete_json(prompt, texto, max_tokens=1500)
                parsed = from_llm_payload(payload, texto, today)
                if parsed.partes:
                    return parsed
                logger.warning("LLM program parse returned no parts, using local parser")
            except ClassifierError as e:
                logger.warning(f"LLM program parse failed, using local parser: {e}")
        return parse_program_text(texto, today)

    async def process_text(
        self, texto: str, today: date, codigo: Optional[str] = None, creado_por: Optional[str] = None
    ) -> Optional[ProgramTextResult]:
        """
        Replaces the parts, assignments and links of a program with the ones
        in `texto`. The program is the one with the given (or pasted) code,
        else the first one on the pasted date, else a new one.

        Returns:
            None when neither a known code nor a date identifies the program
        """
        catalog = await self.part_catalog()
        parsed = await self.parse_text(texto, today, catalog)

        program = None
        for candidate in (codigo, parsed.codigo):
            if candidate and not program:
                program = await self.find_by_code(candidate)

        if not program and parsed.fecha:
            same_day = await self.find_by_date(parsed.fecha)
            program = same_day[0] if same_day else None
            if not program:
                program = await self.create_program(
                    parsed.fecha, creado_por=creado_por, titulo=parsed.titulo, with_mandatory_parts=False
                )
        if not program:
            return None

        result = ProgramTextResult(codigo=program.codigo, fecha=program.fecha.date())
        users = await self.db.list_active_users()
        partes: List[ProgramPart] = []
        asignaciones: List[Assignment] = []
        links: List[ProgramLink] = []

        for item in parsed.partes:
            entry = match_catalog_part(item.parte, catalog)
            if not entry:
                result.errores.append(f'Línea {item.linea}: Parte "{item.parte}" no encontrada')
                continue

            if all(p.parte_id != entry.id for p in partes):
                partes.append(
                    ProgramPart(
                        parte_id=entry.id,
                        nombre=entry.nombre,
                        orden=len(partes) + 1,
                        es_fija=entry.es_fija,
                        texto_fijo=entry.texto_fijo,
                    )
                )

            for orden, link in enumerate(item.links, start=1):
                links.append(ProgramLink(parte_id=entry.id, nombre=link.nombre, url=link.url, orden=orden))

            existing = sum(1 for a in asignaciones if a.parte_id == entry.id)
            for offset, nombre in enumerate(item.nombres, start=1):
                usuario_id, display = self.match_user(nombre, users)
                asignaciones.append(
                    Assignment(parte_id=entry.id, usuario_id=usuario_id, nombre=display, orden=existing + offset)
                )
                result.asignaciones_creadas += 1
            result.partes_actualizadas += 1

        result.asignaciones_creadas += self._inherit_closing_hymn(catalog, partes, asignaciones)

        await self.db.update_program(
            program.id,
            {
                "partes": [p.model_dump() for p in partes],
                "asignaciones": [a.model_dump() for a in asignaciones],
                "links": [link.model_dump() for link in links],
            },
        )
        logger.info(
            f"Program {program.codigo} updated from text: {result.partes_actualizadas} parts, "
            f"{result.asignaciones_creadas} assignments, {len(result.errores)} warnings"
        )
        return result

    @staticmethod
    def _inherit_closing_hymn(
        catalog: List[PartCatalogEntry], partes: List[ProgramPart], asignaciones: List[Assignment]
    ) -> int:
        """The closing hymn, when left empty, goes to whoever leads the singing slot."""
        cantos = next((e for e in catalog if "espacio de cantos" in normalize_part_name(e.nombre)), None)
        himno = next((e for e in catalog if "himno final" in normalize_part_name(e.nombre)), None)
        if not cantos or not himno or any(a.parte_id == himno.id for a in asignaciones):
            return 0

        singers = sorted((a for a in asignaciones if a.parte_id == cantos.id), key=lambda a: a.orden)
        if not singers:
            return 0
        if all(p.parte_id != himno.id for p in partes):
            partes.append(
                ProgramPart(parte_id=himno.id, nombre=himno.nombre, orden=len(partes) + 1, es_fija=himno.es_fija)
            )
        for orden, singer in enumerate(singers, start=1):
            asignaciones.append(
                Assignment(parte_id=himno.id, usuario_id=singer.usuario_id, nombre=singer.nombre, orden=orden)
            )
        return len(singers)
