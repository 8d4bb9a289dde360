# /covima/handlers/programs_handler.py

import logging
from typing import List

from covima.config import strings
from covima.handlers.base import BaseHandler
from covima.models.conversation import MessageContext
from covima.models.domain import Program
from covima.models.flow import MODULO_PROGRAMAS
from covima.models.intent import IntentResult
from covima.services.intent_service import PROGRAM_CODE_RE
from covima.services.program_service import ProgramService, render_program
from covima.utils.dates import format_fecha, format_fecha_corta, now_local, parse_fecha

logger = logging.getLogger(__name__)

MAX_WARNINGS_SHOWN = 5


def _program_list(programs: List[Program]) -> str:
    return "\n".join(f"• *{p.codigo}* - {p.titulo}" for p in programs)


class ProgramsHandler(BaseHandler):
    """Weekly worship programs: create, view, assign parts and import pasted text."""

    module = MODULO_PROGRAMAS

    def __init__(self, db, conversations, gateway, programs: ProgramService, clock=now_local):
        super().__init__(db, conversations, gateway)
        self.programs = programs
        self.clock = clock

    def _today(self):
        return self.clock().date()

    async def crear_programa(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        fecha = parse_fecha(result.entities.get("fecha") or message, self._today())
        if not fecha:
            await self.reply(ctx, strings.PROGRAM_DATE_REQUIRED)
            return

        try:
            existentes = await self.programs.find_by_date(fecha)
            if existentes:
                await self.reply(
                    ctx,
                    strings.PROGRAM_ALREADY_EXISTS.format(
                        total=len(existentes), fecha=format_fecha(fecha), lista=_program_list(existentes)
                    ),
                )
                return

            program = await self.programs.create_program(fecha, creado_por=ctx.usuario_id)
        except Exception as e:
            logger.error(f"Error creating program for {fecha}: {e}", exc_info=True)
            await self.reply(ctx, strings.PROGRAM_CREATE_ERROR)
            return

        await self.reply(
            ctx,
            strings.PROGRAM_CREATED.format(
                codigo=program.codigo,
                fecha=format_fecha(program.fecha),
                titulo=program.titulo,
                partes=len(program.partes),
            ),
        )

    async def ver_programa(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        """Looks the program up by code, then by date, then falls back to the next upcoming one."""
        codigo = result.entities.get("codigo")
        if not codigo:
            match = PROGRAM_CODE_RE.search(message)
            codigo = match.group(0) if match else None

        try:
            if codigo:
                program = await self.programs.find_by_code(codigo)
                if not program:
                    await self.reply(ctx, strings.PROGRAM_CODE_NOT_FOUND.format(codigo=codigo))
                    return
            else:
                fecha = parse_fecha(result.entities.get("fecha") or message, self._today())
                if fecha:
                    programs = await self.programs.find_by_date(fecha)
                    if not programs:
                        await self.reply(
                            ctx,
                            strings.PROGRAM_DATE_EMPTY.format(
                                fecha=format_fecha(fecha), fecha_corta=format_fecha_corta(fecha)
                            ),
                        )
                        return
                    if len(programs) > 1:
                        respuesta = strings.PROGRAM_DATE_MULTIPLE.format(total=len(programs), fecha=format_fecha(fecha))
                        respuesta += _program_list(programs) + "\n"
                        respuesta += strings.PROGRAM_DATE_MULTIPLE_FOOTER.format(codigo=programs[0].codigo)
                        await self.reply(ctx, respuesta)
                        return
                    program = programs[0]
                else:
                    program = await self.programs.next_program(self._today())
                    if not program:
                        await self.reply(ctx, strings.PROGRAM_NONE_UPCOMING)
                        return
        except Exception as e:
            logger.error(f"Error fetching program: {e}", exc_info=True)
            await self.reply(ctx, strings.PROGRAM_VIEW_ERROR)
            return

        await self.reply(ctx, render_program(program))

    async def asignar_parte(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        parte_nombre = (result.entities.get("parte") or "").strip()
        usuario = (result.entities.get("usuario") or "").strip()
        codigo = result.entities.get("codigo")

        if not parte_nombre or not usuario:
            await self.reply(ctx, strings.ASSIGN_USAGE)
            return

        try:
            if codigo:
                program = await self.programs.find_by_code(codigo)
                if not program:
                    await self.reply(ctx, strings.ASSIGN_PROGRAM_NOT_FOUND.format(codigo=codigo))
                    return
            else:
                program = await self.programs.next_program(self._today())
                if not program:
                    await self.reply(ctx, strings.ASSIGN_NO_PROGRAM)
                    return

            parte = program.find_part(parte_nombre)
            if not parte:
                disponibles = "\n".join(f"• {p.nombre}" for p in sorted(program.partes, key=lambda p: p.orden))
                await self.reply(ctx, strings.ASSIGN_PART_NOT_FOUND.format(parte=parte_nombre, partes=disponibles))
                return

            asignadas = await self.programs.assign_by_name(program, parte, usuario)
        except Exception as e:
            logger.error(f"Error assigning '{parte_nombre}': {e}", exc_info=True)
            await self.reply(ctx, strings.ASSIGN_ERROR)
            return

        principal = asignadas[0]
        logger.info(f"Assigned {len(asignadas)} part(s) in {program.codigo} by {ctx.usuario_id}")
        await self.reply(
            ctx,
            strings.ASSIGN_DONE.format(
                codigo=program.codigo,
                nombre=principal.nombre,
                libre="" if principal.es_usuario else strings.ASSIGN_FREE_TEXT_MARK,
                parte="\n📌 ".join(a.parte for a in asignadas),
                fecha=format_fecha(program.fecha),
            ),
        )

    async def editar_programa_texto(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        try:
            outcome = await self.programs.process_text(
                message, self._today(), codigo=result.entities.get("codigo"), creado_por=ctx.usuario_id
            )
        except Exception as e:
            logger.error(f"Error processing program text: {e}", exc_info=True)
            await self.reply(ctx, strings.PROGRAM_TEXT_ERROR)
            return

        if outcome is None:
            await self.reply(ctx, strings.PROGRAM_TEXT_NO_DATE)
            return

        respuesta = strings.PROGRAM_TEXT_PROCESSED.format(
            codigo=outcome.codigo,
            fecha=format_fecha(outcome.fecha),
            partes=outcome.partes_actualizadas,
            asignaciones=outcome.asignaciones_creadas,
        )
        if outcome.errores:
            respuesta += strings.PROGRAM_TEXT_WARNINGS
            for warning in outcome.errores[:MAX_WARNINGS_SHOWN]:
                respuesta += f"  • {warning}\n"
            if len(outcome.errores) > MAX_WARNINGS_SHOWN:
                respuesta += strings.PROGRAM_TEXT_MORE_WARNINGS.format(
                    restantes=len(outcome.errores) - MAX_WARNINGS_SHOWN
                )

        await self.reply(ctx, respuesta.rstrip())

    async def continue_flow(self, ctx: MessageContext, message: str) -> None:
        await self.reply(ctx, strings.PROGRAMS_NOTHING_PENDING)
        await self.reset(ctx, "stale")
