# /covima/handlers/notifications_handler.py

import logging
from typing import Dict, List

from covima.config import strings
from covima.config.settings import settings
from covima.handlers.base import BaseHandler
from covima.models.conversation import MessageContext
from covima.models.domain import Program, User
from covima.models.flow import (
    ESTADO_CONFIRMAR_ENVIO,
    MODULO_NOTIFICACIONES,
    DispatchParticipant,
    ProgramDispatchState,
    decode_flow_context,
)
from covima.models.intent import IntentResult
from covima.services.program_service import ProgramService, render_program
from covima.utils.dates import format_fecha, now_local, parse_fecha
from covima.utils.exceptions import FlowContextError

logger = logging.getLogger(__name__)

AFFIRMATIVE_ANSWERS = {"si", "sí", "yes", "confirmar", "enviar"}
NOTIFICATION_TYPE = "programa_asignacion"


class NotificationsHandler(BaseHandler):
    """
    Program broadcast to the assigned participants.

    `enviar_programa` prepares a summary and parks the conversation in
    'confirmar_envio'; the next message either confirms, which sends one
    WhatsApp template per participant, or cancels.
    """

    module = MODULO_NOTIFICACIONES

    def __init__(self, db, conversations, gateway, programs: ProgramService, clock=now_local):
        super().__init__(db, conversations, gateway)
        self.programs = programs
        self.clock = clock

    async def _participants(self, program: Program) -> List[DispatchParticipant]:
        """Registered assignees with their parts, in program order. Free-text names are skipped."""
        part_names = {p.parte_id: p.nombre for p in program.partes}
        by_user: Dict[str, DispatchParticipant] = {}
        for parte in sorted(program.partes, key=lambda p: p.orden):
            for asignacion in program.assignments_for(parte.parte_id):
                if not asignacion.usuario_id:
                    continue
                participant = by_user.get(asignacion.usuario_id)
                if participant is None:
                    document = await self.db.get_user(asignacion.usuario_id)
                    if not document:
                        logger.warning(f"Assigned user {asignacion.usuario_id} no longer exists")
                        continue
                    user = User.model_validate(document)
                    participant = DispatchParticipant(
                        usuario_id=user.id, nombre=user.nombre, telefono=user.telefono_completo
                    )
                    by_user[user.id] = participant
                nombre_parte = part_names.get(asignacion.parte_id, parte.nombre)
                if nombre_parte not in participant.partes:
                    participant.partes.append(nombre_parte)
        return list(by_user.values())

    async def enviar_programa(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        today = self.clock().date()
        try:
            fecha = parse_fecha(result.entities.get("fecha") or message, today)
            if fecha:
                same_day = await self.programs.find_by_date(fecha)
                program = same_day[0] if same_day else None
            else:
                program = await self.programs.next_program(today)

            if not program:
                await self.reply(ctx, strings.DISPATCH_NO_PROGRAM)
                return

            fecha_formateada = format_fecha(program.fecha)
            participants = await self._participants(program) if program.asignaciones else []
            if not participants:
                await self.reply(ctx, strings.DISPATCH_NO_ASSIGNMENTS.format(fecha=fecha_formateada))
                return

            state = ProgramDispatchState(
                programa_id=program.id,
                codigo=program.codigo,
                fecha_formateada=fecha_formateada,
                participantes=participants,
                texto=render_program(program),
            )
            resumen = strings.DISPATCH_SUMMARY_HEADER.format(fecha=fecha_formateada, total=len(participants))
            for participant in participants:
                resumen += f"• {participant.nombre}: {', '.join(participant.partes)}\n"
            resumen += strings.DISPATCH_CONFIRM

            await self.conversations.start_flow(ctx.telefono, ESTADO_CONFIRMAR_ENVIO, state, self.module)
        except Exception as e:
            logger.error(f"Error preparing program dispatch: {e}", exc_info=True)
            await self.reply(ctx, strings.DISPATCH_PREPARE_ERROR)
            return

        await self.reply(ctx, resumen)

    async def continue_flow(self, ctx: MessageContext, message: str) -> None:
        state = decode_flow_context(ctx.conversation.estado, ctx.conversation.contexto)
        if not isinstance(state, ProgramDispatchState):
            raise FlowContextError(ctx.conversation.estado, "not a dispatch payload")

        if message.strip().lower() not in AFFIRMATIVE_ANSWERS:
            await self.reply(ctx, strings.DISPATCH_CANCELLED)
            await self.reset(ctx, "cancelled")
            return

        await self.reply(ctx, strings.DISPATCH_SENDING)

        enviados = 0
        errores = 0
        for participant in state.participantes:
            outcome = await self.gateway.send_template_to_phone(
                participant.telefono,
                strings.DISPATCH_TEMPLATE_NAME,
                settings.whatsapp_template_language,
                [participant.nombre, state.fecha_formateada, ", ".join(participant.partes), state.codigo],
            )
            if outcome.get("success"):
                enviados += 1
            else:
                errores += 1
                logger.warning(f"Dispatch to {participant.telefono[-4:]} failed: {outcome.get('error')}")

            await self.db.insert_notification(
                {
                    "usuario_id": participant.usuario_id,
                    "telefono": participant.telefono,
                    "tipo": NOTIFICATION_TYPE,
                    "mensaje": state.texto,
                    "programa_id": state.programa_id,
                    "estado": "enviado" if outcome.get("success") else "error",
                    "enviado_at": self.clock() if outcome.get("success") else None,
                    "error_mensaje": None if outcome.get("success") else outcome.get("error"),
                }
            )

        try:
            await self.db.update_program(state.programa_id, {"enviado_at": self.clock()})
        except Exception as e:
            logger.error(f"Could not stamp program {state.codigo} as sent: {e}")

        logger.info(f"Program {state.codigo} dispatched: {enviados} sent, {errores} failed")
        respuesta = strings.DISPATCH_DONE.format(enviados=enviados)
        if errores:
            respuesta += strings.DISPATCH_ERRORS.format(errores=errores)
        await self.reply(ctx, respuesta.rstrip())
        await self.reset(ctx)
