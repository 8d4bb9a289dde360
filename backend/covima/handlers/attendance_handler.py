# /covima/handlers/attendance_handler.py

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from covima.config import strings
from covima.config.settings import settings
from covima.handlers.base import BaseHandler
from covima.models.conversation import MessageContext
from covima.models.domain import AttendanceRecord, QRCode, User
from covima.models.flow import (
    ESTADO_FORMULARIO_ASISTENCIA,
    ESTADO_FORMULARIO_ASISTENCIA_MANUAL,
    MODULO_ASISTENCIA,
    AttendanceFlowState,
    decode_flow_context,
)
from covima.models.intent import IntentResult
from covima.utils.dates import (
    as_datetime,
    format_fecha_corta,
    format_hhmm,
    format_minutes,
    is_within_window,
    minutes_of_day,
    now_local,
    week_start,
)
from covima.utils.exceptions import DuplicateAttendanceError, FlowContextError
from covima.utils.metrics import attendance_registrations_counter
from covima.workflows.form_fields import format_answer, render_question, validate_response

logger = logging.getLogger(__name__)

METODO_QR_BOT = "qr_bot"
METODO_MANUAL = "manual"
ESTADO_PENDIENTE = "pendiente_confirmacion"
ESTADO_CONFIRMADO = "confirmado"


def phone_suffix(phone: Optional[str]) -> str:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    return digits[-9:]


@dataclass
class Subject:
    """Who an attendance row is about."""
    usuario_id: Optional[str]
    telefono: Optional[str]
    nombre: Optional[str]

    @property
    def display_name(self) -> str:
        return self.nombre or self.telefono or ""

    @property
    def identidad(self) -> str:
        return AttendanceRecord.identity_for(self.usuario_id, phone_suffix(self.telefono) or None, self.nombre)

    def identity_alternatives(self) -> List[Dict[str, Any]]:
        """Every identity a previous row for this person could have been stored under."""
        alternatives = []
        if self.usuario_id:
            alternatives.append({"identidad": AttendanceRecord.identity_for(self.usuario_id, None, None)})
        if phone_suffix(self.telefono):
            alternatives.append({"identidad": AttendanceRecord.identity_for(None, phone_suffix(self.telefono), None)})
        if not alternatives:
            alternatives.append({"identidad": self.identidad})
        return alternatives


class AttendanceHandler(BaseHandler):
    """
    QR check-in. A QR is validated (exists, active, inside its time window),
    the weekly duplicate guard runs, and the row is written either at once
    or after a form built from the attendance type's fields.
    """

    module = MODULO_ASISTENCIA

    def __init__(self, db, conversations, gateway, events, clock: Callable[[], datetime] = now_local):
        super().__init__(db, conversations, gateway)
        self.events = events
        self.clock = clock

    # ==================== Entry points ====================

    async def handle(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        """Self registration from a bare QR code."""
        qr = await self._validated_qr(ctx, result.entities.get("codigoQR"), strings.QR_MISSING)
        if not qr:
            return

        subject = Subject(usuario_id=ctx.usuario_id, telefono=ctx.telefono, nombre=ctx.nombre_whatsapp)
        if await self._already_registered(qr, subject):
            attendance_registrations_counter.labels(method=METODO_QR_BOT, outcome="duplicate").inc()
            await self.reply(ctx, strings.ALREADY_REGISTERED.format(tipo=qr.tipo_label))
            return

        if not qr.requires_form:
            await self._register_self(ctx, qr, {})
            return

        state = AttendanceFlowState(
            codigo_qr=qr.codigo,
            qr_id=qr.id,
            tipo_id=qr.tipo_id,
            tipo_nombre=qr.tipo_label,
            campos=qr.tipo.campos,
        )
        await self.conversations.start_flow(ctx.telefono, ESTADO_FORMULARIO_ASISTENCIA, state, MODULO_ASISTENCIA)
        await self.reply_many(
            ctx,
            [strings.FORM_GREETING.format(nombre=ctx.nombre_whatsapp), strings.FORM_INTRO.format(tipo=qr.tipo_label)],
        )
        await self.reply(ctx, render_question(state.current_field))

    async def handle_manual(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        """A leader registers someone else, identified by phone or by name."""
        entities = result.entities
        codigo = entities.get("codigoQR")
        nombre = (entities.get("nombreUsuario") or "").strip() or None
        telefono = (entities.get("telefonoUsuario") or "").strip() or None

        if not codigo:
            await self.reply(ctx, strings.QR_MISSING_MANUAL)
            return
        if not nombre and not telefono:
            await self.reply(ctx, strings.SUBJECT_MISSING_MANUAL)
            return

        qr = await self._validated_qr(ctx, codigo, strings.QR_MISSING_MANUAL)
        if not qr:
            return

        subject = await self._resolve_subject(ctx, nombre, telefono)
        if subject is None:
            return

        if await self._already_registered(qr, subject):
            attendance_registrations_counter.labels(method=METODO_MANUAL, outcome="duplicate").inc()
            await self.reply(
                ctx, strings.ALREADY_REGISTERED_MANUAL.format(nombre=subject.display_name, tipo=qr.tipo_label)
            )
            return

        if not qr.requires_form:
            await self._register_manual(ctx, qr, subject, {})
            return

        state = AttendanceFlowState(
            codigo_qr=qr.codigo,
            qr_id=qr.id,
            tipo_id=qr.tipo_id,
            tipo_nombre=qr.tipo_label,
            campos=qr.tipo.campos,
            es_manual=True,
            usuario_objetivo_id=subject.usuario_id,
            telefono_registro=subject.telefono,
            nombre_registro=subject.nombre,
        )
        await self.conversations.start_flow(
            ctx.telefono, ESTADO_FORMULARIO_ASISTENCIA_MANUAL, state, MODULO_ASISTENCIA
        )
        await self.reply_many(
            ctx,
            [
                strings.FORM_GREETING_MANUAL.format(nombre=subject.display_name),
                strings.FORM_INTRO.format(tipo=qr.tipo_label),
            ],
        )
        await self.reply(ctx, render_question(state.current_field))

    async def continue_flow(self, ctx: MessageContext, message: str) -> None:
        """
        Feeds the raw reply to the field under the cursor.

        Raises:
            FlowContextError: the stored contexto is not a usable form state
        """
        estado = ctx.conversation.estado
        state = decode_flow_context(estado, ctx.conversation.contexto)
        if not isinstance(state, AttendanceFlowState) or state.is_complete:
            raise FlowContextError(estado, "no pending field in attendance form")

        validation = validate_response(message, state.current_field)
        if not validation["is_valid"]:
            await self.reply(ctx, validation["message"])
            return

        state = state.with_answer(validation["value"])
        if not state.is_complete:
            await self.conversations.save_flow(ctx.telefono, state)
            await self.reply(ctx, render_question(state.current_field))
            return

        qr = await self._load_qr_by_id(state.qr_id)
        if not qr:
            await self.reply(ctx, strings.QR_NOT_FOUND_ON_FINISH)
            await self.reset(ctx, "error")
            return

        labels = {campo.nombre: campo.label for campo in state.campos}
        if state.es_manual:
            subject = Subject(
                usuario_id=state.usuario_objetivo_id,
                telefono=state.telefono_registro,
                nombre=state.nombre_registro,
            )
            await self._register_manual(ctx, qr, subject, state.respuestas, labels)
        else:
            await self._register_self(ctx, qr, state.respuestas, labels)

    # ==================== Validation ====================

    async def _load_qr(self, codigo: str) -> Optional[QRCode]:
        document = await self.db.get_qr_by_code(codigo.strip().upper())
        return QRCode.model_validate(document) if document else None

    async def _load_qr_by_id(self, qr_id: str) -> Optional[QRCode]:
        document = await self.db.get_qr_by_id(qr_id)
        return QRCode.model_validate(document) if document else None

    async def _validated_qr(self, ctx: MessageContext, codigo: Optional[str], missing_message: str) -> Optional[QRCode]:
        """Steps shared by both entry points; replies and returns None on the first failure."""
        if not codigo:
            await self.reply(ctx, missing_message)
            return None

        qr = await self._load_qr(codigo)
        if not qr:
            await self.reply(ctx, strings.QR_INVALID)
            return None

        if not qr.activo:
            await self.reply(ctx, strings.QR_INACTIVE)
            return None

        if not is_within_window(self.clock(), qr.hora_inicio, qr.hora_fin, qr.margen_temprana):
            opens = format_minutes(minutes_of_day(qr.hora_inicio) - qr.margen_temprana)
            await self.reply(
                ctx, strings.QR_OUT_OF_WINDOW.format(inicio=opens, fin=format_hhmm(qr.hora_fin))
            )
            return None

        return qr

    async def _already_registered(self, qr: QRCode, subject: Subject) -> bool:
        semana = as_datetime(week_start(self.clock().date()))
        existing = await self.db.find_attendance(qr.tipo_id, semana, subject.identity_alternatives())
        return existing is not None

    async def _resolve_subject(
        self, ctx: MessageContext, nombre: Optional[str], telefono: Optional[str]
    ) -> Optional[Subject]:
        """
        By phone (suffix match) when one was given, else by name. Several
        name matches stop the registration with a disambiguation prompt
        (returns None); no match keeps the raw text.
        """
        if telefono:
            digits = "".join(ch for ch in telefono if ch.isdigit())
            document = await self.db.find_user_by_phone(digits)
            if document:
                user = User.model_validate(document)
                return Subject(usuario_id=user.id, telefono=digits, nombre=user.nombre)
            return Subject(usuario_id=None, telefono=digits, nombre=nombre)

        matches = [User.model_validate(u) for u in await self.db.find_users_by_name(nombre)]
        if len(matches) == 1:
            user = matches[0]
            return Subject(usuario_id=user.id, telefono=user.telefono, nombre=user.nombre)
        if len(matches) > 1:
            listing = "".join(f"• {u.nombre} - {u.telefono}\n" for u in matches)
            await self.reply(
                ctx,
                strings.AMBIGUOUS_SUBJECT_HEADER.format(total=len(matches)) + listing + strings.AMBIGUOUS_SUBJECT_FOOTER,
            )
            return None
        return Subject(usuario_id=None, telefono=None, nombre=nombre)

    # ==================== Registration ====================

    def _build_record(self, qr: QRCode, subject: Subject, respuestas: Dict[str, Any], metodo: str, estado: str) -> AttendanceRecord:
        hoy = self.clock().date()
        return AttendanceRecord(
            usuario_id=subject.usuario_id,
            telefono_registro=subject.telefono,
            nombre_registro=subject.nombre,
            identidad=subject.identidad,
            tipo_id=qr.tipo_id,
            qr_id=qr.id,
            fecha=as_datetime(hoy),
            semana_inicio=as_datetime(week_start(hoy)),
            datos_formulario=dict(respuestas),
            metodo_registro=metodo,
            estado=estado,
        )

    @staticmethod
    def _answers_block(respuestas: Dict[str, Any], labels: Optional[Dict[str, str]]) -> str:
        if not respuestas:
            return ""
        labels = labels or {}
        lines = "".join(f"   • {labels.get(k, k)}: {format_answer(v)}\n" for k, v in respuestas.items())
        return strings.ATTENDANCE_ANSWERS_TITLE + lines

    async def _insert(self, ctx: MessageContext, record: AttendanceRecord, duplicate_message: str, error_message: str) -> Optional[str]:
        """Writes the row; on failure replies, resets and returns None."""
        try:
            return await self.db.insert_attendance(record.model_dump(exclude_none=True))
        except DuplicateAttendanceError:
            attendance_registrations_counter.labels(method=record.metodo_registro, outcome="duplicate").inc()
            logger.info(f"Duplicate attendance caught by unique index for {record.identidad}")
            await self.reply(ctx, duplicate_message)
            await self.reset(ctx, "duplicate")
        except Exception as e:
            attendance_registrations_counter.labels(method=record.metodo_registro, outcome="error").inc()
            logger.error(f"Error registering attendance: {e}", exc_info=True)
            await self.reply(ctx, error_message)
            await self.reset(ctx, "error")
        return None

    async def _register_self(
        self, ctx: MessageContext, qr: QRCode, respuestas: Dict[str, Any], labels: Optional[Dict[str, str]] = None
    ) -> None:
        subject = Subject(usuario_id=ctx.usuario_id, telefono=ctx.telefono, nombre=ctx.nombre_whatsapp)
        record = self._build_record(qr, subject, respuestas, METODO_QR_BOT, ESTADO_PENDIENTE)
        record_id = await self._insert(ctx, record, strings.ALREADY_REGISTERED_RACE, strings.REGISTRATION_ERROR)
        if not record_id:
            return

        attendance_registrations_counter.labels(method=METODO_QR_BOT, outcome="created").inc()
        mensaje = (
            strings.ATTENDANCE_CONFIRMED_TITLE
            + f"📋 {qr.tipo_label}\n"
            + f"👤 {ctx.usuario_nombre or ctx.nombre_whatsapp}\n"
            + f"📅 {format_fecha_corta(record.fecha)}\n"
            + self._answers_block(respuestas, labels)
            + strings.ATTENDANCE_BLESSING
        )
        await self.reply(ctx, mensaje)
        await self.reset(ctx)
        await self._publish(qr, record_id, record)

    async def _register_manual(
        self,
        ctx: MessageContext,
        qr: QRCode,
        subject: Subject,
        respuestas: Dict[str, Any],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        record = self._build_record(qr, subject, respuestas, METODO_MANUAL, ESTADO_CONFIRMADO)
        record.confirmado_por = ctx.usuario_id
        record.confirmado_at = self.clock().replace(tzinfo=None)
        record_id = await self._insert(
            ctx, record, strings.ALREADY_REGISTERED_MANUAL_RACE, strings.REGISTRATION_ERROR_MANUAL
        )
        if not record_id:
            return

        attendance_registrations_counter.labels(method=METODO_MANUAL, outcome="created").inc()
        mensaje = (
            strings.ATTENDANCE_CONFIRMED_TITLE
            + f"📋 {qr.tipo_label}\n"
            + f"👤 {subject.display_name}\n"
            + f"📅 {format_fecha_corta(record.fecha)}\n"
            + strings.ATTENDANCE_REGISTERED_BY.format(nombre=ctx.usuario_nombre or ctx.nombre_whatsapp)
            + self._answers_block(respuestas, labels)
        )
        await self.reply(ctx, mensaje)
        await self.reset(ctx)
        await self._publish(qr, record_id, record)

    async def _publish(self, qr: QRCode, record_id: str, record: AttendanceRecord) -> None:
        payload = record.model_dump(mode="json")
        payload["id"] = record_id
        payload["tipo"] = {"id": qr.tipo_id, "label": qr.tipo_label}
        await self.events.publish(settings.attendance_event_channel, {"qrCode": qr.codigo, "asistencia": payload})
