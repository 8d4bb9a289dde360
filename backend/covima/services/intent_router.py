# /covima/services/intent_router.py

import logging
from typing import Awaitable, Callable, Dict, Optional

from covima.config import strings
from covima.config.settings import settings
from covima.handlers.attendance_handler import AttendanceHandler
from covima.handlers.notifications_handler import NotificationsHandler
from covima.handlers.programs_handler import ProgramsHandler
from covima.handlers.users_handler import UsersHandler
from covima.models.api import InboundMessage
from covima.models.conversation import MessageContext
from covima.models.domain import User
from covima.models.flow import module_for
from covima.models.intent import Intent, IntentResult, Role
from covima.services.ai_service import ai_service
from covima.services.conversation_service import ConversationService
from covima.services.db_service import db_service
from covima.services.event_service import event_service
from covima.services.intent_service import intent_classifier
from covima.services.messaging_service import build_messaging_router
from covima.services.program_service import ProgramService
from covima.services.security_service import SecurityService
from covima.utils.dates import now_local
from covima.utils.exceptions import FlowContextError
from covima.utils.metrics import message_counter

logger = logging.getLogger(__name__)

CANCEL_WORDS = {"cancelar", "salir"}

IntentHandler = Callable[[MessageContext, IntentResult, str], Awaitable[None]]


class IntentRouter:
    """
    Entry point for every inbound message.

    Idle conversations are classified and dispatched by intent; a
    conversation inside a flow hands the raw text to the module that owns
    the flow. Nothing raised below this class reaches the webhook task.
    """

    def __init__(
        self,
        classifier,
        db,
        conversations: ConversationService,
        gateway,
        attendance: AttendanceHandler,
        users: UsersHandler,
        programs: ProgramsHandler,
        notifications: NotificationsHandler,
    ):
        self.classifier = classifier
        self.db = db
        self.conversations = conversations
        self.gateway = gateway

        self.dispatch: Dict[Intent, IntentHandler] = {
            Intent.REGISTRAR_ASISTENCIA: attendance.handle,
            Intent.REGISTRAR_ASISTENCIA_MANUAL: attendance.handle_manual,
            Intent.CREAR_USUARIO: users.crear_usuario,
            Intent.BUSCAR_USUARIO: users.buscar_usuario,
            Intent.CREAR_PROGRAMA: programs.crear_programa,
            Intent.VER_PROGRAMA: programs.ver_programa,
            Intent.ASIGNAR_PARTE: programs.asignar_parte,
            Intent.EDITAR_PROGRAMA_TEXTO: programs.editar_programa_texto,
            Intent.ENVIAR_PROGRAMA: notifications.enviar_programa,
            Intent.SALUDO: self._greet,
            Intent.AYUDA: self._help,
            Intent.DESCONOCIDO: self._unknown,
        }
        missing = [intent.value for intent in Intent if intent not in self.dispatch]
        if missing:
            raise ValueError(f"No handler registered for intents: {', '.join(missing)}")

        self.flow_handlers = {h.module: h for h in (attendance, users, programs, notifications)}

    async def _build_context(self, message: InboundMessage, telefono: str) -> MessageContext:
        user_document = await self.db.find_user_by_phone(telefono)
        user = User.model_validate(user_document) if user_document else None
        conversation = await self.conversations.get_or_create(telefono)
        return MessageContext(
            conversation_id=message.conversation_id,
            telefono=telefono,
            nombre_whatsapp=message.nombre or "Usuario",
            message_id=message.message_id,
            usuario_id=user.id if user else None,
            usuario_nombre=user.nombre if user else None,
            roles=list(user.roles) if user else [],
            conversation=conversation,
        )

    async def process_message(self, message: InboundMessage) -> None:
        """Classifies or continues, then dispatches. Replies go out through the gateway."""
        status = "success"
        try:
            self.gateway.register_conversation(
                message.conversation_id, message.telefono, message.message_id, message.source
            )
            await self.gateway.toggle_typing(message.conversation_id, True)

            telefono = SecurityService.sanitize_phone_number(message.telefono)
            if not telefono:
                logger.warning(f"Dropping message with unusable phone from conversation {message.conversation_id}")
                status = "ignored"
                return

            ctx = await self._build_context(message, telefono)
            text = SecurityService.validate_message_content(message.content)

            if not ctx.conversation.is_idle:
                if await self._continue_flow(ctx, text):
                    return
                # Orphaned estado: reset and treat the text as a new request.
                ctx.conversation = await self.conversations.get_or_create(telefono)

            await self._classify_and_dispatch(ctx, text)
        except Exception as e:
            status = "error"
            logger.error(f"Error processing message from conversation {message.conversation_id}: {e}", exc_info=True)
            await self.gateway.send_message(message.conversation_id, strings.GENERIC_ERROR)
        finally:
            message_counter.labels(status=status, source=message.source).inc()

    async def _continue_flow(self, ctx: MessageContext, text: str) -> bool:
        """
        Feeds `text` to the module owning the active flow.

        Returns:
            False when no module owns the estado (the conversation was reset)
        """
        estado = ctx.conversation.estado
        if text.lower() in CANCEL_WORDS:
            await self.conversations.reset(ctx.telefono, "cancelled")
            await self.gateway.send_message(ctx.conversation_id, strings.FLOW_CANCELLED)
            return True

        handler = self.flow_handlers.get(module_for(estado, ctx.conversation.modulo_activo))
        if handler is None:
            logger.warning(f"No module owns estado '{estado}' for {ctx.telefono[-4:]}, resetting")
            await self.conversations.reset(ctx.telefono, "orphaned")
            return False

        try:
            await handler.continue_flow(ctx, text)
        except FlowContextError as e:
            logger.warning(f"Corrupt flow context for {ctx.telefono[-4:]}: {e}")
            await self.conversations.reset(ctx.telefono, "corrupt")
            await self.gateway.send_message(ctx.conversation_id, strings.CORRUPT_FLOW)
        except Exception as e:
            logger.error(f"Error continuing '{estado}' for {ctx.telefono[-4:]}: {e}", exc_info=True)
            await self.conversations.reset(ctx.telefono, "error")
            await self.gateway.send_message(ctx.conversation_id, strings.GENERIC_ERROR)
        return True

    async def _classify_and_dispatch(self, ctx: MessageContext, text: str) -> None:
        result = await self.classifier.classify(text, ctx.conversation)
        logger.info(f"Intent {result.intent.value} ({result.confidence:.2f}) for {ctx.telefono[-4:]}")

        denial = self._authorization_error(ctx, result)
        if denial:
            await self.gateway.send_message(ctx.conversation_id, denial)
            return

        await self.dispatch[result.intent](ctx, result, text)

    @staticmethod
    def _authorization_error(ctx: MessageContext, result: IntentResult) -> Optional[str]:
        if result.requires_auth and not ctx.is_registered:
            return strings.AUTH_REQUIRED
        if result.required_roles and not ctx.has_any_role(result.required_roles):
            if not ctx.is_registered:
                return strings.AUTH_REQUIRED
            return strings.ROLE_REQUIRED.format(roles=" o ".join(result.required_roles))
        return None

    # --- Intents answered by the router itself ---

    async def _greet(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        nombre = ctx.nombre_whatsapp if ctx.is_registered else strings.GREETING_ANONYMOUS_NAME
        await self.gateway.send_message(ctx.conversation_id, strings.GREETING.format(nombre=nombre))

    async def _help(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        texto = strings.HELP_HEADER + strings.HELP_PUBLIC
        if ctx.has_any_role([Role.ADMIN.value, Role.LIDER.value]):
            texto += strings.HELP_LEADERS
        if ctx.has_any_role([Role.ADMIN.value]):
            texto += strings.HELP_ADMIN
        texto += strings.HELP_FOOTER
        await self.gateway.send_message(ctx.conversation_id, texto)

    async def _unknown(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        await self.gateway.send_message(ctx.conversation_id, strings.UNKNOWN_INTENT)


def build_intent_router(db, classifier, gateway, events, ai=None, clock=now_local) -> IntentRouter:
    """Wires the handlers around one database, gateway and classifier."""
    conversations = ConversationService(db)
    programs = ProgramService(db, ai)
    return IntentRouter(
        classifier=classifier,
        db=db,
        conversations=conversations,
        gateway=gateway,
        attendance=AttendanceHandler(db, conversations, gateway, events, clock=clock),
        users=UsersHandler(db, conversations, gateway),
        programs=ProgramsHandler(db, conversations, gateway, programs, clock=clock),
        notifications=NotificationsHandler(db, conversations, gateway, programs, clock=clock),
    )


# Globally accessible instances
messaging_gateway = build_messaging_router(settings)
intent_router = build_intent_router(db_service, intent_classifier, messaging_gateway, event_service, ai_service)
