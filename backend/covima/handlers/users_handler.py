# /covima/handlers/users_handler.py

import logging
import re

from covima.config import strings
from covima.config.settings import settings
from covima.handlers.base import BaseHandler
from covima.models.conversation import MessageContext
from covima.models.domain import User
from covima.models.flow import MODULO_USUARIOS
from covima.models.intent import IntentResult, Role

logger = logging.getLogger(__name__)

# "registrar a rubi +51 924 999 954", "crear usuario rubi 924999954"
_CREATE_FROM_TEXT_RE = re.compile(r"(?:registrar\s+a?|crear\s+usuario)\s*(.+?)\s+(\+?\d[\d\s\-]{8,})", re.IGNORECASE)
_SEARCH_FROM_TEXT_RE = re.compile(r"buscar\s+(.+)", re.IGNORECASE)


class UsersHandler(BaseHandler):
    """User administration over chat: create a participant, search the directory."""

    module = MODULO_USUARIOS
    search_limit = 5

    async def crear_usuario(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        nombre = (result.entities.get("nombre") or "").strip()
        telefono = str(result.entities.get("telefono") or "")
        codigo_pais = str(result.entities.get("codigoPais") or "")

        if not nombre or not telefono:
            match = _CREATE_FROM_TEXT_RE.search(message)
            if match:
                nombre = nombre or match.group(1).strip()
                telefono = telefono or match.group(2)

        digits = re.sub(r"\D", "", telefono)
        if not nombre or len(digits) < 9:
            await self.reply(ctx, strings.USER_CREATE_USAGE)
            return

        telefono = digits[-9:]
        codigo_pais = re.sub(r"\D", "", codigo_pais) or digits[:-9] or settings.default_country_code

        try:
            existing = await self.db.find_user_by_phone(telefono)
            if existing:
                await self.reply(ctx, strings.USER_ALREADY_EXISTS.format(telefono=telefono, nombre=existing["nombre"]))
                return

            user = User.model_validate(
                await self.db.create_user(
                    {
                        "nombre": nombre,
                        "telefono": telefono,
                        "codigo_pais": codigo_pais,
                        "roles": [Role.PARTICIPANTE.value],
                        "creado_por": ctx.usuario_id,
                    }
                )
            )
        except Exception as e:
            logger.error(f"Error creating user {telefono[-4:]}: {e}", exc_info=True)
            await self.reply(ctx, strings.USER_CREATE_ERROR)
            return

        logger.info(f"User {user.id} created by {ctx.usuario_id}")
        await self.reply(
            ctx, strings.USER_CREATED.format(nombre=user.nombre, codigo_pais=user.codigo_pais, telefono=user.telefono)
        )

    async def buscar_usuario(self, ctx: MessageContext, result: IntentResult, message: str) -> None:
        busqueda = (result.entities.get("busqueda") or "").strip()
        if not busqueda:
            match = _SEARCH_FROM_TEXT_RE.search(message)
            busqueda = match.group(1).strip() if match else ""

        if not busqueda:
            await self.reply(ctx, strings.USER_SEARCH_USAGE)
            return

        try:
            documents, total = await self.db.search_users(busqueda, self.search_limit)
        except Exception as e:
            logger.error(f"Error searching users: {e}", exc_info=True)
            await self.reply(ctx, strings.USER_SEARCH_ERROR)
            return

        if not documents:
            await self.reply(ctx, strings.USER_SEARCH_EMPTY.format(busqueda=busqueda))
            return

        respuesta = strings.USER_SEARCH_HEADER.format(busqueda=busqueda)
        for user in (User.model_validate(d) for d in documents):
            respuesta += f"👤 *{user.nombre}*\n"
            respuesta += f"   📱 +{user.codigo_pais} {user.telefono}\n"
            respuesta += f"   🎭 {', '.join(user.roles) or '-'}\n"
            respuesta += f"   {'✅ Activo' if user.activo else '❌ Inactivo'}\n\n"
        if total > len(documents):
            respuesta += strings.USER_SEARCH_MORE.format(restantes=total - len(documents))

        await self.reply(ctx, respuesta.rstrip())

    async def continue_flow(self, ctx: MessageContext, message: str) -> None:
        # No multi-step user flows exist; a conversation parked here is stale.
        await self.reply(ctx, strings.USERS_NOTHING_PENDING)
        await self.reset(ctx, "stale")
