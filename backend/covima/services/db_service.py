# /covima/services/db_service.py

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from covima.config.settings import settings
from covima.models.conversation import ESTADO_INICIO
from covima.utils.exceptions import DuplicateAttendanceError
from covima.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Constants
USER_SEARCH_LIMIT = 5
PHONE_SUFFIX_DIGITS = 9


class DatabaseService:
    """
    Manages all MongoDB access for the bot: conversations, users, QR codes,
    attendance rows, programs and notifications.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                tz_aware=False,
            )
            self.db = self.client.get_default_database("covima")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def _object_id(self, value: Any) -> Any:
        """ObjectId for valid hex ids, the raw value otherwise."""
        if isinstance(value, str) and ObjectId.is_valid(value):
            return ObjectId(value)
        return value

    def _serialize_id(self, document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if document and "_id" in document:
            document["_id"] = str(document["_id"])
        return document

    def _serialize_ids(self, documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self._serialize_id(doc) for doc in documents]

    async def _tracked(self, name: str, operation) -> Any:
        """Runs a database call, counting the outcome. Errors propagate to the caller."""
        try:
            result = await operation()
        except Exception:
            database_operations_counter.labels(operation=name, status="failed").inc()
            raise
        database_operations_counter.labels(operation=name, status="success").inc()
        return result

    async def _safe_db_operation(self, operation, default_return: Any = None) -> Any:
        """Best-effort call for non-critical writes; failures are logged and swallowed."""
        try:
            return await operation()
        except Exception as e:
            logger.exception(f"Database operation failed: {type(e).__name__}")
            database_operations_counter.labels(operation="db_error", status="failed").inc()
            return default_return

    @staticmethod
    def phone_suffix(phone: str) -> str:
        digits = re.sub(r"\D", "", phone or "")
        return digits[-PHONE_SUFFIX_DIGITS:]

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("conversaciones", [("telefono", 1)], {"unique": True}),
            ("usuarios", [("telefono", 1)], {}),
            ("usuarios", [("nombre", 1)], {}),
            ("qr_asistencias", [("codigo", 1)], {"unique": True}),
            ("asistencias", [("identidad", 1), ("semana_inicio", 1), ("tipo_id", 1)], {"unique": True}),
            ("asistencias", [("telefono_registro", 1), ("semana_inicio", 1), ("tipo_id", 1)], {}),
            ("programas", [("codigo", 1)], {"unique": True}),
            ("programas", [("fecha", 1)], {}),
            ("partes", [("orden", 1)], {}),
            ("notificaciones", [("programa_id", 1), ("created_at", -1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Conversation Operations ====================

    async def get_or_create_conversation(self, telefono: str) -> Dict[str, Any]:
        """Upsert-by-phone; a new document starts idle."""
        now = self._now_utc()
        return await self._tracked(
            "get_or_create_conversation",
            lambda: self.db.conversaciones.find_one_and_update(
                {"telefono": telefono},
                {
                    "$setOnInsert": {
                        "telefono": telefono,
                        "estado": ESTADO_INICIO,
                        "modulo_activo": None,
                        "contexto": {},
                        "created_at": now,
                        "ultimo_mensaje_at": now,
                    }
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
                projection={"_id": False},
            ),
        )

    async def update_conversation(self, telefono: str, fields: Dict[str, Any]) -> None:
        """Patches the conversation and always bumps ultimo_mensaje_at. Last write wins."""
        patch = dict(fields)
        patch["ultimo_mensaje_at"] = self._now_utc()
        await self._tracked(
            "update_conversation",
            lambda: self.db.conversaciones.update_one(
                {"telefono": telefono},
                {"$set": patch, "$setOnInsert": {"created_at": patch["ultimo_mensaje_at"]}},
                upsert=True,
            ),
        )

    # ==================== User Operations ====================

    async def find_user_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        """User whose stored phone ends with the last 9 digits of `phone`."""
        suffix = self.phone_suffix(phone)
        if not suffix:
            return None
        user = await self._tracked(
            "find_user_by_phone",
            lambda: self.db.usuarios.find_one({"telefono": {"$regex": f"{re.escape(suffix)}$"}}),
        )
        return self._serialize_id(user)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = await self._tracked(
            "get_user", lambda: self.db.usuarios.find_one({"_id": self._object_id(user_id)})
        )
        return self._serialize_id(user)

    async def find_users_by_name(self, name: str, limit: int = USER_SEARCH_LIMIT) -> List[Dict[str, Any]]:
        """Active users whose name contains `name`, case-insensitive."""
        cursor = self.db.usuarios.find(
            {"nombre": {"$regex": re.escape(name.strip()), "$options": "i"}, "activo": True}
        ).limit(limit)
        users = await self._tracked("find_users_by_name", lambda: cursor.to_list(length=limit))
        return self._serialize_ids(users)

    async def search_users(self, busqueda: str, limit: int = USER_SEARCH_LIMIT) -> Tuple[List[Dict[str, Any]], int]:
        """Name (contains) or phone (suffix) search, any status. Returns (page, total)."""
        digits = re.sub(r"\D", "", busqueda)
        if len(digits) >= 6:
            query = {"telefono": {"$regex": f"{re.escape(digits[-PHONE_SUFFIX_DIGITS:])}$"}}
        else:
            query = {"nombre": {"$regex": re.escape(busqueda.strip()), "$options": "i"}}
        total = await self._tracked("search_users_count", lambda: self.db.usuarios.count_documents(query))
        cursor = self.db.usuarios.find(query).sort("nombre", ASCENDING).limit(limit)
        users = await self._tracked("search_users", lambda: cursor.to_list(length=limit))
        return self._serialize_ids(users), total

    async def list_active_users(self) -> List[Dict[str, Any]]:
        cursor = self.db.usuarios.find({"activo": True}, {"nombre": 1, "telefono": 1, "codigo_pais": 1, "roles": 1, "activo": 1})
        users = await self._tracked("list_active_users", lambda: cursor.to_list(length=None))
        return self._serialize_ids(users)

    async def create_user(self, data: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(data)
        document.setdefault("activo", True)
        document.setdefault("created_at", self._now_utc())
        result = await self._tracked("create_user", lambda: self.db.usuarios.insert_one(document))
        document["_id"] = str(result.inserted_id)
        return document

    # ==================== Attendance Operations ====================

    async def get_attendance_type(self, tipo_id: str) -> Optional[Dict[str, Any]]:
        """Attendance type with only its active fields, ordered."""
        tipo = await self._tracked(
            "get_attendance_type",
            lambda: self.db.tipos_asistencia.find_one({"_id": self._object_id(tipo_id)}),
        )
        if not tipo:
            return None
        campos = [c for c in tipo.get("campos", []) if c.get("activo", True)]
        tipo["campos"] = sorted(campos, key=lambda c: c.get("orden", 0))
        return self._serialize_id(tipo)

    async def _with_type(self, qr: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not qr:
            return None
        qr = self._serialize_id(qr)
        qr["tipo_id"] = str(qr.get("tipo_id"))
        qr["tipo"] = await self.get_attendance_type(qr["tipo_id"])
        return qr

    async def get_qr_by_code(self, codigo: str) -> Optional[Dict[str, Any]]:
        qr = await self._tracked(
            "get_qr_by_code", lambda: self.db.qr_asistencias.find_one({"codigo": codigo.upper()})
        )
        return await self._with_type(qr)

    async def get_qr_by_id(self, qr_id: str) -> Optional[Dict[str, Any]]:
        qr = await self._tracked(
            "get_qr_by_id", lambda: self.db.qr_asistencias.find_one({"_id": self._object_id(qr_id)})
        )
        return await self._with_type(qr)

    async def find_attendance(
        self, tipo_id: str, semana_inicio: datetime, alternatives: List[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """First row for this type and week matching any of the identity alternatives."""
        query = {"tipo_id": tipo_id, "semana_inicio": semana_inicio, "$or": alternatives}
        row = await self._tracked("find_attendance", lambda: self.db.asistencias.find_one(query))
        return self._serialize_id(row)

    async def insert_attendance(self, record: Dict[str, Any]) -> str:
        """
        Inserts one attendance row.

        Raises:
            DuplicateAttendanceError: the (identidad, semana_inicio, tipo_id) key already exists
        """
        document = dict(record)
        document.setdefault("created_at", self._now_utc())
        try:
            result = await self._tracked("insert_attendance", lambda: self.db.asistencias.insert_one(document))
        except DuplicateKeyError as e:
            raise DuplicateAttendanceError(str(e)) from e
        return str(result.inserted_id)

    # ==================== Program Operations ====================

    async def get_program_by_code(self, codigo: str) -> Optional[Dict[str, Any]]:
        program = await self._tracked(
            "get_program_by_code",
            lambda: self.db.programas.find_one({"codigo": {"$regex": f"^{re.escape(codigo)}$", "$options": "i"}}),
        )
        return self._serialize_id(program)

    async def get_programs_by_date(self, fecha: datetime) -> List[Dict[str, Any]]:
        cursor = self.db.programas.find({"fecha": fecha}).sort("created_at", ASCENDING)
        programs = await self._tracked("get_programs_by_date", lambda: cursor.to_list(length=50))
        return self._serialize_ids(programs)

    async def get_next_program(self, desde: datetime) -> Optional[Dict[str, Any]]:
        cursor = self.db.programas.find({"fecha": {"$gte": desde}}).sort([("fecha", ASCENDING), ("created_at", ASCENDING)]).limit(1)
        programs = await self._tracked("get_next_program", lambda: cursor.to_list(length=1))
        return self._serialize_id(programs[0]) if programs else None

    async def get_part_catalog(self, only_mandatory: bool = False) -> List[Dict[str, Any]]:
        query = {"obligatoria": True} if only_mandatory else {}
        cursor = self.db.partes.find(query).sort("orden", ASCENDING)
        parts = await self._tracked("get_part_catalog", lambda: cursor.to_list(length=None))
        return self._serialize_ids(parts)

    async def insert_program(self, data: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(data)
        document.setdefault("created_at", self._now_utc())
        result = await self._tracked("insert_program", lambda: self.db.programas.insert_one(document))
        document["_id"] = str(result.inserted_id)
        return document

    async def update_program(self, program_id: str, fields: Dict[str, Any]) -> None:
        patch = dict(fields)
        patch["updated_at"] = self._now_utc()
        await self._tracked(
            "update_program",
            lambda: self.db.programas.update_one({"_id": self._object_id(program_id)}, {"$set": patch}),
        )

    # ==================== Notification Operations ====================

    async def insert_notification(self, data: Dict[str, Any]) -> None:
        document = dict(data)
        document.setdefault("created_at", self._now_utc())
        await self._safe_db_operation(lambda: self.db.notificaciones.insert_one(document))


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
