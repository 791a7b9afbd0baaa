"""
DB Service — Capa de acceso a datos SQLite.

Encapsula TODAS las operaciones sobre las cuatro tablas del núcleo
(tenants, knowledge_entries, conversations, escalations) en métodos
tipados, evitando SQL inline disperso en los servicios.

Los métodos son bloqueantes; los servicios async los ejecutan con
``asyncio.to_thread``.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from agent.errors import NotFoundError
from agent.models import (
    Escalation,
    KnowledgeEntry,
    Tenant,
    TenantSettings,
)

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SCHEMA_PATH = PROJECT_ROOT / "database" / "schema" / "schema.sql"

_KNOWLEDGE_UPDATABLE = ("title", "category", "content", "keywords", "metadata", "status")
_TENANT_UPDATABLE = ("name", "whatsapp_number", "settings", "active")


def utc_now_iso() -> str:
    """Timestamp ISO-8601 en UTC (formato único para comparar como texto)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class DBService:
    """Servicio de acceso a datos SQLite del núcleo conversacional."""

    def __init__(self, db_path: Path, timeout: float = 10.0):
        self.db_path = Path(db_path)
        self._timeout = timeout

    # helpers

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_schema(self, schema_path: Optional[Path] = None) -> None:
        """Crea las tablas si no existen."""
        schema_path = Path(schema_path or SCHEMA_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with open(schema_path, "r", encoding="utf-8") as f:
            script = f.read()
        with self._conn() as conn:
            conn.executescript(script)
        logger.info(f"Schema aplicado en {self.db_path}")

    def ping(self) -> bool:
        with self._conn() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # Tenants

    @staticmethod
    def _row_to_tenant(row: sqlite3.Row) -> Tenant:
        return Tenant(
            id=row["id"],
            name=row["name"],
            whatsapp_number=row["whatsapp_number"],
            settings=TenantSettings.model_validate_json(row["settings"] or "{}"),
            active=bool(row["active"]),
        )

    def create_tenant(
        self,
        name: str,
        whatsapp_number: Optional[str] = None,
        settings: Optional[TenantSettings] = None,
        active: bool = True,
    ) -> Tenant:
        """Registra un tenant (usado por seeds y por el subsistema admin)."""
        tenant_id = str(uuid.uuid4())
        now = utc_now_iso()
        settings = settings or TenantSettings()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO tenants (id, name, whatsapp_number, settings, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    name,
                    whatsapp_number,
                    settings.model_dump_json(exclude_none=True),
                    1 if active else 0,
                    now,
                    now,
                ),
            )
        logger.info(f"Tenant creado: {name} ({tenant_id})")
        return self.get_tenant(tenant_id)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE id = ?", (tenant_id,)
            ).fetchone()
            return self._row_to_tenant(row) if row else None

    def find_active_tenant_by_number(self, whatsapp_number: str) -> Optional[Tenant]:
        """Busca un tenant activo por el número de WhatsApp que recibe mensajes."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM tenants WHERE whatsapp_number = ? AND active = 1",
                (whatsapp_number,),
            ).fetchone()
            return self._row_to_tenant(row) if row else None

    def list_tenants(self, active_only: bool = False) -> List[Tenant]:
        query = "SELECT * FROM tenants"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY created_at DESC, name"
        with self._conn() as conn:
            rows = conn.execute(query).fetchall()
            return [self._row_to_tenant(r) for r in rows]

    def update_tenant(self, tenant_id: str, **fields) -> Tenant:
        """
        Actualiza columnas editables del tenant.

        whatsapp_number=None lo desvincula; en el resto de campos None se ignora.
        """
        updates = []
        params: list = []
        for name in _TENANT_UPDATABLE:
            if name not in fields:
                continue
            value = fields[name]
            if value is None and name != "whatsapp_number":
                continue
            if name == "settings":
                value = value.model_dump_json(exclude_none=True)
            elif name == "active":
                value = 1 if value else 0
            updates.append(f"{name} = ?")
            params.append(value)

        with self._conn() as conn:
            if updates:
                updates.append("updated_at = ?")
                params.extend([utc_now_iso(), tenant_id])
                conn.execute(
                    f"UPDATE tenants SET {', '.join(updates)} WHERE id = ?", params
                )
            row = conn.execute(
                "SELECT * FROM tenants WHERE id = ?", (tenant_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")
        logger.info(f"Tenant actualizado: {tenant_id} ({', '.join(fields) or 'sin cambios'})")
        return self._row_to_tenant(row)

    def set_tenant_active(self, tenant_id: str, active: bool) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE tenants SET active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, utc_now_iso(), tenant_id),
            )

    # Knowledge entries

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> KnowledgeEntry:
        return KnowledgeEntry(
            id=row["id"],
            tenant_id=row["tenant_id"],
            title=row["title"],
            category=row["category"],
            content=row["content"],
            keywords=json.loads(row["keywords"] or "[]"),
            metadata=json.loads(row["metadata"] or "{}"),
            vector_id=row["vector_id"],
            status=row["status"],
        )

    @staticmethod
    def _entry_params(entry: KnowledgeEntry, now: str) -> tuple:
        return (
            entry.id,
            entry.tenant_id,
            entry.title,
            entry.category.value,
            entry.content,
            json.dumps(entry.keywords, ensure_ascii=False),
            entry.metadata.model_dump_json(exclude_none=True),
            entry.status.value,
            now,
            now,
        )

    def insert_knowledge_entries(self, entries: Sequence[KnowledgeEntry]) -> None:
        """Inserta entradas (sin vector_id) en una sola transacción."""
        now = utc_now_iso()
        with self._conn() as conn:
            conn.executemany(
                """
                INSERT INTO knowledge_entries
                    (id, tenant_id, title, category, content, keywords, metadata, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [self._entry_params(e, now) for e in entries],
            )

    def get_knowledge_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM knowledge_entries WHERE id = ?", (entry_id,)
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def list_knowledge_entries(
        self,
        tenant_id: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[KnowledgeEntry]:
        query = "SELECT * FROM knowledge_entries WHERE 1=1"
        params: list = []
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if category:
            query += " AND category = ?"
            params.append(category)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY updated_at DESC"
        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_entry(r) for r in rows]

    def update_knowledge_entry(self, entry_id: str, **fields) -> KnowledgeEntry:
        """Actualiza columnas editables. Devuelve la entrada resultante."""
        updates = []
        params: list = []
        for name in _KNOWLEDGE_UPDATABLE:
            if name not in fields or fields[name] is None:
                continue
            value = fields[name]
            if name == "keywords":
                value = json.dumps(list(value), ensure_ascii=False)
            elif name == "metadata":
                value = value.model_dump_json(exclude_none=True)
            elif hasattr(value, "value"):
                value = value.value
            updates.append(f"{name} = ?")
            params.append(value)

        with self._conn() as conn:
            if updates:
                updates.append("updated_at = ?")
                params.extend([utc_now_iso(), entry_id])
                conn.execute(
                    f"UPDATE knowledge_entries SET {', '.join(updates)} WHERE id = ?",
                    params,
                )
            row = conn.execute(
                "SELECT * FROM knowledge_entries WHERE id = ?", (entry_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Knowledge entry not found: {entry_id}")
        return self._row_to_entry(row)

    def set_vector_references(self, entry_ids: Sequence[str]) -> None:
        """Marca las entradas como indexadas (vector_id = id)."""
        with self._conn() as conn:
            conn.executemany(
                "UPDATE knowledge_entries SET vector_id = id WHERE id = ?",
                [(i,) for i in entry_ids],
            )

    def delete_knowledge_entries(self, entry_ids: Sequence[str]) -> int:
        with self._conn() as conn:
            cursor = conn.executemany(
                "DELETE FROM knowledge_entries WHERE id = ?",
                [(i,) for i in entry_ids],
            )
            return cursor.rowcount

    # Conversations

    def get_conversation(self, tenant_id: str, user_phone: str) -> Optional[Dict]:
        """Obtiene el registro de conversación de un (tenant, usuario)."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE tenant_id = ? AND user_phone = ?",
                (tenant_id, user_phone),
            ).fetchone()
            if row:
                d = dict(row)
                d["messages"] = json.loads(d["messages"])
                return d
            return None

    def append_conversation_messages(
        self,
        tenant_id: str,
        user_phone: str,
        messages: Sequence[Dict[str, str]],
        window: int,
    ) -> int:
        """
        Agrega mensajes con timestamp del servidor y recorta a los últimos
        ``window``. Lectura y escritura en una sola transacción IMMEDIATE.

        Returns:
            Cantidad de mensajes que quedan en el registro.
        """
        now = utc_now_iso()
        stamped = [
            {"role": m["role"], "content": m["content"], "timestamp": now}
            for m in messages
        ]

        conn = sqlite3.connect(self.db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        conn.isolation_level = None
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT id, messages FROM conversations WHERE tenant_id = ? AND user_phone = ?",
                (tenant_id, user_phone),
            ).fetchone()

            if row:
                history = json.loads(row["messages"]) + stamped
                history = history[-window:] if window > 0 else []
                conn.execute(
                    "UPDATE conversations SET messages = ?, last_message_at = ? WHERE id = ?",
                    (json.dumps(history, ensure_ascii=False), now, row["id"]),
                )
            else:
                history = stamped[-window:] if window > 0 else []
                conn.execute(
                    """
                    INSERT INTO conversations (id, tenant_id, user_phone, messages, last_message_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        str(uuid.uuid4()),
                        tenant_id,
                        user_phone,
                        json.dumps(history, ensure_ascii=False),
                        now,
                    ),
                )
            conn.execute("COMMIT")
            return len(history)
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def delete_conversations_before(self, cutoff_iso: str) -> int:
        """Elimina conversaciones cuya última actividad es anterior al cutoff."""
        with self._conn() as conn:
            cursor = conn.execute(
                "DELETE FROM conversations WHERE last_message_at < ?", (cutoff_iso,)
            )
            return cursor.rowcount

    # Escalations

    def create_escalation(self, tenant_id: str, user_phone: str, reason: str) -> Escalation:
        """Registra una derivación a staff humano (append-only)."""
        escalation = Escalation(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_phone=user_phone,
            reason=reason,
            created_at=utc_now_iso(),
        )
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO escalations (id, tenant_id, user_phone, reason, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    escalation.id,
                    escalation.tenant_id,
                    escalation.user_phone,
                    escalation.reason,
                    escalation.created_at,
                ),
            )
        return escalation

    def list_escalations(self, tenant_id: str) -> List[Escalation]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM escalations WHERE tenant_id = ? ORDER BY created_at",
                (tenant_id,),
            ).fetchall()
            return [Escalation(**dict(r)) for r in rows]

    # Stats

    def count_rows(self) -> Dict[str, int]:
        counts = {}
        with self._conn() as conn:
            for table in ("tenants", "knowledge_entries", "conversations", "escalations"):
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return counts
