"""
Conversation Store — Historial acotado por (tenant, usuario).

Abstrae el acceso a la tabla `conversations` y expone las tres
operaciones que usa el gateway:

- get: últimos N turnos, orden cronológico, sin timestamps
- append: agrega turnos y conserva solo los últimos K (ventana deslizante)
- cleanup: borra conversaciones inactivas (disparo periódico externo)
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Sequence, Tuple

from agent.db_service import DBService
from agent.errors import ValidationError
from agent.models import Role, Turn

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 20
DEFAULT_MAX_AGE_DAYS = 7

_PERSISTABLE_ROLES = {Role.USER, Role.ASSISTANT}


class ConversationStore:
    """Historial por (tenant, usuario) con ventana de K turnos."""

    def __init__(self, db: DBService, window: int = DEFAULT_WINDOW):
        if window < 1:
            raise ValueError("window must be >= 1")
        self._db = db
        self.window = window
        # Serializa read-modify-write sobre la misma clave
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, tenant_id: str, user_id: str, limit: int = 10) -> List[Turn]:
        """Devuelve los últimos ``limit`` turnos en orden cronológico."""
        if limit <= 0:
            return []
        record = await asyncio.to_thread(self._db.get_conversation, tenant_id, user_id)
        if record is None:
            return []
        return [
            Turn(role=Role(m["role"]), content=m["content"])
            for m in record["messages"][-limit:]
        ]

    async def append(self, tenant_id: str, user_id: str, turns: Sequence[Turn]) -> int:
        """
        Agrega turnos al registro (lo crea si no existe).

        Solo se persisten turnos user/assistant con contenido de texto.

        Returns:
            Cantidad de turnos en el registro luego del recorte.
        """
        messages = []
        for turn in turns:
            if turn.role not in _PERSISTABLE_ROLES or not isinstance(turn.content, str):
                raise ValidationError(
                    f"Only text user/assistant turns can be stored, got {turn.role.value}"
                )
            messages.append({"role": turn.role.value, "content": turn.content})

        if not messages:
            return 0

        async with self._locks[(tenant_id, user_id)]:
            stored = await asyncio.to_thread(
                self._db.append_conversation_messages,
                tenant_id,
                user_id,
                messages,
                self.window,
            )

        logger.debug(f"[{user_id}] conversación {tenant_id}: {stored} turnos")
        return stored

    async def cleanup(self, max_age_days: int = DEFAULT_MAX_AGE_DAYS) -> int:
        """Elimina conversaciones sin actividad en los últimos ``max_age_days``."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        deleted = await asyncio.to_thread(
            self._db.delete_conversations_before,
            cutoff.isoformat(timespec="microseconds"),
        )
        self._prune_locks()
        logger.info(f"Conversaciones limpiadas: {deleted} (> {max_age_days} días)")
        return deleted

    def _prune_locks(self) -> None:
        """Descarta los locks que nadie tiene tomados; se recrean al próximo append."""
        for key in [k for k, lock in self._locks.items() if not lock.locked()]:
            del self._locks[key]
