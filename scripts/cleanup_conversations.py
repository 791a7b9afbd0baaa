"""
Limpieza de conversaciones inactivas (para cron).

Borra los registros de conversación sin actividad en los últimos
CONVERSATION_MAX_AGE_DAYS días (o --days).
"""

import asyncio
import logging
import sys
from pathlib import Path

# Agregar directorio raíz al path para imports
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from agent.conversation import ConversationStore
from agent.db_service import DBService
from api.config import get_settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


async def cleanup(days: int = None) -> int:
    settings = get_settings()
    store = ConversationStore(DBService(settings.db_full_path), window=settings.CONVERSATION_WINDOW)
    return await store.cleanup(days or settings.CONVERSATION_MAX_AGE_DAYS)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Limpia conversaciones inactivas de MILA")
    parser.add_argument("--days", type=int, default=None, help="Antigüedad máxima en días")
    args = parser.parse_args()

    deleted = asyncio.run(cleanup(args.days))
    print(f"✅ Conversaciones eliminadas: {deleted}")
