"""
Script para inicializar MILA.

- Aplica el schema SQLite (idempotente)
- Crea la colección de Qdrant si no existe
- Opcionalmente registra un tenant demo con su número de WhatsApp
"""

import asyncio
import sys
from pathlib import Path

# Agregar directorio raíz al path para imports
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from qdrant_client import AsyncQdrantClient

from agent.db_service import DBService
from agent.models import TenantSettings
from api.config import get_settings
from rag.query.embeddings import SentenceTransformerEmbedder
from rag.query.retriever import KnowledgeRetriever


async def init(seed_tenant: str = None, whatsapp_number: str = None) -> None:
    settings = get_settings()

    db = DBService(settings.db_full_path)
    print(f"📦 Aplicando schema en {settings.db_full_path}")
    db.init_schema()

    if seed_tenant:
        tenant = db.create_tenant(
            name=seed_tenant,
            whatsapp_number=whatsapp_number,
            settings=TenantSettings(
                greeting_message=f"Hi! Welcome to {seed_tenant}. How can I help you today?"
            ),
        )
        print(f"🌱 Tenant demo creado: {tenant.name} (ID: {tenant.id})")

    client = AsyncQdrantClient(
        url=settings.QDRANT_URL,
        api_key=settings.QDRANT_API_KEY,
        timeout=int(settings.VECTOR_TIMEOUT_SECONDS),
    )
    retriever = KnowledgeRetriever(
        client,
        SentenceTransformerEmbedder(model_name=settings.EMBEDDING_MODEL),
        collection_name=settings.QDRANT_COLLECTION,
    )
    try:
        print(f"📋 Verificando colección '{settings.QDRANT_COLLECTION}' en {settings.QDRANT_URL}")
        await retriever.ensure_collection()
        print(f"   Puntos en la colección: {await retriever.count()}")
    finally:
        await client.close()

    for table, count in db.count_rows().items():
        print(f"   - {table}: {count} registros")
    print("\n🎉 Inicialización completada")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Inicializa SQLite y Qdrant para MILA")
    parser.add_argument("--seed-tenant", type=str, default=None, help="Nombre del tenant demo")
    parser.add_argument(
        "--whatsapp-number",
        type=str,
        default=None,
        help="Número de WhatsApp (solo dígitos) que atiende el tenant demo",
    )
    args = parser.parse_args()

    asyncio.run(init(args.seed_tenant, args.whatsapp_number))
