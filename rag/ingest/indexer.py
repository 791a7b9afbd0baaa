"""
Indexer - Mantiene sincronizadas la tabla knowledge_entries y Qdrant.

Protocolo de consistencia para cada alta:
1. Insertar la fila en SQLite (sin vector_id)
2. Generar el embedding
3. Upsert del punto en Qdrant (id = entry.id)
4. Registrar vector_id = entry.id en la fila

Si falla (2) o (3) se borra la fila insertada en (1) y se propaga el error.
Si falla (4) la fila y el vector existen: se loguea y reindex_entry lo repara.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Sequence

import pydantic

from agent.db_service import DBService
from agent.errors import NotFoundError, ValidationError
from agent.models import (
    EntryMetadata,
    EntryStatus,
    KnowledgeCategory,
    KnowledgeEntry,
)
from rag.query.retriever import KnowledgeRetriever

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100

_REINDEX_FIELDS = ("title", "category", "content", "keywords", "status")


def embedding_text(entry: KnowledgeEntry) -> str:
    """Texto que se vectoriza para una entrada."""
    return f"{entry.title}\n{entry.content}"


def normalize_keywords(keywords) -> List[str]:
    """Acepta lista o texto separado por comas."""
    if not keywords:
        return []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    return [k.strip() for k in keywords if k and k.strip()]


def _build_entry(tenant_id: str, data: Dict) -> KnowledgeEntry:
    title = (data.get("title") or "").strip()
    content = (data.get("content") or "").strip()
    if not title:
        raise ValidationError("title is required")
    if not content:
        raise ValidationError("content is required")
    try:
        return KnowledgeEntry(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            title=title,
            category=data.get("category"),
            content=content,
            keywords=normalize_keywords(data.get("keywords")),
            metadata=data.get("metadata") or EntryMetadata(),
            status=data.get("status") or EntryStatus.ACTIVE,
        )
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid knowledge entry: {e}") from e


class KnowledgeIndexer:
    """Altas, cambios y bajas de conocimiento con sincronización vectorial."""

    def __init__(
        self,
        db: DBService,
        retriever: KnowledgeRetriever,
        max_batch_size: int = MAX_BATCH_SIZE,
    ):
        self.db = db
        self.retriever = retriever
        self.max_batch_size = max_batch_size

    async def _require_tenant(self, tenant_id: str) -> None:
        tenant = await asyncio.to_thread(self.db.get_tenant, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")

    async def _require_entry(self, entry_id: str) -> KnowledgeEntry:
        entry = await asyncio.to_thread(self.db.get_knowledge_entry, entry_id)
        if entry is None:
            raise NotFoundError(f"Knowledge entry not found: {entry_id}")
        return entry

    async def _index(self, entries: List[KnowledgeEntry]) -> List[KnowledgeEntry]:
        """Pasos 1-4 del protocolo para un lote ya validado."""
        ids = [e.id for e in entries]

        await asyncio.to_thread(self.db.insert_knowledge_entries, entries)

        try:
            vectors = await self.retriever.embed_batch([embedding_text(e) for e in entries])
            await self.retriever.upsert_many(entries, vectors)
        except Exception:
            logger.error(f"Indexado falló, revirtiendo {len(ids)} fila(s)")
            await asyncio.to_thread(self.db.delete_knowledge_entries, ids)
            raise

        try:
            await asyncio.to_thread(self.db.set_vector_references, ids)
        except Exception as e:
            # Filas y vectores existen; vector_id se repara con reindex_entry
            logger.error(f"No se pudo registrar vector_id para {len(ids)} fila(s): {e}")
            return entries

        return [e.model_copy(update={"vector_id": e.id}) for e in entries]

    async def create_entry(
        self,
        tenant_id: str,
        title: str,
        category: KnowledgeCategory,
        content: str,
        keywords: Optional[List[str]] = None,
        metadata: Optional[EntryMetadata] = None,
        status: EntryStatus = EntryStatus.ACTIVE,
    ) -> KnowledgeEntry:
        """Crea una entrada y su vector."""
        entry = _build_entry(
            tenant_id,
            {
                "title": title,
                "category": category,
                "content": content,
                "keywords": keywords,
                "metadata": metadata,
                "status": status,
            },
        )
        await self._require_tenant(tenant_id)

        [created] = await self._index([entry])
        logger.info(f"Entrada creada: {created.title} ({created.id})")
        return created

    async def create_entries(
        self,
        tenant_id: str,
        category: KnowledgeCategory,
        chunks: Sequence[Dict],
        status: EntryStatus = EntryStatus.ACTIVE,
    ) -> List[KnowledgeEntry]:
        """
        Carga un lote de chunks como entradas de una misma categoría.

        Un solo insert, un solo embed_batch y un solo upsert. Si el embedding
        o el upsert fallan, no queda ninguna fila del lote.
        """
        if not chunks:
            raise ValidationError("chunks must be a non-empty list")
        if len(chunks) > self.max_batch_size:
            raise ValidationError(
                f"Maximum {self.max_batch_size} chunks per batch, got {len(chunks)}"
            )

        entries = [
            _build_entry(tenant_id, {**chunk, "category": category, "status": status})
            for chunk in chunks
        ]
        await self._require_tenant(tenant_id)

        created = await self._index(entries)
        logger.info(f"Lote creado: {len(created)} entradas para tenant {tenant_id}")
        return created

    async def update_entry(self, entry_id: str, **fields) -> KnowledgeEntry:
        """
        Actualiza una entrada. Si está indexada y cambió algún campo del
        payload, se vuelve a vectorizar y se reemplaza el punto.
        """
        existing = await self._require_entry(entry_id)

        for name in ("title", "content"):
            if name in fields and fields[name] is not None and not fields[name].strip():
                raise ValidationError(f"{name} cannot be empty")
        try:
            if fields.get("category") is not None:
                fields["category"] = KnowledgeCategory(fields["category"])
            if fields.get("status") is not None:
                fields["status"] = EntryStatus(fields["status"])
            if fields.get("metadata") is not None:
                fields["metadata"] = EntryMetadata.model_validate(fields["metadata"])
            if fields.get("keywords") is not None:
                fields["keywords"] = normalize_keywords(fields["keywords"])
        except (ValueError, pydantic.ValidationError) as e:
            raise ValidationError(str(e)) from e

        updated = await asyncio.to_thread(self.db.update_knowledge_entry, entry_id, **fields)

        changed = any(
            getattr(updated, name) != getattr(existing, name) for name in _REINDEX_FIELDS
        )
        if changed and updated.is_indexed:
            logger.info(f"Entrada modificada, re-indexando: {updated.title}")
            vector = await self.retriever.embed(embedding_text(updated))
            await self.retriever.upsert(updated, vector)

        logger.info(f"Entrada actualizada: {entry_id}")
        return updated

    async def delete_entry(self, entry_id: str) -> None:
        """Borra el vector (si existe) y luego la fila."""
        entry = await self._require_entry(entry_id)

        if entry.vector_id:
            await self.retriever.delete(entry.vector_id)
        await asyncio.to_thread(self.db.delete_knowledge_entries, [entry_id])

        logger.info(f"Entrada eliminada: {entry.title} ({entry_id})")

    async def reindex_entry(self, entry_id: str) -> KnowledgeEntry:
        """Re-vectoriza una entrada existente y registra su vector_id."""
        entry = await self._require_entry(entry_id)

        vector = await self.retriever.embed(embedding_text(entry))
        await self.retriever.upsert(entry, vector)
        await asyncio.to_thread(self.db.set_vector_references, [entry_id])

        return entry.model_copy(update={"vector_id": entry.id})
