"""
Retriever - Motor de recuperación sobre Qdrant.

Este módulo:
1. Convierte texto en vectores (delegando en el embedder)
2. Mantiene un punto de Qdrant por entrada de conocimiento (id = entry.id)
3. Busca por similitud coseno filtrando SIEMPRE por tenant_id
   (y opcionalmente por categoría)
4. Traduce errores de Qdrant a VectorStoreError (reintentables o fatales)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

import httpx
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from agent.errors import VectorStoreError, retry_async
from agent.models import KnowledgeCategory, KnowledgeEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_COLLECTION = "yoga_knowledge"
DEFAULT_SEARCH_LIMIT = 7


class Embedder(Protocol):
    dimension: int

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]: ...


@dataclass(frozen=True)
class SearchHit:
    """Resultado de búsqueda: payload denormalizado + score de similitud."""

    id: str
    score: float
    payload: Dict[str, Any]


def entry_payload(entry: KnowledgeEntry) -> Dict[str, Any]:
    """Payload del punto: campos de la entrada para mostrar al modelo."""
    return {
        "tenant_id": entry.tenant_id,
        "entry_id": entry.id,
        "title": entry.title,
        "content": entry.content,
        "category": entry.category.value,
        "keywords": list(entry.keywords),
        "status": entry.status.value,
        "metadata": entry.metadata.model_dump(exclude_none=True),
    }


def _translate_error(action: str, e: Exception) -> VectorStoreError:
    if isinstance(e, UnexpectedResponse):
        status = e.status_code or 0
        retryable = status == 429 or status >= 500
        return VectorStoreError(f"Qdrant {action} failed ({status}): {e}", retryable=retryable)
    if isinstance(
        e,
        (ResponseHandlingException, httpx.TransportError, asyncio.TimeoutError, ConnectionError),
    ):
        return VectorStoreError(f"Qdrant {action} unreachable: {e}", retryable=True)
    # Dimensión / schema inválidos y demás errores del cliente
    return VectorStoreError(f"Qdrant {action} failed: {e}", retryable=False)


class KnowledgeRetriever:
    """Embeddings + operaciones vectoriales de la base de conocimiento."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        embedder: Embedder,
        collection_name: str = DEFAULT_COLLECTION,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ):
        self.client = client
        self.embedder = embedder
        self.collection_name = collection_name
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay

    async def _call(self, action: str, fn: Callable[[], Awaitable[T]]) -> T:
        async def _wrapped():
            try:
                return await fn()
            except VectorStoreError:
                raise
            except Exception as e:
                raise _translate_error(action, e) from e

        return await retry_async(
            _wrapped,
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            label=f"qdrant.{action}",
        )

    # Embeddings

    async def embed(self, text: str) -> List[float]:
        return await self.embedder.embed(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return await self.embedder.embed_batch(texts)

    # Colección

    async def ensure_collection(self) -> None:
        """Crea la colección (coseno, dimensión D) y los índices de payload."""
        exists = await self._call(
            "collection_exists",
            lambda: self.client.collection_exists(self.collection_name),
        )
        if exists:
            logger.info(f"Colección '{self.collection_name}' ya existe")
            return

        # Leer la dimensión puede cargar el modelo: fuera del event loop
        dimension = await asyncio.to_thread(lambda: self.embedder.dimension)
        await self._call(
            "create_collection",
            lambda: self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=models.VectorParams(
                    size=dimension, distance=models.Distance.COSINE
                ),
            ),
        )
        for field_name in ("tenant_id", "category"):
            await self._call(
                "create_payload_index",
                lambda f=field_name: self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=f,
                    field_schema=models.PayloadSchemaType.KEYWORD,
                ),
            )
        logger.info(f"Colección '{self.collection_name}' creada ({dimension} dimensiones)")

    async def count(self, tenant_id: Optional[str] = None) -> int:
        count_filter = self._build_filter(tenant_id) if tenant_id else None
        result = await self._call(
            "count",
            lambda: self.client.count(
                collection_name=self.collection_name,
                count_filter=count_filter,
                exact=True,
            ),
        )
        return result.count

    # Escritura

    async def upsert(self, entry: KnowledgeEntry, vector: List[float]) -> None:
        """Inserta o reemplaza el punto de la entrada (idempotente por id)."""
        await self.upsert_many([entry], [vector])
        logger.info(f"Upsert: {entry.title} ({entry.id})")

    async def upsert_many(
        self, entries: Sequence[KnowledgeEntry], vectors: Sequence[List[float]]
    ) -> None:
        if len(entries) != len(vectors):
            raise VectorStoreError(
                f"Got {len(vectors)} vectors for {len(entries)} entries"
            )
        if not entries:
            return
        points = [
            models.PointStruct(id=entry.id, vector=list(vector), payload=entry_payload(entry))
            for entry, vector in zip(entries, vectors)
        ]
        await self._call(
            "upsert",
            lambda: self.client.upsert(
                collection_name=self.collection_name, points=points, wait=True
            ),
        )

    async def delete(self, entry_id: str) -> None:
        """Elimina el punto; borrar un id inexistente no es error."""
        await self.delete_many([entry_id])

    async def delete_many(self, entry_ids: Sequence[str]) -> None:
        if not entry_ids:
            return
        await self._call(
            "delete",
            lambda: self.client.delete(
                collection_name=self.collection_name,
                points_selector=models.PointIdsList(points=list(entry_ids)),
                wait=True,
            ),
        )
        logger.info(f"Delete: {len(entry_ids)} punto(s)")

    # Búsqueda

    @staticmethod
    def _build_filter(
        tenant_id: str, category: Optional[KnowledgeCategory] = None
    ) -> models.Filter:
        conditions = [
            models.FieldCondition(key="tenant_id", match=models.MatchValue(value=tenant_id))
        ]
        if category is not None:
            conditions.append(
                models.FieldCondition(
                    key="category",
                    match=models.MatchValue(value=KnowledgeCategory(category).value),
                )
            )
        return models.Filter(must=conditions)

    async def search(
        self,
        query_vector: List[float],
        tenant_id: str,
        category: Optional[KnowledgeCategory] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> List[SearchHit]:
        """
        Busca las entradas más similares de un tenant.

        Returns:
            Hits ordenados por score descendente. Lista vacía si no hay matches.
        """
        if not tenant_id:
            raise VectorStoreError("tenant_id is required for search")

        query_filter = self._build_filter(tenant_id, category)
        response = await self._call(
            "query_points",
            lambda: self.client.query_points(
                collection_name=self.collection_name,
                query=list(query_vector),
                query_filter=query_filter,
                limit=limit,
                with_payload=True,
            ),
        )

        hits = []
        for point in response.points:
            payload = point.payload or {}
            if payload.get("tenant_id") != tenant_id:
                logger.error(
                    f"Punto {point.id} de otro tenant descartado (filtro no aplicado)"
                )
                continue
            hits.append(SearchHit(id=str(point.id), score=float(point.score), payload=payload))
        hits.sort(key=lambda h: h.score, reverse=True)

        logger.info(
            f"Search: {len(hits)} resultados para tenant {tenant_id}"
            f"{f' en categoría {KnowledgeCategory(category).value}' if category else ''}"
        )
        return hits
