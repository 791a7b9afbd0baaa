"""
Tests para rag/query/retriever.py — Búsqueda vectorial sobre Qdrant en memoria.
"""

import threading
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import KeywordEmbedder
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from agent.errors import VectorStoreError
from agent.models import KnowledgeCategory, KnowledgeEntry
from rag.query.retriever import KnowledgeRetriever, _translate_error, entry_payload


def _entry(tenant_id: str, title: str, content: str, category=KnowledgeCategory.PRICING):
    return KnowledgeEntry(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        title=title,
        category=category,
        content=content,
        keywords=["k"],
    )


async def _index(retriever, entry):
    vector = await retriever.embed(f"{entry.title}\n{entry.content}")
    await retriever.upsert(entry, vector)


class TestSearch:
    @pytest.mark.asyncio
    async def test_upserted_entry_is_top_hit_for_its_own_text(self, retriever):
        pass_entry = _entry("t1", "Monthly pass", "Monthly pass price")
        class_entry = _entry(
            "t1", "Beginner class", "Beginner class schedule", KnowledgeCategory.CLASSES
        )
        for e in (pass_entry, class_entry):
            await _index(retriever, e)

        query = await retriever.embed("Monthly pass\nMonthly pass price")
        hits = await retriever.search(query, "t1")

        assert hits[0].id == pass_entry.id
        assert hits[0].payload["entry_id"] == pass_entry.id
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)

    @pytest.mark.asyncio
    async def test_results_never_cross_tenants(self, retriever):
        await _index(retriever, _entry("tenant-a", "Monthly pass", "price A"))
        await _index(retriever, _entry("tenant-b", "Monthly pass", "price B"))

        query = await retriever.embed("monthly pass price")
        hits = await retriever.search(query, "tenant-a")

        assert hits
        assert all(h.payload["tenant_id"] == "tenant-a" for h in hits)

    @pytest.mark.asyncio
    async def test_category_filter(self, retriever):
        await _index(retriever, _entry("t1", "Pass", "monthly pass price"))
        await _index(
            retriever,
            _entry("t1", "Schedule", "class schedule", KnowledgeCategory.SCHEDULES),
        )

        query = await retriever.embed("monthly pass price")
        hits = await retriever.search(query, "t1", category=KnowledgeCategory.SCHEDULES)

        assert [h.payload["category"] for h in hits] == ["schedules"]

    @pytest.mark.asyncio
    async def test_empty_result_for_unknown_tenant(self, retriever):
        await _index(retriever, _entry("t1", "Pass", "monthly pass"))
        query = await retriever.embed("monthly pass")
        assert await retriever.search(query, "nobody") == []

    @pytest.mark.asyncio
    async def test_limit(self, retriever):
        for i in range(5):
            await _index(retriever, _entry("t1", f"Pass {i}", "monthly pass"))
        query = await retriever.embed("monthly pass")
        assert len(await retriever.search(query, "t1", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_search_requires_tenant(self, retriever):
        with pytest.raises(VectorStoreError):
            await retriever.search([0.1] * 11, "")


class TestWrites:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, retriever):
        entry = _entry("t1", "Pass", "monthly pass")
        await _index(retriever, entry)
        await _index(retriever, entry)
        assert await retriever.count("t1") == 1

    @pytest.mark.asyncio
    async def test_upsert_replaces_payload(self, retriever):
        entry = _entry("t1", "Pass", "monthly pass")
        await _index(retriever, entry)
        await _index(retriever, entry.model_copy(update={"title": "Unlimited pass"}))

        query = await retriever.embed("monthly pass")
        hits = await retriever.search(query, "t1")
        assert [h.payload["title"] for h in hits] == ["Unlimited pass"]

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, retriever):
        entry = _entry("t1", "Pass", "monthly pass")
        await _index(retriever, entry)
        await retriever.delete(entry.id)
        await retriever.delete(entry.id)
        assert await retriever.count() == 0

    @pytest.mark.asyncio
    async def test_upsert_many_checks_lengths(self, retriever):
        with pytest.raises(VectorStoreError):
            await retriever.upsert_many([_entry("t1", "a", "b")], [])

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_fatal(self, retriever):
        with pytest.raises(VectorStoreError) as exc_info:
            await retriever.upsert(_entry("t1", "a", "b"), [0.5, 0.5])
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_ensure_collection_is_idempotent(self, retriever):
        await retriever.ensure_collection()
        assert await retriever.count() == 0

    @pytest.mark.asyncio
    async def test_dimension_is_read_off_the_event_loop(self):
        class SlowLoadingEmbedder(KeywordEmbedder):
            # Simula un modelo que se carga al pedir la dimensión
            def __init__(self):
                super().__init__()
                self.dimension_threads = []

            @property
            def dimension(self) -> int:
                self.dimension_threads.append(threading.get_ident())
                return len(self.VOCABULARY) + 1

        embedder = SlowLoadingEmbedder()
        client = AsyncQdrantClient(location=":memory:")
        retriever = KnowledgeRetriever(client, embedder, collection_name="fresh")
        try:
            await retriever.ensure_collection()

            assert embedder.dimension_threads
            assert threading.get_ident() not in embedder.dimension_threads
            assert await client.collection_exists("fresh")
            vector = await retriever.embed("monthly pass price")
            await retriever.upsert(_entry("t1", "Monthly pass", "price"), vector)
            assert await retriever.count() == 1
        finally:
            await client.close()

    def test_payload_fields(self):
        payload = entry_payload(_entry("t1", "Pass", "monthly pass"))
        assert set(payload) == {
            "tenant_id",
            "entry_id",
            "title",
            "content",
            "category",
            "keywords",
            "status",
            "metadata",
        }


class TestErrorTranslation:
    def test_transport_errors_are_retryable(self):
        err = _translate_error("upsert", ResponseHandlingException(httpx.ConnectError("down")))
        assert err.retryable is True

    def test_server_errors_are_retryable(self):
        e = UnexpectedResponse(503, "Service Unavailable", b"", httpx.Headers())
        assert _translate_error("query_points", e).retryable is True

    def test_client_errors_are_fatal(self):
        e = UnexpectedResponse(400, "Bad Request", b"wrong vector size", httpx.Headers())
        assert _translate_error("upsert", e).retryable is False

    @pytest.mark.asyncio
    async def test_retryable_errors_are_retried(self, embedder):
        client = AsyncMock()
        client.count.side_effect = [
            ResponseHandlingException(httpx.ReadTimeout("slow")),
            SimpleNamespace(count=4),
        ]
        retriever = KnowledgeRetriever(client, embedder, retry_base_delay=0.001)

        assert await retriever.count() == 4
        assert client.count.await_count == 2
