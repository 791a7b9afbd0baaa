"""
Tests para api/context.py — Armado del grafo de dependencias.
"""

import pytest
from conftest import RecordingTransport, ScriptedModelProvider
from qdrant_client import AsyncQdrantClient

from api.context import build_context


@pytest.mark.asyncio
async def test_gateway_shares_configured_rate_limiter(test_settings, embedder):
    settings = test_settings.model_copy(
        update={"RATE_LIMIT_MAX_MESSAGES": 3, "RATE_LIMIT_WINDOW_MS": 5_000}
    )

    ctx = build_context(
        settings,
        qdrant_client=AsyncQdrantClient(location=":memory:"),
        embedder=embedder,
        provider=ScriptedModelProvider(),
        transport=RecordingTransport(),
    )
    try:
        assert ctx.gateway.rate_limiter is ctx.rate_limiter
        assert ctx.rate_limiter.max_messages == 3
        assert ctx.rate_limiter.window_ms == 5_000
        assert ctx.gateway.conversations is ctx.conversations
        assert ctx.indexer.retriever is ctx.retriever
    finally:
        await ctx.close()
