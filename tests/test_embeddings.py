"""
Tests para rag/query/embeddings.py — Sin cargar modelos reales.
"""

import time

import numpy as np
import pytest

from agent.errors import ProviderError
from rag.query.embeddings import SentenceTransformerEmbedder, normalize


class FakeModel:
    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.batches = []

    def encode(self, texts, **kwargs):
        self.batches.append(list(texts))
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise RuntimeError("CUDA out of memory")
        return np.array([[3.0, 4.0] for _ in texts])

    def get_sentence_embedding_dimension(self):
        return 2


def _embedder(model: FakeModel, **kwargs) -> SentenceTransformerEmbedder:
    embedder = SentenceTransformerEmbedder(retry_base_delay=0.001, **kwargs)
    embedder._model = model
    embedder._dimension = model.get_sentence_embedding_dimension()
    return embedder


def test_normalize():
    result = normalize(np.array([[3.0, 4.0], [0.0, 0.0]]))
    assert result.tolist() == [[0.6, 0.8], [0.0, 0.0]]


@pytest.mark.asyncio
async def test_embed_returns_unit_vector():
    embedder = _embedder(FakeModel())

    vector = await embedder.embed("kelas yoga pemula")

    assert vector == pytest.approx([0.6, 0.8])
    assert embedder.dimension == 2


@pytest.mark.asyncio
async def test_embed_batch_single_encode_call():
    model = FakeModel()
    embedder = _embedder(model)

    vectors = await embedder.embed_batch(["a", "b", "c"])

    assert len(vectors) == 3
    assert model.batches == [["a", "b", "c"]]


@pytest.mark.asyncio
async def test_embed_batch_empty():
    assert await _embedder(FakeModel()).embed_batch([]) == []


@pytest.mark.asyncio
async def test_model_failure_is_fatal_provider_error():
    model = FakeModel(fail=True)
    embedder = _embedder(model)

    with pytest.raises(ProviderError) as exc_info:
        await embedder.embed("x")

    assert exc_info.value.retryable is False
    assert len(model.batches) == 1


@pytest.mark.asyncio
async def test_timeout_is_retryable_provider_error():
    embedder = _embedder(FakeModel(delay=0.2), timeout=0.01, retry_attempts=1)

    with pytest.raises(ProviderError) as exc_info:
        await embedder.embed("x")

    assert exc_info.value.retryable is True
