"""
Configuración compartida de fixtures para los tests de MILA.

Provee:
- Settings de prueba (sin necesidad de .env real)
- DB SQLite temporal con schema aplicado y un tenant de ejemplo
- Qdrant en memoria + embedder determinístico por palabras clave
- Proveedor de modelo guionado (sin llamadas a Groq)
- TestClient de FastAPI con un AppContext de prueba
"""

import math
import re
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from qdrant_client import AsyncQdrantClient

# Agregar raíz del proyecto al path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from agent.db_service import DBService
from agent.models import (
    ModelResponse,
    StopReason,
    TenantSettings,
    TextBlock,
    ToolCallBlock,
    ToolDef,
    Turn,
)
from api.config import Settings
from api.context import build_context
from api.main import app
from rag.ingest.indexer import KnowledgeIndexer
from rag.query.retriever import KnowledgeRetriever

TENANT_NUMBER = "6281100000001"
OTHER_TENANT_NUMBER = "6281100000002"
USER_PHONE = "6289900000001"


# Fakes


class KeywordEmbedder:
    """
    Embedder determinístico: un eje por palabra del vocabulario más un eje
    de sesgo, normalizado. Textos que comparten palabras quedan cerca.
    """

    # Prefijos: "pric" cubre price/prices/pricing
    VOCABULARY = [
        "pric",
        "month",
        "pass",
        "class",
        "schedul",
        "beginner",
        "refund",
        "locat",
        "instruct",
        "pregnan",
    ]

    def __init__(self):
        self.calls = 0
        self.fail_with: Optional[Exception] = None

    @property
    def dimension(self) -> int:
        return len(self.VOCABULARY) + 1

    def vector(self, text: str) -> List[float]:
        words = re.findall(r"[a-z]+", text.lower())
        values = [float(sum(1 for w in words if w.startswith(v))) for v in self.VOCABULARY]
        values.append(0.1)
        norm = math.sqrt(sum(x * x for x in values))
        return [x / norm for x in values]

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return self.vector(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vector(t) for t in texts]


Step = Union[ModelResponse, Callable[[Sequence[Turn]], ModelResponse], Exception]


class ScriptedModelProvider:
    """Devuelve respuestas guionadas y registra cada request."""

    def __init__(self, steps: Optional[List[Step]] = None, repeat_last: bool = False):
        self.steps = list(steps or [])
        self.repeat_last = repeat_last
        self.requests: List[dict] = []

    async def complete(
        self,
        system: str,
        messages: Sequence[Turn],
        tools: Sequence[ToolDef],
        max_tokens: int,
    ) -> ModelResponse:
        self.requests.append(
            {
                "system": system,
                "messages": list(messages),
                "tools": list(tools),
                "max_tokens": max_tokens,
            }
        )
        if not self.steps:
            raise AssertionError("ScriptedModelProvider: no quedan respuestas guionadas")
        step = self.steps[0] if self.repeat_last and len(self.steps) == 1 else self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(messages)
        return step


class RecordingTransport:
    """Transporte que guarda los mensajes enviados."""

    def __init__(self, fail: bool = False):
        self.sent: List[tuple] = []
        self.fail = fail

    async def send_text(self, to: str, body: str, channel_id: Optional[str] = None) -> bool:
        if self.fail:
            raise ConnectionError("transport down")
        self.sent.append((to, body))
        return True

    @property
    def bodies(self) -> List[str]:
        return [body for _, body in self.sent]


def text_response(text: str) -> ModelResponse:
    return ModelResponse(stop_reason=StopReason.END, content=[TextBlock(text=text)])


def tool_response(*calls: ToolCallBlock, text: str = "") -> ModelResponse:
    content = [TextBlock(text=text)] if text else []
    return ModelResponse(stop_reason=StopReason.TOOL_USE, content=[*content, *calls])


# Settings de prueba


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings con valores seguros para testing (no necesita .env)."""
    return Settings(
        GROQ_API_KEY="test-key-fake-12345",
        DATABASE_PATH=str(tmp_path / "mila_test.db"),
        QDRANT_COLLECTION="test_knowledge",
        WHATSAPP_VERIFY_TOKEN="test_token_123",
        RETRY_BASE_DELAY=0.01,
    )


# DB


@pytest.fixture
def db(tmp_path) -> DBService:
    """DBService con DB temporal (solo schema, sin seeds)."""
    service = DBService(tmp_path / "test.db")
    service.init_schema()
    return service


@pytest.fixture
def tenant(db):
    return db.create_tenant(
        name="Sunrise Yoga",
        whatsapp_number=TENANT_NUMBER,
        settings=TenantSettings(
            greeting_message="Hi! Welcome to Sunrise Yoga.",
            basic_guidelines="Always mention the free trial class.",
        ),
    )


@pytest.fixture
def other_tenant(db):
    return db.create_tenant(name="Moonlight Yoga", whatsapp_number=OTHER_TENANT_NUMBER)


# Retrieval


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest_asyncio.fixture
async def retriever(embedder):
    client = AsyncQdrantClient(location=":memory:")
    engine = KnowledgeRetriever(
        client, embedder, collection_name="test_knowledge", retry_base_delay=0.01
    )
    await engine.ensure_collection()
    yield engine
    await client.close()


@pytest.fixture
def indexer(db, retriever) -> KnowledgeIndexer:
    return KnowledgeIndexer(db, retriever)


# TestClient con AppContext de prueba


@pytest.fixture
def model_provider() -> ScriptedModelProvider:
    return ScriptedModelProvider()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def client(test_settings, embedder, model_provider, transport) -> TestClient:
    """
    TestClient de FastAPI con un AppContext armado con fakes:
    - Qdrant en memoria
    - embedder por palabras clave
    - proveedor de modelo guionado
    - transporte que registra envíos
    """
    app.state.context = build_context(
        test_settings,
        qdrant_client=AsyncQdrantClient(location=":memory:"),
        embedder=embedder,
        provider=model_provider,
        transport=transport,
    )

    with TestClient(app, raise_server_exceptions=False) as c:
        yield c

    app.state.context = None
    app.dependency_overrides.clear()


@pytest.fixture
def api_tenant(client):
    """Tenant registrado en la DB del AppContext de prueba."""
    return app.state.context.db.create_tenant(
        name="Sunrise Yoga", whatsapp_number=TENANT_NUMBER
    )
