"""
AppContext — Dependencias del proceso armadas a partir de Settings.

Reemplaza los singletons globales: el lifespan construye un AppContext,
lo guarda en app.state y los endpoints lo reciben con Depends(get_context).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from qdrant_client import AsyncQdrantClient

from agent.conversation import ConversationStore
from agent.db_service import DBService
from agent.gateway import (
    FixedWindowRateLimiter,
    InboundGateway,
    MessageDeduplicator,
    MessageTransport,
)
from agent.llm import GroqChatProvider, ModelProvider
from agent.orchestrator import AgentLoop
from agent.tools import ToolExecutor
from api.config import Settings
from api.whatsapp import WhatsAppCloudTransport
from rag.ingest.indexer import KnowledgeIndexer
from rag.query.embeddings import SentenceTransformerEmbedder
from rag.query.retriever import Embedder, KnowledgeRetriever

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    db: DBService
    retriever: KnowledgeRetriever
    indexer: KnowledgeIndexer
    conversations: ConversationStore
    agent: AgentLoop
    rate_limiter: FixedWindowRateLimiter
    gateway: InboundGateway
    transport: MessageTransport

    async def close(self) -> None:
        await self.retriever.client.close()
        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()


def build_context(
    settings: Settings,
    qdrant_client: Optional[AsyncQdrantClient] = None,
    embedder: Optional[Embedder] = None,
    provider: Optional[ModelProvider] = None,
    transport: Optional[MessageTransport] = None,
) -> AppContext:
    """
    Arma el grafo de dependencias. Los parámetros opcionales permiten
    inyectar fakes en tests.
    """
    db = DBService(settings.db_full_path)

    qdrant_client = qdrant_client or AsyncQdrantClient(
        url=settings.QDRANT_URL,
        api_key=settings.QDRANT_API_KEY,
        timeout=int(settings.VECTOR_TIMEOUT_SECONDS),
    )
    embedder = embedder or SentenceTransformerEmbedder(
        model_name=settings.EMBEDDING_MODEL,
        timeout=settings.EMBED_TIMEOUT_SECONDS,
        retry_attempts=settings.RETRY_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY,
    )
    retriever = KnowledgeRetriever(
        qdrant_client,
        embedder,
        collection_name=settings.QDRANT_COLLECTION,
        retry_attempts=settings.RETRY_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY,
    )
    provider = provider or GroqChatProvider(
        api_key=settings.GROQ_API_KEY,
        model=settings.LLM_MODEL,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        retry_attempts=settings.RETRY_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY,
    )
    transport = transport or WhatsAppCloudTransport(
        token=settings.WHATSAPP_TOKEN,
        phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
    )

    conversations = ConversationStore(db, window=settings.CONVERSATION_WINDOW)
    agent = AgentLoop(
        provider,
        ToolExecutor(db, retriever, search_limit=settings.SEARCH_LIMIT),
        max_tokens=settings.AGENT_MAX_TOKENS,
        max_iterations=settings.AGENT_MAX_ITERATIONS,
        default_timezone=settings.DEFAULT_TIMEZONE,
    )
    rate_limiter = FixedWindowRateLimiter(
        max_messages=settings.RATE_LIMIT_MAX_MESSAGES,
        window_ms=settings.RATE_LIMIT_WINDOW_MS,
    )
    gateway = InboundGateway(
        db,
        conversations,
        agent,
        transport,
        rate_limiter=rate_limiter,
        deduplicator=MessageDeduplicator(),
        required_prefix=settings.INBOUND_REQUIRED_PREFIX,
        context_turns=settings.CONTEXT_TURNS,
    )

    logger.info("AppContext inicializado")
    return AppContext(
        settings=settings,
        db=db,
        retriever=retriever,
        indexer=KnowledgeIndexer(db, retriever),
        conversations=conversations,
        agent=agent,
        rate_limiter=rate_limiter,
        gateway=gateway,
        transport=transport,
    )
