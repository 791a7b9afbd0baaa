"""
FastAPI Application - API REST de MILA
- Settings centralizado (Pydantic BaseSettings via config.py)
- Dependency Injection con Depends(get_context)
- HTTP Status Codes correctos + Error Handlers globales
- Async con asyncio.to_thread para operaciones bloqueantes

Endpoints:
- GET    /                        → Raíz informativa
- GET    /health                  → Health check
- GET    /webhook                 → Verificación de WhatsApp
- POST   /webhook                 → Mensajes entrantes de WhatsApp
- GET    /tenants                 → Listar estudios
- POST   /tenants                 → Registrar estudio
- GET    /tenants/{id}            → Obtener estudio
- PATCH  /tenants/{id}            → Actualizar estudio
- POST   /tenants/{id}/toggle     → Activar/desactivar estudio
- GET    /knowledge               → Listar entradas
- POST   /knowledge               → Crear entrada (+ vector)
- POST   /knowledge/batch         → Crear lote de chunks (+ vectores)
- GET    /knowledge/{id}          → Obtener entrada
- PATCH  /knowledge/{id}          → Actualizar entrada
- DELETE /knowledge/{id}          → Eliminar entrada (+ vector)
- POST   /knowledge/{id}/reindex  → Re-vectorizar entrada
- POST   /knowledge/search        → Probar búsqueda semántica
- POST   /knowledge/chunk         → Vista previa de chunking
- POST   /maintenance/cleanup     → Limpieza periódica
- GET    /stats                   → Estadísticas del sistema
"""

import asyncio
import logging
import sqlite3
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

# Agregar directorio raíz al path para imports
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from agent.errors import (
    MilaError,
    NotFoundError,
    ProviderError,
    ValidationError,
    VectorStoreError,
)
from agent.gateway import normalize_phone
from agent.models import EntryStatus, KnowledgeCategory
from api.config import get_settings
from api.context import AppContext, build_context
from api.models import (
    ChunkPreview,
    ChunkRequest,
    ChunkResponse,
    CleanupResponse,
    ErrorResponse,
    HealthResponse,
    KnowledgeBatchRequest,
    KnowledgeBatchResponse,
    KnowledgeCreateRequest,
    KnowledgeEntryResponse,
    KnowledgeUpdateRequest,
    SearchRequest,
    SearchResponse,
    SearchResultItem,
    SearchStats,
    TenantCreateRequest,
    TenantResponse,
    TenantUpdateRequest,
)
from api.whatsapp import parse_webhook_payload
from rag.ingest.chunker import chunk_markdown, chunk_text, validate_chunk

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
MAX_SEARCH_LIMIT = 20


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan: arma el AppContext, aplica schema y asegura la colección."""
    logger.info("MILA API iniciando...")
    # Un contexto ya presente (tests) se reutiliza
    ctx = getattr(app.state, "context", None)
    try:
        if ctx is None:
            ctx = build_context(get_settings())
        await asyncio.to_thread(ctx.db.init_schema)
        app.state.context = ctx
    except Exception as e:
        logger.error(f"Error inicializando AppContext: {e}", exc_info=True)
        app.state.context = None

    if app.state.context is not None:
        try:
            await ctx.retriever.ensure_collection()
            logger.info("AppContext listo")
        except MilaError as e:
            # El servicio arranca igual; /health reporta Qdrant con error
            logger.error(f"No se pudo asegurar la colección de Qdrant: {e.message}")

    yield

    if app.state.context is not None:
        await app.state.context.close()
    logger.info("MILA API cerrando...")


def get_context(request: Request) -> AppContext:
    """
    Dependency que provee el AppContext del proceso.

    Permite override en tests via app.dependency_overrides[get_context].
    """
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Servicio no inicializado")
    return ctx


# FastAPI App

app = FastAPI(
    title="MILA API",
    description="Agente RAG multi-tenant para WhatsApp",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        422: {"model": ErrorResponse, "description": "Error de validación"},
        500: {"model": ErrorResponse, "description": "Error interno"},
    },
)

# CORS middleware (para desarrollo)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # En producción, especificar dominios
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global Error Handlers


def _error(status: int, type_: str, title: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(type=type_, title=title, status=status, detail=detail).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Errores de validación Pydantic → 422 con formato ErrorResponse."""
    return _error(422, "validation_error", "Datos de entrada inválidos", str(exc.errors()))


@app.exception_handler(MilaError)
async def mila_exception_handler(request: Request, exc: MilaError):
    """Errores de dominio → status según su tipo."""
    if isinstance(exc, ValidationError):
        return _error(400, "invalid_request", "Solicitud Inválida", exc.message)
    if isinstance(exc, NotFoundError):
        return _error(404, "not_found", "No Encontrado", exc.message)
    if isinstance(exc, (ProviderError, VectorStoreError)):
        logger.error(f"Servicio externo no disponible en {request.url.path}: {exc.message}")
        return _error(
            503,
            "upstream_unavailable",
            "Servicio No Disponible",
            "Un servicio externo no está disponible. Intenta nuevamente más tarde.",
        )
    logger.error(f"Error de dominio no mapeado en {request.url.path}: {exc.message}")
    return _error(500, "internal_error", "Error Interno", "Error interno del servidor.")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """HTTPException → ErrorResponse con el status original."""
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error(exc.status_code, "http_error", detail, detail)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Excepción no manejada → 500 genérico.

    Loguea el error real pero devuelve mensaje genérico al cliente.
    """
    logger.error(f"Error no manejado en {request.url.path}: {exc}", exc_info=True)
    return _error(
        500,
        "internal_error",
        "Error Interno",
        "Error interno del servidor. Intenta nuevamente más tarde.",
    )


# Endpoints


@app.get("/", tags=["Root"])
async def root():
    """Endpoint raíz"""
    return {
        "message": "MILA API",
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(ctx: AppContext = Depends(get_context)):
    """
    Health check endpoint.

    Verifica el estado de:
    - Base de datos
    - Qdrant
    - Groq API (via API key)
    """
    components = {}
    overall_status = "healthy"

    try:
        await asyncio.to_thread(ctx.db.ping)
        components["database"] = "ok"
    except Exception:
        components["database"] = "error"
        overall_status = "unhealthy"

    try:
        points = await ctx.retriever.count()
        components["qdrant"] = f"ok ({points} points)"
    except Exception:
        components["qdrant"] = "error"
        overall_status = "unhealthy"

    if ctx.settings.GROQ_API_KEY:
        components["groq_api"] = "ok"
    else:
        components["groq_api"] = "no_api_key"
        overall_status = "degraded" if overall_status == "healthy" else overall_status

    return HealthResponse(status=overall_status, version=API_VERSION, components=components)


# Webhook


@app.get("/webhook", tags=["Webhook"])
async def verify_webhook(request: Request, ctx: AppContext = Depends(get_context)):
    """
    Verificación del webhook de WhatsApp (Meta).

    Meta envía un GET request con hub.mode=subscribe, hub.verify_token y
    hub.challenge. Se valida el token y se devuelve el challenge como texto plano.
    """
    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge")

    if mode == "subscribe" and token == ctx.settings.WHATSAPP_VERIFY_TOKEN:
        logger.info("Webhook verificado correctamente")
        return PlainTextResponse(content=challenge or "", status_code=200)

    logger.warning(f"Webhook verification failed. mode={mode}")
    raise HTTPException(status_code=403, detail="Verification failed")


@app.post("/webhook", tags=["Webhook"])
async def handle_webhook(request: Request, ctx: AppContext = Depends(get_context)):
    """
    Recibe mensajes de WhatsApp desde Meta.

    Cada mensaje pasa por el InboundGateway; los errores del agente se
    convierten en la disculpa fija y nunca en un error HTTP para Meta.
    """
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    # JSON válido pero no un objeto (ej: [] o "x"): no es un evento de Meta
    if not isinstance(body, dict):
        return {"status": "ignored"}

    messages = parse_webhook_payload(body)
    if not messages:
        return {"status": "ignored"}

    outcomes = []
    for message in messages:
        outcome = await ctx.gateway.handle(message)
        outcomes.append(outcome.value)

    return {"status": "ok", "outcomes": outcomes}


# Tenants


def _normalize_number(raw: Optional[str]) -> Optional[str]:
    """Deja solo dígitos, igual que el lookup del gateway."""
    if raw is None:
        return None
    number = normalize_phone(raw)
    if not 10 <= len(number) <= 15:
        raise ValidationError("whatsapp_number must contain 10-15 digits")
    return number


@app.get("/tenants", response_model=List[TenantResponse], tags=["Tenants"])
async def list_tenants(active_only: bool = False, ctx: AppContext = Depends(get_context)):
    tenants = await asyncio.to_thread(ctx.db.list_tenants, active_only)
    return [t.model_dump() for t in tenants]


@app.post(
    "/tenants",
    response_model=TenantResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse, "description": "Número inválido o duplicado"}},
    tags=["Tenants"],
)
async def create_tenant(request: TenantCreateRequest, ctx: AppContext = Depends(get_context)):
    """Registra un estudio y el número de WhatsApp por el que recibe mensajes."""
    number = _normalize_number(request.whatsapp_number)
    try:
        tenant = await asyncio.to_thread(
            ctx.db.create_tenant,
            request.name,
            number,
            request.settings,
            request.active,
        )
    except sqlite3.IntegrityError as e:
        raise ValidationError(f"whatsapp_number already registered: {number}") from e
    return tenant.model_dump()


@app.get("/tenants/{tenant_id}", response_model=TenantResponse, tags=["Tenants"])
async def get_tenant(tenant_id: str, ctx: AppContext = Depends(get_context)):
    tenant = await asyncio.to_thread(ctx.db.get_tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant not found: {tenant_id}")
    return tenant.model_dump()


@app.patch(
    "/tenants/{tenant_id}",
    response_model=TenantResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Tenants"],
)
async def update_tenant(
    tenant_id: str, request: TenantUpdateRequest, ctx: AppContext = Depends(get_context)
):
    fields = request.model_dump(exclude_unset=True)
    if "settings" in fields:
        fields["settings"] = request.settings
    if "whatsapp_number" in fields:
        fields["whatsapp_number"] = _normalize_number(request.whatsapp_number)
    try:
        tenant = await asyncio.to_thread(lambda: ctx.db.update_tenant(tenant_id, **fields))
    except sqlite3.IntegrityError as e:
        raise ValidationError(
            f"whatsapp_number already registered: {fields.get('whatsapp_number')}"
        ) from e
    return tenant.model_dump()


@app.post(
    "/tenants/{tenant_id}/toggle",
    response_model=TenantResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Tenants"],
)
async def toggle_tenant(tenant_id: str, ctx: AppContext = Depends(get_context)):
    """Activa/desactiva un estudio; inactivo, sus mensajes se descartan."""
    tenant = await asyncio.to_thread(ctx.db.get_tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant not found: {tenant_id}")
    updated = await asyncio.to_thread(
        lambda: ctx.db.update_tenant(tenant_id, active=not tenant.active)
    )
    logger.info(f"Tenant {tenant_id} {'activado' if updated.active else 'desactivado'}")
    return updated.model_dump()


# Knowledge


@app.get("/knowledge", response_model=List[KnowledgeEntryResponse], tags=["Knowledge"])
async def list_knowledge(
    tenant_id: Optional[str] = None,
    category: Optional[KnowledgeCategory] = None,
    status: Optional[EntryStatus] = None,
    ctx: AppContext = Depends(get_context),
):
    entries = await asyncio.to_thread(
        ctx.db.list_knowledge_entries,
        tenant_id,
        category.value if category else None,
        status.value if status else None,
    )
    return [e.model_dump() for e in entries]


@app.post(
    "/knowledge",
    response_model=KnowledgeEntryResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Tenant inexistente"},
        503: {"model": ErrorResponse, "description": "Embeddings o Qdrant no disponibles"},
    },
    tags=["Knowledge"],
)
async def create_knowledge(request: KnowledgeCreateRequest, ctx: AppContext = Depends(get_context)):
    """Crea una entrada y la indexa (fila + embedding + punto en Qdrant)."""
    entry = await ctx.indexer.create_entry(
        tenant_id=request.tenant_id,
        title=request.title,
        category=request.category,
        content=request.content,
        keywords=request.keywords,
        metadata=request.metadata,
        status=request.status,
    )
    return entry.model_dump()


@app.post(
    "/knowledge/batch",
    response_model=KnowledgeBatchResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Knowledge"],
)
async def create_knowledge_batch(
    request: KnowledgeBatchRequest, ctx: AppContext = Depends(get_context)
):
    """Carga hasta 100 chunks en una sola operación (todo o nada)."""
    entries = await ctx.indexer.create_entries(
        tenant_id=request.tenant_id,
        category=request.category,
        chunks=[c.model_dump() for c in request.chunks],
        status=request.status,
    )
    return KnowledgeBatchResponse(
        count=len(entries),
        entries=[KnowledgeEntryResponse(**e.model_dump()) for e in entries],
    )


@app.post("/knowledge/search", response_model=SearchResponse, tags=["Knowledge"])
async def search_knowledge(request: SearchRequest, ctx: AppContext = Depends(get_context)):
    """Ejecuta la misma búsqueda que usa el agente y devuelve scores."""
    limit = max(1, min(MAX_SEARCH_LIMIT, request.limit))
    started = time.perf_counter()

    vector = await ctx.retriever.embed(request.query)
    hits = await ctx.retriever.search(
        vector, request.tenant_id, category=request.category, limit=limit
    )

    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    results = [
        SearchResultItem(
            rank=i + 1,
            id=hit.id,
            title=hit.payload.get("title"),
            category=hit.payload.get("category"),
            content=hit.payload.get("content"),
            keywords=hit.payload.get("keywords") or [],
            score=hit.score,
        )
        for i, hit in enumerate(hits)
    ]
    stats = None
    if hits:
        scores = [h.score for h in hits]
        stats = SearchStats(
            avg_score=sum(scores) / len(scores),
            min_score=min(scores),
            max_score=max(scores),
        )

    logger.info(f"Search test: '{request.query[:50]}' → {len(hits)} resultados en {duration_ms} ms")
    return SearchResponse(
        query=request.query,
        tenant_id=request.tenant_id,
        category=request.category.value if request.category else None,
        limit=limit,
        count=len(results),
        results=results,
        stats=stats,
        duration_ms=duration_ms,
    )


@app.post("/knowledge/chunk", response_model=ChunkResponse, tags=["Knowledge"])
async def preview_chunks(request: ChunkRequest):
    """Divide un documento en chunks y evalúa su calidad (sin persistir)."""
    if request.overlap >= request.chunk_size:
        raise ValidationError("overlap must be smaller than chunk_size")

    try:
        if request.split_sections:
            chunks = chunk_markdown(
                request.text,
                source=request.source or "document",
                chunk_size=request.chunk_size,
                overlap=request.overlap,
            )
        else:
            chunks = chunk_text(
                request.text,
                chunk_size=request.chunk_size,
                overlap=request.overlap,
                source=request.source,
            )
    except ValueError as e:
        raise ValidationError(str(e)) from e

    previews = []
    for chunk in chunks:
        report = validate_chunk(chunk)
        previews.append(
            ChunkPreview(
                title=chunk["title"],
                content=chunk["content"],
                metadata=chunk["metadata"],
                is_valid=report["is_valid"],
                quality=report["quality"],
                warnings=report["warnings"],
            )
        )
    return ChunkResponse(count=len(previews), chunks=previews)


@app.get("/knowledge/{entry_id}", response_model=KnowledgeEntryResponse, tags=["Knowledge"])
async def get_knowledge(entry_id: str, ctx: AppContext = Depends(get_context)):
    entry = await asyncio.to_thread(ctx.db.get_knowledge_entry, entry_id)
    if entry is None:
        raise NotFoundError(f"Knowledge entry not found: {entry_id}")
    return entry.model_dump()


@app.patch("/knowledge/{entry_id}", response_model=KnowledgeEntryResponse, tags=["Knowledge"])
async def update_knowledge(
    entry_id: str, request: KnowledgeUpdateRequest, ctx: AppContext = Depends(get_context)
):
    """Actualiza una entrada; si cambia su contenido indexado se re-vectoriza."""
    fields = request.model_dump(exclude_unset=True, exclude_none=True)
    if "metadata" in fields:
        fields["metadata"] = request.metadata
    entry = await ctx.indexer.update_entry(entry_id, **fields)
    return entry.model_dump()


@app.delete("/knowledge/{entry_id}", status_code=204, tags=["Knowledge"])
async def delete_knowledge(entry_id: str, ctx: AppContext = Depends(get_context)):
    await ctx.indexer.delete_entry(entry_id)
    return Response(status_code=204)


@app.post(
    "/knowledge/{entry_id}/reindex",
    response_model=KnowledgeEntryResponse,
    tags=["Knowledge"],
)
async def reindex_knowledge(entry_id: str, ctx: AppContext = Depends(get_context)):
    """Re-vectoriza una entrada (repara entradas sin vector_id)."""
    entry = await ctx.indexer.reindex_entry(entry_id)
    return entry.model_dump()


# Operación


@app.post("/maintenance/cleanup", response_model=CleanupResponse, tags=["Maintenance"])
async def run_cleanup(ctx: AppContext = Depends(get_context)):
    """
    Limpieza periódica (disparada por cron/scheduler externo):
    - conversaciones inactivas hace más de CONVERSATION_MAX_AGE_DAYS
    - ventanas de rate limit vencidas
    """
    deleted = await ctx.conversations.cleanup(ctx.settings.CONVERSATION_MAX_AGE_DAYS)
    expired = ctx.rate_limiter.cleanup_expired()
    return CleanupResponse(conversations_deleted=deleted, rate_limit_entries_expired=expired)


@app.get("/stats", tags=["Stats"])
async def get_stats(ctx: AppContext = Depends(get_context)):
    """
    Obtiene estadísticas básicas del sistema.

    Retorna:
    - Filas por tabla
    - Puntos en la colección de Qdrant
    - Remitentes con ventana de rate limit activa
    """
    counts = await asyncio.to_thread(ctx.db.count_rows)
    points = await ctx.retriever.count()
    return {
        "tables": counts,
        "vector_points": points,
        "rate_limited_senders": len(ctx.rate_limiter),
    }


# Error Handler 404


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    """Handler para 404 de rutas inexistentes"""
    detail = getattr(exc, "detail", None)
    if not isinstance(detail, str) or detail == "Not Found":
        detail = f"El endpoint '{request.url.path}' no existe."
    return _error(404, "not_found", "No Encontrado", detail)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True,
        log_level="info",
    )
