"""
Pydantic models para validación de requests/responses.

Define schemas tipados para todos los endpoints de la API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent.models import EntryMetadata, EntryStatus, KnowledgeCategory, TenantSettings


# Error Response (RFC 7807 simplificado)


class ErrorResponse(BaseModel):
    """
    Modelo de error estructurado inspirado en RFC 7807.

    Se usa como response_model en todos los errores para garantizar
    un formato consistente y predecible para los consumidores de la API.
    """

    type: str = Field(
        ..., description="Categoría del error (ej: 'validation_error', 'not_found')"
    )
    title: str = Field(..., description="Título breve del error")
    status: int = Field(..., description="Código HTTP del error")
    detail: str = Field(..., description="Descripción legible del error")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "not_found",
                    "title": "No Encontrado",
                    "status": 404,
                    "detail": "Knowledge entry not found: 2f0c...",
                }
            ]
        }
    }


# Tenants


class TenantCreateRequest(BaseModel):
    """Alta de un estudio. El número se guarda solo con dígitos."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200, examples=["Sunrise Yoga Studio"])
    whatsapp_number: Optional[str] = Field(None, examples=["+62 811-0000-0001"])
    settings: TenantSettings = Field(default_factory=TenantSettings)
    active: bool = True


class TenantUpdateRequest(BaseModel):
    """Cambios parciales; whatsapp_number explícitamente null desvincula el número"""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    whatsapp_number: Optional[str] = None
    settings: Optional[TenantSettings] = None
    active: Optional[bool] = None


class TenantResponse(BaseModel):
    id: str
    name: str
    whatsapp_number: Optional[str]
    settings: TenantSettings
    active: bool


# Knowledge


class KnowledgeCreateRequest(BaseModel):
    """Alta de una entrada de conocimiento"""

    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    category: KnowledgeCategory
    content: str = Field(..., min_length=1)
    keywords: List[str] = Field(default_factory=list)
    metadata: EntryMetadata = Field(default_factory=EntryMetadata)
    status: EntryStatus = EntryStatus.ACTIVE


class ChunkInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    keywords: List[str] = Field(default_factory=list)
    metadata: EntryMetadata = Field(default_factory=EntryMetadata)


class KnowledgeBatchRequest(BaseModel):
    """Alta en lote: hasta 100 chunks de una misma categoría"""

    tenant_id: str = Field(..., min_length=1)
    category: KnowledgeCategory
    status: EntryStatus = EntryStatus.ACTIVE
    chunks: List[ChunkInput] = Field(..., min_length=1)

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "tenant_id": "b7c1...",
                    "category": "pricing",
                    "chunks": [
                        {
                            "title": "Monthly pass",
                            "content": "The monthly unlimited pass costs IDR 1,200,000.",
                            "keywords": ["price", "harga", "monthly"],
                        }
                    ],
                }
            ]
        },
    }


class KnowledgeUpdateRequest(BaseModel):
    """Cambios parciales; los campos omitidos no se tocan"""

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    category: Optional[KnowledgeCategory] = None
    content: Optional[str] = Field(None, min_length=1)
    keywords: Optional[List[str]] = None
    metadata: Optional[EntryMetadata] = None
    status: Optional[EntryStatus] = None


class KnowledgeEntryResponse(BaseModel):
    id: str
    tenant_id: str
    title: str
    category: KnowledgeCategory
    content: str
    keywords: List[str]
    metadata: EntryMetadata
    vector_id: Optional[str]
    status: EntryStatus


class KnowledgeBatchResponse(BaseModel):
    success: bool = True
    count: int
    entries: List[KnowledgeEntryResponse]


class SearchRequest(BaseModel):
    """Prueba de búsqueda semántica sobre el conocimiento de un tenant"""

    tenant_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1, max_length=500)
    category: Optional[KnowledgeCategory] = None
    # Se recorta a 1..20
    limit: int = 5


class SearchResultItem(BaseModel):
    rank: int
    id: str
    title: Optional[str]
    category: Optional[str]
    content: Optional[str]
    keywords: List[str] = Field(default_factory=list)
    score: float


class SearchStats(BaseModel):
    avg_score: float
    min_score: float
    max_score: float


class SearchResponse(BaseModel):
    success: bool = True
    query: str
    tenant_id: str
    category: Optional[str]
    limit: int
    count: int
    results: List[SearchResultItem]
    stats: Optional[SearchStats] = None
    duration_ms: float


class ChunkRequest(BaseModel):
    """Vista previa de chunking de un documento largo"""

    text: str = Field(..., min_length=1)
    chunk_size: int = Field(default=500, ge=100, le=4000)
    overlap: int = Field(default=100, ge=0, le=1000)
    split_sections: bool = Field(
        default=False, description="Separar primero por headers markdown"
    )
    source: Optional[str] = None


class ChunkPreview(BaseModel):
    title: str
    content: str
    metadata: Dict[str, Any]
    is_valid: bool
    quality: str
    warnings: List[str]


class ChunkResponse(BaseModel):
    count: int
    chunks: List[ChunkPreview]


# Operación


class CleanupResponse(BaseModel):
    conversations_deleted: int
    rate_limit_entries_expired: int


class HealthResponse(BaseModel):
    """Response del health check"""

    status: str = Field(..., description="Estado del servicio")
    version: str = Field(..., description="Versión de la API")
    components: Dict[str, str] = Field(..., description="Estado de componentes")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "status": "healthy",
                    "version": "1.0.0",
                    "components": {
                        "database": "ok",
                        "qdrant": "ok (42 points)",
                        "groq_api": "ok",
                    },
                }
            ]
        }
    }
