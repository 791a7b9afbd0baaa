"""
Tests para los modelos de dominio y los modelos Pydantic de la API.

Cubre:
- Settings/metadata tipados (campos desconocidos rechazados)
- ModelResponse (texto y tool-calls)
- Requests de la API (validación de campos)
- ErrorResponse (formato RFC 7807)
"""

import pytest
from pydantic import ValidationError

from agent.models import (
    EntryMetadata,
    KnowledgeCategory,
    KnowledgeEntry,
    ModelResponse,
    Role,
    StopReason,
    TenantSettings,
    TextBlock,
    ToolCallBlock,
)
from api.models import (
    ChunkRequest,
    ErrorResponse,
    KnowledgeBatchRequest,
    KnowledgeCreateRequest,
    SearchRequest,
)


class TestDomainModels:
    def test_tenant_settings_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            TenantSettings(greeting_message="hi", favorite_color="blue")

    def test_entry_metadata_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            EntryMetadata(source="faq.md", author="x")

    def test_category_values(self):
        assert KnowledgeCategory("purchases & registrations") == KnowledgeCategory.REGISTRATIONS
        with pytest.raises(ValueError):
            KnowledgeCategory("spa")

    def test_entry_is_indexed(self):
        entry = KnowledgeEntry(
            id="e1", tenant_id="t1", title="t", category="general", content="c"
        )
        assert entry.is_indexed is False
        assert entry.model_copy(update={"vector_id": "e1"}).is_indexed is True


class TestModelResponse:
    def test_text_joins_text_blocks(self):
        response = ModelResponse(
            stop_reason=StopReason.END,
            content=[TextBlock("Hola"), TextBlock("¿en qué te ayudo?")],
        )
        assert response.text == "Hola\n¿en qué te ayudo?"
        assert response.tool_calls == []

    def test_tool_calls(self):
        call = ToolCallBlock("c1", "escalate_to_human", {"reason": "booking"})
        response = ModelResponse(stop_reason=StopReason.TOOL_USE, content=[TextBlock(""), call])
        assert response.tool_calls == [call]


class TestApiRequests:
    def test_create_request_valido(self):
        req = KnowledgeCreateRequest(
            tenant_id="t1", title="Monthly pass", category="pricing", content="IDR 1,200,000"
        )
        assert req.category == KnowledgeCategory.PRICING
        assert req.keywords == []

    def test_create_request_sin_contenido(self):
        with pytest.raises(ValidationError):
            KnowledgeCreateRequest(tenant_id="t1", title="x", category="pricing", content="")

    def test_create_request_campo_extra(self):
        with pytest.raises(ValidationError):
            KnowledgeCreateRequest(
                tenant_id="t1", title="x", category="pricing", content="y", vector_id="v"
            )

    def test_batch_request_sin_chunks(self):
        with pytest.raises(ValidationError):
            KnowledgeBatchRequest(tenant_id="t1", category="general", chunks=[])

    def test_search_request_query_muy_larga(self):
        with pytest.raises(ValidationError):
            SearchRequest(tenant_id="t1", query="x" * 501)

    def test_chunk_request_defaults(self):
        req = ChunkRequest(text="hola")
        assert (req.chunk_size, req.overlap, req.split_sections) == (500, 100, False)

    def test_chunk_request_fuera_de_rango(self):
        with pytest.raises(ValidationError):
            ChunkRequest(text="hola", chunk_size=50)


class TestErrorResponse:
    """Modelo de error RFC 7807."""

    def test_error_response_serializa_correctamente(self):
        err = ErrorResponse(
            type="not_found",
            title="No Encontrado",
            status=404,
            detail="Knowledge entry not found",
        )
        assert set(err.model_dump()) == {"type", "title", "status", "detail"}
