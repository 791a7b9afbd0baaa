"""
Tools — Herramientas que el modelo puede invocar durante el loop.

- knowledge_search(query, category?): búsqueda semántica en el conocimiento
  del tenant
- escalate_to_human(reason): registra una derivación a staff humano

Las llamadas del modelo se parsean en un conjunto cerrado de variantes
(KnowledgeSearch | EscalateToHuman). Una llamada que no se puede parsear
se convierte en un payload de error para el modelo; nunca llega al dispatch.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from agent.db_service import DBService
from agent.errors import MilaError, ValidationError
from agent.models import KnowledgeCategory, ToolCallBlock, ToolDef, ToolResult
from rag.query.retriever import DEFAULT_SEARCH_LIMIT, KnowledgeRetriever

logger = logging.getLogger(__name__)

ESCALATION_ACK = (
    "Your question has been forwarded to our staff. "
    "They will contact you shortly to assist you personally."
)
NO_RESULTS_MESSAGE = "No relevant information found in the knowledge base for this query."
SEARCH_FAILED_MESSAGE = (
    "Failed to search knowledge base. Please try again or ask a staff member."
)
ESCALATION_FAILED_MESSAGE = "Failed to escalate. Please contact us directly."


KNOWLEDGE_SEARCH_TOOL = ToolDef(
    name="knowledge_search",
    description=(
        "REQUIRED TOOL: Search the studio's knowledge base for accurate, up-to-date "
        "information. You MUST use this tool for ANY question about classes, schedules, "
        "pricing, membership, policies, facilities, location, instructors or any other "
        "studio-related information. Do not answer from general knowledge."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": (
                    "Natural-language search query capturing what the user asks. "
                    "Include both English and Indonesian keywords when relevant "
                    '(e.g. "kelas classes beginner pemula").'
                ),
            },
            "category": {
                "type": "string",
                "enum": [c.value for c in KnowledgeCategory],
                "description": (
                    "Optional category filter. Use only when the question clearly "
                    "belongs to one category."
                ),
            },
        },
        "required": ["query"],
    },
)

ESCALATE_TO_HUMAN_TOOL = ToolDef(
    name="escalate_to_human",
    description=(
        "Escalate the conversation to human staff when the query involves medical "
        "concerns, booking requests, payments, complaints, or anything requiring "
        "human judgment."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "reason": {
                "type": "string",
                "description": (
                    "Brief explanation of why a human is needed "
                    '(e.g. "wants to book private session").'
                ),
            }
        },
        "required": ["reason"],
    },
)

TOOL_DEFINITIONS: List[ToolDef] = [KNOWLEDGE_SEARCH_TOOL, ESCALATE_TO_HUMAN_TOOL]


@dataclass(frozen=True)
class KnowledgeSearch:
    query: str
    category: Optional[KnowledgeCategory] = None


@dataclass(frozen=True)
class EscalateToHuman:
    reason: str


ToolCall = Union[KnowledgeSearch, EscalateToHuman]


def _required_text(args: Dict[str, Any], key: str, tool: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{tool}: '{key}' must be a non-empty string")
    return value.strip()


def parse_tool_call(block: ToolCallBlock) -> ToolCall:
    """
    Convierte un bloque de tool-call del modelo en una variante tipada.

    Raises:
        ValidationError: nombre desconocido o argumentos inválidos
    """
    args = block.input if isinstance(block.input, dict) else {}

    if block.name == KNOWLEDGE_SEARCH_TOOL.name:
        query = _required_text(args, "query", block.name)
        category = args.get("category")
        if category in (None, ""):
            return KnowledgeSearch(query=query)
        try:
            return KnowledgeSearch(query=query, category=KnowledgeCategory(category))
        except ValueError as e:
            raise ValidationError(f"{block.name}: unknown category '{category}'") from e

    if block.name == ESCALATE_TO_HUMAN_TOOL.name:
        return EscalateToHuman(reason=_required_text(args, "reason", block.name))

    raise ValidationError(f"Unknown tool: {block.name}")


class ToolExecutor:
    """Ejecuta tool-calls para un tenant/usuario concretos."""

    def __init__(
        self,
        db: DBService,
        retriever: KnowledgeRetriever,
        search_limit: int = DEFAULT_SEARCH_LIMIT,
    ):
        self.db = db
        self.retriever = retriever
        self.search_limit = search_limit

    async def knowledge_search(self, tenant_id: str, call: KnowledgeSearch) -> Dict[str, Any]:
        try:
            vector = await self.retriever.embed(call.query)
            hits = await self.retriever.search(
                vector, tenant_id, category=call.category, limit=self.search_limit
            )
        except MilaError as e:
            logger.error(f"knowledge_search falló: {e.message}")
            return {"found": False, "error": SEARCH_FAILED_MESSAGE}

        if not hits:
            return {"found": False, "message": NO_RESULTS_MESSAGE}

        return {
            "found": True,
            "count": len(hits),
            "results": [
                {
                    "rank": i + 1,
                    "title": hit.payload.get("title"),
                    "category": hit.payload.get("category"),
                    "content": hit.payload.get("content"),
                    "relevance_score": round(hit.score, 4),
                }
                for i, hit in enumerate(hits)
            ],
        }

    async def escalate_to_human(
        self, tenant_id: str, user_phone: str, call: EscalateToHuman
    ) -> Dict[str, Any]:
        try:
            await asyncio.to_thread(
                self.db.create_escalation, tenant_id, user_phone, call.reason
            )
        except Exception as e:
            logger.error(f"[{user_phone}] escalate_to_human falló: {e}")
            return {"escalated": False, "error": ESCALATION_FAILED_MESSAGE}

        logger.warning(f"[ESCALATION] {tenant_id} - {user_phone}: {call.reason}")
        return {"escalated": True, "message": ESCALATION_ACK}

    async def execute(self, tenant_id: str, user_phone: str, block: ToolCallBlock) -> ToolResult:
        """Parsea y ejecuta un bloque; cualquier error vuelve como payload."""
        try:
            call = parse_tool_call(block)
        except ValidationError as e:
            logger.warning(f"[{user_phone}] tool-call inválida: {e.message}")
            return ToolResult(tool_call_id=block.id, content={"error": e.message})

        logger.info(f"[{user_phone}] Tool: {block.name}")
        if isinstance(call, KnowledgeSearch):
            content = await self.knowledge_search(tenant_id, call)
        elif isinstance(call, EscalateToHuman):
            content = await self.escalate_to_human(tenant_id, user_phone, call)
        else:
            raise TypeError(f"Unhandled tool call: {call!r}")

        return ToolResult(tool_call_id=block.id, content=content)
