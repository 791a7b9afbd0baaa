"""
Modelos de dominio del núcleo conversacional.

- Entidades persistidas (pydantic): Tenant, KnowledgeEntry, Escalation
- Settings/metadata tipados en lugar de blobs JSON opacos
- Tipos del protocolo con el proveedor de modelo (dataclasses): bloques,
  turnos y respuestas
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class KnowledgeCategory(str, Enum):
    """Categorías cerradas de la base de conocimiento."""

    SCHEDULES = "schedules"
    CLASSES = "classes"
    PRICING = "pricing"
    POLICIES = "policies"
    REGISTRATIONS = "purchases & registrations"
    FACILITIES = "location & facilities"
    INSTRUCTORS = "instructors"
    GENERAL = "general"


class EntryStatus(str, Enum):
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class TenantSettings(BaseModel):
    """Settings de un tenant. Solo campos enumerados."""

    model_config = ConfigDict(extra="forbid")

    greeting_message: Optional[str] = None
    basic_guidelines: Optional[str] = None
    timezone: Optional[str] = None


class Tenant(BaseModel):
    id: str
    name: str
    whatsapp_number: Optional[str] = None
    settings: TenantSettings = Field(default_factory=TenantSettings)
    active: bool = True


class EntryMetadata(BaseModel):
    """Metadata de una entrada (origen y posición del chunk)."""

    model_config = ConfigDict(extra="forbid")

    source: Optional[str] = None
    section: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    chunk_size: Optional[int] = None


class KnowledgeEntry(BaseModel):
    id: str
    tenant_id: str
    title: str
    category: KnowledgeCategory
    content: str
    keywords: List[str] = Field(default_factory=list)
    metadata: EntryMetadata = Field(default_factory=EntryMetadata)
    vector_id: Optional[str] = None
    status: EntryStatus = EntryStatus.ACTIVE

    @property
    def is_indexed(self) -> bool:
        return self.vector_id is not None


class Escalation(BaseModel):
    id: str
    tenant_id: str
    user_phone: str
    reason: str
    created_at: str


# Protocolo con el proveedor de modelo


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


class StopReason(str, Enum):
    TOOL_USE = "tool_use"
    END = "end"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolCallBlock:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


Block = Union[TextBlock, ToolCallBlock]


@dataclass(frozen=True)
class ToolResult:
    """Resultado de una ejecución de tool, asociado al id de la llamada."""

    tool_call_id: str
    content: Dict[str, Any]


@dataclass
class Turn:
    """
    Un turno del transcript.

    ``content`` es texto plano para turnos user/assistant normales, una lista
    de bloques para el turno assistant que pide tools, y una lista de
    ToolResult para el turno ``tool_result``.
    """

    role: Role
    content: Union[str, List[Block], List[ToolResult]]


@dataclass(frozen=True)
class ToolDef:
    name: str
    description: str
    input_schema: Dict[str, Any]


@dataclass
class ModelResponse:
    stop_reason: StopReason
    content: List[Block] = field(default_factory=list)

    @property
    def tool_calls(self) -> List[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass(frozen=True)
class InboundMessage:
    """Evento entrante del transporte de mensajería."""

    sender_id: str
    recipient_id: str
    body: str
    message_id: str = ""
    message_type: str = "text"
    from_me: bool = False
    # Metadata del canal que recibió el mensaje (para responder desde el mismo número)
    channel_id: Optional[str] = None
