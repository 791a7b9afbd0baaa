"""
Orchestrator — Loop de tool-use contra el proveedor de modelo.

Flujo por mensaje:
1. Componer el system prompt (tenant, guidelines, fecha/hora local, saludo)
2. Armar el transcript: historial previo + mensaje nuevo
3. Pedir respuesta al modelo con las dos tools disponibles
4. Si el modelo pide tools → ejecutarlas en orden, agregar resultados, volver a 3
5. Si termina → unir los bloques de texto como respuesta final

El número de rondas contra el modelo está acotado (AgentLoopLimitError).
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent.errors import AgentLoopLimitError
from agent.llm import ModelProvider
from agent.models import Role, StopReason, Tenant, Turn
from agent.tools import TOOL_DEFINITIONS, ToolExecutor

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Jakarta"
DEFAULT_GREETING = "Hello! How can I help you today?"
DEFAULT_MAX_TOKENS = 1024
DEFAULT_MAX_ITERATIONS = 8

ROOT_GUIDELINES = """\
- Respond in the SAME language as the user (Indonesian or English).
- Be warm, welcoming and concise. This is WhatsApp: keep responses short, 2-4 sentences when possible.
- Use natural, conversational Bahasa Indonesia when responding in Indonesian. Do not overuse emojis.
- For medical concerns (pain, injuries, pregnancy), booking requests, payment issues or complex matters, escalate to human staff.
- When guidelines conflict, tenant-specific guidelines take precedence over root guidelines."""


def _tenant_zone(tenant: Tenant, default_timezone: str) -> ZoneInfo:
    name = tenant.settings.timezone or default_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Timezone inválida '{name}' para tenant {tenant.id}, usando {default_timezone}")
        return ZoneInfo(default_timezone)


def build_system_prompt(
    tenant: Tenant,
    now: datetime,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> str:
    """System prompt del agente para un tenant en un instante dado."""
    settings = tenant.settings
    local_now = now.astimezone(_tenant_zone(tenant, default_timezone))
    greeting = settings.greeting_message or DEFAULT_GREETING

    return f"""You are a helpful customer service assistant for {tenant.name}, a yoga studio.

You have access to tools to help answer questions:
- knowledge_search: Search the studio's information database for classes, pricing, policies, facilities, etc.
- escalate_to_human: Escalate complex queries to staff members

CRITICAL RULES:
1. For ANY question about the studio (classes, pricing, schedules, policies, facilities, etc.), you MUST use the knowledge_search tool FIRST before responding.
2. DO NOT make up information or answer from general knowledge. Base your response on knowledge_search results.
3. Only respond without tools for simple greetings like "hi", "hello", "terima kasih", "thanks".

Root Guidelines:
{ROOT_GUIDELINES}

Additional Tenant Guidelines:
- {settings.basic_guidelines or 'None'}

Current date and time: {local_now.strftime('%A, %d %B %Y %H:%M')} ({local_now.tzinfo}). Use it as the baseline for schedule questions.

Greeting message: {greeting}"""


class AgentLoop:
    """Máquina de estados de tool-use para un mensaje entrante."""

    def __init__(
        self,
        provider: ModelProvider,
        tools: ToolExecutor,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.provider = provider
        self.tools = tools
        self.max_tokens = max_tokens
        self.max_iterations = max_iterations
        self.default_timezone = default_timezone
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(
        self,
        tenant: Tenant,
        user_phone: str,
        message: str,
        history: Sequence[Turn] = (),
    ) -> str:
        """
        Procesa un mensaje y devuelve el texto final del modelo.

        Raises:
            ProviderError: falla del proveedor de modelo (incluye AgentLoopLimitError)
        """
        system = build_system_prompt(tenant, self._clock(), self.default_timezone)
        transcript: List[Turn] = [t for t in history if t.content]
        transcript.append(Turn(role=Role.USER, content=message))

        logger.info(f"[{user_phone}] Agente: {message[:100]}")

        for iteration in range(1, self.max_iterations + 1):
            response = await self.provider.complete(
                system=system,
                messages=transcript,
                tools=TOOL_DEFINITIONS,
                max_tokens=self.max_tokens,
            )
            logger.debug(f"[{user_phone}] Ronda {iteration}: {response.stop_reason.value}")

            if response.stop_reason == StopReason.END:
                reply = response.text
                logger.info(f"[{user_phone}] Respuesta final: {len(reply)} chars")
                return reply

            if iteration == self.max_iterations:
                break

            calls = response.tool_calls
            logger.info(f"[{user_phone}] Procesando {len(calls)} tool call(s)")

            # Secuencial: el orden de las escalaciones sigue al de las llamadas
            results = []
            for call in calls:
                results.append(await self.tools.execute(tenant.id, user_phone, call))

            transcript.append(Turn(role=Role.ASSISTANT, content=list(response.content)))
            transcript.append(Turn(role=Role.TOOL_RESULT, content=results))

        logger.error(f"[{user_phone}] Loop de tools excedió {self.max_iterations} rondas")
        raise AgentLoopLimitError(self.max_iterations)
