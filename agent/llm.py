"""
LLM - Proveedor de modelo con tool calling (Groq API).

Este módulo:
1. Traduce el transcript (turnos, bloques, tool results) al formato de
   chat completions de Groq
2. Declara las tools como funciones con JSON schema
3. Mapea la respuesta a ModelResponse (finish_reason "tool_calls" → TOOL_USE)
4. Clasifica errores de API en ProviderError reintentable o fatal
"""

import json
import logging
from typing import Any, Dict, List, Protocol, Sequence

import groq
from groq import AsyncGroq

from agent.errors import ProviderError, retry_async
from agent.models import (
    ModelResponse,
    Role,
    StopReason,
    TextBlock,
    ToolCallBlock,
    ToolDef,
    ToolResult,
    Turn,
)

logger = logging.getLogger(__name__)

DEFAULT_LLM_MODEL = "llama-3.3-70b-versatile"


class ModelProvider(Protocol):
    async def complete(
        self,
        system: str,
        messages: Sequence[Turn],
        tools: Sequence[ToolDef],
        max_tokens: int,
    ) -> ModelResponse: ...


def _tool_to_groq(tool: ToolDef) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.input_schema,
        },
    }


def _turn_to_groq(turn: Turn) -> List[Dict[str, Any]]:
    if isinstance(turn.content, str):
        return [{"role": turn.role.value, "content": turn.content}]

    if turn.role == Role.TOOL_RESULT:
        return [
            {
                "role": "tool",
                "tool_call_id": r.tool_call_id,
                "content": json.dumps(r.content, ensure_ascii=False),
            }
            for r in turn.content
            if isinstance(r, ToolResult)
        ]

    text = "\n".join(b.text for b in turn.content if isinstance(b, TextBlock))
    tool_calls = [
        {
            "id": b.id,
            "type": "function",
            "function": {"name": b.name, "arguments": json.dumps(b.input, ensure_ascii=False)},
        }
        for b in turn.content
        if isinstance(b, ToolCallBlock)
    ]
    message: Dict[str, Any] = {"role": "assistant", "content": text or None}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return [message]


def to_groq_messages(system: str, turns: Sequence[Turn]) -> List[Dict[str, Any]]:
    messages = [{"role": "system", "content": system}]
    for turn in turns:
        messages.extend(_turn_to_groq(turn))
    return messages


def _parse_arguments(raw: str) -> Dict[str, Any]:
    try:
        args = json.loads(raw or "{}")
    except json.JSONDecodeError:
        logger.warning(f"Argumentos de tool no son JSON válido: {raw[:100]}")
        return {}
    return args if isinstance(args, dict) else {}


def from_groq_completion(completion) -> ModelResponse:
    choice = completion.choices[0]
    message = choice.message

    content: List = []
    if message.content:
        content.append(TextBlock(text=message.content))
    for call in message.tool_calls or []:
        content.append(
            ToolCallBlock(
                id=call.id,
                name=call.function.name,
                input=_parse_arguments(call.function.arguments),
            )
        )

    if choice.finish_reason == "tool_calls" and any(
        isinstance(b, ToolCallBlock) for b in content
    ):
        stop_reason = StopReason.TOOL_USE
    else:
        stop_reason = StopReason.END
    return ModelResponse(stop_reason=stop_reason, content=content)


def classify_groq_error(e: Exception) -> ProviderError:
    """Red, timeout, 429 y 5xx son reintentables; 400/401/403 y cuota no."""
    if isinstance(e, groq.APIConnectionError):
        # Incluye APITimeoutError
        return ProviderError(f"Groq unreachable: {e}", retryable=True)
    if isinstance(e, groq.APIStatusError):
        status = e.status_code
        if status == 429:
            body = str(e).lower()
            if "quota" in body or "billing" in body:
                return ProviderError(f"Groq quota exhausted: {e}", retryable=False)
            return ProviderError(f"Groq rate limited: {e}", retryable=True)
        return ProviderError(f"Groq API error ({status}): {e}", retryable=status >= 500)
    return ProviderError(f"Groq call failed: {e}", retryable=False)


class GroqChatProvider:
    """ModelProvider sobre Groq chat completions."""

    def __init__(
        self,
        api_key: str = None,
        model: str = None,
        timeout: float = 60.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        client: AsyncGroq = None,
    ):
        if client is None and not api_key:
            raise ValueError(
                "GROQ_API_KEY no encontrada. "
                "Crea un archivo .env con tu API key de https://console.groq.com/keys"
            )
        # Los reintentos los maneja retry_async
        self.client = client or AsyncGroq(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model or DEFAULT_LLM_MODEL
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay

        logger.info(f"Groq provider inicializado (modelo: {self.model})")

    async def complete(
        self,
        system: str,
        messages: Sequence[Turn],
        tools: Sequence[ToolDef],
        max_tokens: int,
    ) -> ModelResponse:
        payload = to_groq_messages(system, messages)
        groq_tools = [_tool_to_groq(t) for t in tools]

        async def _call():
            try:
                return await self.client.chat.completions.create(
                    model=self.model,
                    messages=payload,
                    tools=groq_tools,
                    tool_choice="auto",
                    max_tokens=max_tokens,
                )
            except groq.GroqError as e:
                raise classify_groq_error(e) from e

        completion = await retry_async(
            _call,
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            label="groq.chat",
        )

        response = from_groq_completion(completion)
        usage = getattr(completion, "usage", None)
        logger.debug(
            f"Groq: finish={completion.choices[0].finish_reason} "
            f"tokens={getattr(usage, 'total_tokens', '?')}"
        )
        return response
