"""
Errores — Taxonomía de errores del núcleo conversacional.

- ProviderError: proveedor de modelo o de embeddings (red, auth, cuota)
- VectorStoreError: Qdrant (conexión, timeout, dimensión)
- ValidationError: input inválido, se rechaza antes de cualquier efecto
- NotFoundError: tenant o entrada inexistente
- RateLimitError: throttle interno, el gateway lo convierte en aviso

Los errores marcados como ``retryable`` se reintentan localmente con
backoff exponencial (ver ``retry_async``) antes de propagarse.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MilaError(Exception):
    """Error base de MILA."""

    retryable = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ProviderError(MilaError):
    """Falla del proveedor de modelo o de embeddings."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class AgentLoopLimitError(ProviderError):
    """El modelo superó el máximo de rondas de tool-use para un mensaje."""

    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            f"Agent loop exceeded {max_iterations} model round-trips",
            retryable=False,
        )
        self.max_iterations = max_iterations


class VectorStoreError(MilaError):
    """Falla del vector store (Qdrant)."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ValidationError(MilaError):
    """Input malformado del llamador."""


class NotFoundError(MilaError):
    """Tenant o entrada de conocimiento inexistente."""


class RateLimitError(MilaError):
    """Un remitente superó su cuota de mensajes en la ventana actual."""

    def __init__(self, sender_id: str, retry_after_ms: int) -> None:
        super().__init__(f"Rate limit exceeded for {sender_id}")
        self.sender_id = sender_id
        self.retry_after_ms = retry_after_ms


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    label: str = "call",
) -> T:
    """
    Ejecuta ``fn`` reintentando los errores ``retryable``.

    Backoff exponencial con jitter: base_delay * 2**intento + U(0, base_delay).
    Los errores no reintentables se propagan en el primer intento.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await fn()
        except MilaError as e:
            if not e.retryable or attempt == attempts - 1:
                raise
            delay = base_delay * (2**attempt) + random.uniform(0, base_delay)
            logger.warning(
                f"{label} falló (intento {attempt + 1}/{attempts}): {e.message}. "
                f"Reintentando en {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    # Inalcanzable: el último intento siempre retorna o propaga
    raise RuntimeError(f"{label}: retry loop exhausted")
