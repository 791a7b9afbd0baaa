"""
Gateway — Pipeline por mensaje entrante.

Flujo:
1. Filtrar mensajes que no son para el agente (vacíos, no-texto, status,
   propios, sin prefijo requerido) y entregas duplicadas
2. Comando de control `!ping` → `pong`
3. Rate limiting por remitente (ventana fija)
4. Resolver el tenant activo por el número que recibió el mensaje
5. Cargar historial reciente → correr el agente → guardar turnos → responder
6. Cualquier falla en 4-5 → disculpa fija
"""

import asyncio
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

from agent.conversation import ConversationStore
from agent.db_service import DBService
from agent.errors import ProviderError, RateLimitError
from agent.models import InboundMessage, Role, Turn
from agent.orchestrator import AgentLoop

logger = logging.getLogger(__name__)

THROTTLE_NOTICE = "Please wait a moment before sending another message."
FALLBACK_REPLY = "Sorry, I'm having trouble right now. Our team will help you shortly."
PING_COMMAND = "!ping"
PONG_REPLY = "pong"

STATUS_BROADCAST = "status@broadcast"
DEFAULT_CONTEXT_TURNS = 5


_PHONE_CLEAN_RE = re.compile(r"[^\d]")


def normalize_phone(raw: str) -> str:
    """
    Normaliza un identificador de WhatsApp a solo dígitos.

    Ejemplos:
        '6281234567890@c.us' → '6281234567890'
        '+62 812-3456-7890'  → '6281234567890'
    """
    return _PHONE_CLEAN_RE.sub("", (raw or "").split("@")[0])


class GatewayOutcome(str, Enum):
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    PONG = "pong"
    THROTTLED = "throttled"
    NO_TENANT = "no_tenant"
    REPLIED = "replied"
    FALLBACK = "fallback"


class MessageTransport(Protocol):
    async def send_text(self, to: str, body: str, channel_id: Optional[str] = None) -> bool: ...


# Rate limiting


@dataclass
class _Window:
    count: int
    reset_at_ms: float


class FixedWindowRateLimiter:
    """R mensajes por remitente cada W ms; la ventana se reinicia al vencer."""

    def __init__(
        self,
        max_messages: int = 10,
        window_ms: int = 60_000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_messages = max_messages
        self.window_ms = window_ms
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def hit(self, sender_id: str) -> None:
        """
        Cuenta un mensaje del remitente.

        Raises:
            RateLimitError: el remitente ya usó su cuota en la ventana actual
        """
        now = self._clock()
        with self._lock:
            window = self._windows.get(sender_id)
            if window is None or now > window.reset_at_ms:
                self._windows[sender_id] = _Window(count=1, reset_at_ms=now + self.window_ms)
                return
            if window.count >= self.max_messages:
                raise RateLimitError(sender_id, int(window.reset_at_ms - now))
            window.count += 1

    def cleanup_expired(self) -> int:
        """Descarta ventanas vencidas. Devuelve cuántas se eliminaron."""
        now = self._clock()
        with self._lock:
            expired = [k for k, w in self._windows.items() if now > w.reset_at_ms]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


# Deduplicación de entregas (WhatsApp reintenta webhooks)


class MessageDeduplicator:
    """Recuerda ids de mensajes vistos durante ``ttl`` segundos."""

    def __init__(
        self,
        ttl: float = 300,
        max_size: int = 500,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock or time.monotonic
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def is_duplicate(self, message_id: str) -> bool:
        """True si el id ya se procesó recientemente; si no, lo registra."""
        now = self._clock()
        with self._lock:
            while self._seen:
                oldest_key, oldest_time = next(iter(self._seen.items()))
                if now - oldest_time > self.ttl:
                    self._seen.pop(oldest_key)
                else:
                    break
            if message_id in self._seen:
                return True
            self._seen[message_id] = now
            while len(self._seen) > self.max_size:
                self._seen.popitem(last=False)
            return False


class InboundGateway:
    """Conecta transporte, rate limiter, tenants, historial y agente."""

    def __init__(
        self,
        db: DBService,
        conversations: ConversationStore,
        agent: AgentLoop,
        transport: MessageTransport,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        deduplicator: Optional[MessageDeduplicator] = None,
        required_prefix: Optional[str] = None,
        context_turns: int = DEFAULT_CONTEXT_TURNS,
    ):
        self.db = db
        self.conversations = conversations
        self.agent = agent
        self.transport = transport
        self.rate_limiter = (
            rate_limiter if rate_limiter is not None else FixedWindowRateLimiter()
        )
        self.deduplicator = (
            deduplicator if deduplicator is not None else MessageDeduplicator()
        )
        self.required_prefix = required_prefix or None
        self.context_turns = context_turns

    def _addressed_text(self, msg: InboundMessage) -> Optional[str]:
        """Texto para el agente, o None si el mensaje no le corresponde."""
        if msg.from_me or msg.message_type != "text":
            return None
        if msg.sender_id == STATUS_BROADCAST or msg.recipient_id == STATUS_BROADCAST:
            return None
        body = (msg.body or "").strip()
        if self.required_prefix:
            if not body.startswith(self.required_prefix):
                return None
            body = body[len(self.required_prefix):].strip()
        return body or None

    async def _deliver(self, msg: InboundMessage, text: str) -> bool:
        """Envío best-effort: nunca propaga errores del transporte."""
        try:
            return await self.transport.send_text(msg.sender_id, text, msg.channel_id)
        except Exception as e:
            logger.error(f"[{msg.sender_id}] Error enviando respuesta: {e}")
            return False

    async def handle(self, msg: InboundMessage) -> GatewayOutcome:
        """Procesa un mensaje entrante de punta a punta."""
        text = self._addressed_text(msg)
        if text is None:
            logger.debug(f"Mensaje ignorado de {msg.sender_id} (tipo={msg.message_type})")
            return GatewayOutcome.IGNORED

        if msg.message_id and self.deduplicator.is_duplicate(msg.message_id):
            logger.info(f"Mensaje duplicado ignorado: {msg.message_id}")
            return GatewayOutcome.DUPLICATE

        if text == PING_COMMAND:
            await self._deliver(msg, PONG_REPLY)
            return GatewayOutcome.PONG

        user_phone = normalize_phone(msg.sender_id)
        logger.info(f"[{user_phone}] Mensaje: {text[:60]}")

        try:
            self.rate_limiter.hit(user_phone)
        except RateLimitError as e:
            logger.info(f"[{user_phone}] Rate limit excedido (reintento en {e.retry_after_ms} ms)")
            await self._deliver(msg, THROTTLE_NOTICE)
            return GatewayOutcome.THROTTLED

        try:
            tenant = await asyncio.to_thread(
                self.db.find_active_tenant_by_number, normalize_phone(msg.recipient_id)
            )
            if tenant is None:
                logger.info(f"Sin tenant activo para {msg.recipient_id}")
                return GatewayOutcome.NO_TENANT

            logger.info(f"[{user_phone}] Tenant: {tenant.name} ({tenant.id})")

            history = await self.conversations.get(
                tenant.id, user_phone, limit=self.context_turns
            )
            reply = await self.agent.run(tenant, user_phone, text, history)
            if not reply.strip():
                raise ProviderError("Model returned an empty reply")

            await self.conversations.append(
                tenant.id,
                user_phone,
                [
                    Turn(role=Role.USER, content=text),
                    Turn(role=Role.ASSISTANT, content=reply),
                ],
            )
        except Exception as e:
            logger.error(f"[{user_phone}] Error procesando mensaje: {e}", exc_info=True)
            await self._deliver(msg, FALLBACK_REPLY)
            return GatewayOutcome.FALLBACK

        await self._deliver(msg, reply)
        logger.info(f"[{user_phone}] Respuesta enviada ({len(reply)} chars)")
        return GatewayOutcome.REPLIED
