"""
WhatsApp Cloud API (Meta) — Transporte de mensajería.

- parse_webhook_payload: convierte el JSON del webhook en InboundMessage
- WhatsAppCloudTransport: envía respuestas de texto con httpx (best effort)
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from agent.models import InboundMessage

logger = logging.getLogger(__name__)

GRAPH_API_URL = "https://graph.facebook.com/v22.0"


def parse_webhook_payload(body: Dict[str, Any]) -> List[InboundMessage]:
    """
    Extrae los mensajes de un evento de webhook.

    Eventos que no son de whatsapp_business_account y cambios sin
    ``messages`` (status updates de entrega/lectura) no producen mensajes.
    """
    if body.get("object") != "whatsapp_business_account":
        return []

    messages = []
    for entry in body.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            metadata = value.get("metadata", {})
            recipient = metadata.get("display_phone_number", "")
            channel_id = metadata.get("phone_number_id")

            for message in value.get("messages", []):
                message_type = message.get("type", "")
                text = message.get("text", {}).get("body", "") if message_type == "text" else ""
                messages.append(
                    InboundMessage(
                        sender_id=message.get("from", ""),
                        recipient_id=recipient,
                        body=text,
                        message_id=message.get("id", ""),
                        message_type=message_type,
                        channel_id=channel_id,
                    )
                )
    return messages


class WhatsAppCloudTransport:
    """Envío de mensajes de texto por la Cloud API de Meta."""

    def __init__(
        self,
        token: Optional[str],
        phone_number_id: Optional[str],
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.phone_number_id = phone_number_id
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send_text(self, to: str, body: str, channel_id: Optional[str] = None) -> bool:
        """Envía ``body`` a ``to``. Devuelve False si no se pudo entregar."""
        phone_number_id = channel_id or self.phone_number_id
        if not phone_number_id or not self.token:
            logger.error("WHATSAPP_PHONE_NUMBER_ID o WHATSAPP_TOKEN no configurados en .env")
            return False

        url = f"{GRAPH_API_URL}/{phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }

        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Excepción enviando mensaje WhatsApp a {to}: {e}")
            return False

        if response.status_code == 200:
            logger.info(f"Mensaje enviado a {to}")
            return True
        logger.error(f"Error enviando mensaje a {to}: {response.status_code} - {response.text}")
        return False

    async def aclose(self) -> None:
        await self._client.aclose()
