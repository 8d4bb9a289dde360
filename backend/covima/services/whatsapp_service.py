# /covima/services/whatsapp_service.py

import logging
import re
from typing import Any, Dict, List, Optional

from covima.services.messaging_service import LRUCache, MessagingGateway
from covima.utils.exceptions import MessagingError

logger = logging.getLogger(__name__)


def normalize_phone(phone: str) -> str:
    """Digits only, as the Cloud API expects in 'to'."""
    return re.sub(r"\D", "", phone or "")


class WhatsAppService(MessagingGateway):
    """
    WhatsApp Cloud API provider. The bot uses the sender's phone as the
    conversation id and remembers the last inbound message id per
    conversation for read receipts and the typing indicator.
    """

    provider = "whatsapp"

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_url: str = "https://graph.facebook.com/v18.0",
        conversation_cache_size: int = 5000,
        **pacing,
    ):
        super().__init__(**pacing)
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.base_url = api_url.rstrip("/")
        self._phones = LRUCache(conversation_cache_size)
        self._last_message_ids = LRUCache(conversation_cache_size)
        if not access_token or not phone_number_id:
            logger.warning("WhatsApp credentials not configured; outbound messages will fail.")

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.phone_number_id}/messages"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    def register_conversation(
        self, conversation_id: str, telefono: str, message_id: Optional[str] = None, source: Optional[str] = None
    ) -> None:
        self._phones.set(conversation_id, normalize_phone(telefono))
        if message_id:
            self._last_message_ids.set(conversation_id, message_id)

    def phone_for(self, conversation_id: str) -> Optional[str]:
        return self._phones.get(conversation_id)

    async def send_whatsapp_request(self, payload: dict) -> Optional[str]:
        """
        Posts to the messages endpoint and returns the wamid.

        Raises:
            MessagingError: the API answered with an error status
        """
        response = await self.resilient_api_call(
            self.http_client.post, self.messages_url, json=payload, headers=self._headers()
        )
        if response.status_code == 200:
            data = response.json()
            return (data.get("messages") or [{}])[0].get("id")

        try:
            error_message = (response.json().get("error") or {}).get("message", "Unknown error")
        except ValueError:
            error_message = response.text[:200]
        logger.error(f"whatsapp_request_failed to {payload.get('to')}: {response.status_code} - {error_message}")
        raise MessagingError(f"WhatsApp API error {response.status_code}: {error_message}")

    async def _deliver(self, conversation_id: str, content: str) -> Optional[str]:
        phone = self.phone_for(conversation_id)
        if not phone:
            logger.error(f"No phone registered for conversation {conversation_id}")
            return None
        return await self._send_text(phone, content)

    async def _send_text(self, phone: str, content: str) -> Optional[str]:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(phone),
            "type": "text",
            "text": {"preview_url": False, "body": content[:4096]},
        }
        return await self.send_whatsapp_request(payload)

    async def toggle_typing(self, conversation_id: str, is_typing: bool) -> None:
        """Marks the last inbound message as read and shows 'typing...'. Turning it off is implicit."""
        if not is_typing:
            return
        message_id = self._last_message_ids.get(conversation_id)
        if not message_id:
            return
        payload = {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": message_id,
            "typing_indicator": {"type": "text"},
        }
        try:
            await self.resilient_api_call(self.http_client.post, self.messages_url, json=payload, headers=self._headers())
        except Exception as e:
            logger.warning(f"Error sending typing indicator: {e}")

    async def send_message_to_phone(self, phone: str, name: str, content: str) -> Dict[str, Any]:
        try:
            message_id = await self._send_text(phone, content)
        except Exception as e:
            logger.error(f"Error sending message to {phone}: {e}")
            return {"success": False, "error": str(e)}
        if not message_id:
            return {"success": False, "error": "WhatsApp API rejected the message"}
        return {"success": True, "message_id": message_id}

    async def send_template_to_phone(
        self, phone: str, template_name: str, language_code: str, body_params: List[str]
    ) -> Dict[str, Any]:
        """Sends an approved template; never raises."""
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(phone),
            "type": "template",
            "template": {
                "name": template_name,
                "language": {"code": language_code},
                "components": [
                    {"type": "body", "parameters": [{"type": "text", "text": str(p)} for p in body_params]}
                ],
            },
        }
        try:
            message_id = await self.send_whatsapp_request(payload)
        except Exception as e:
            logger.error(f"Error sending template '{template_name}' to {phone}: {e}")
            return {"success": False, "error": str(e)}
        if not message_id:
            return {"success": False, "error": f"Template '{template_name}' was rejected"}
        logger.info(f"Template '{template_name}' sent to {payload['to']}: {message_id}")
        return {"success": True, "message_id": message_id}
