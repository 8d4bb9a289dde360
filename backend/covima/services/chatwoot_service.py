# /covima/services/chatwoot_service.py

import logging
from typing import Any, Dict, List, Optional

from covima.services.messaging_service import MessagingGateway

logger = logging.getLogger(__name__)


class ChatwootService(MessagingGateway):
    """Chatwoot agent-bot provider: replies go into the Chatwoot conversation."""

    provider = "chatwoot"

    def __init__(self, base_url: str, api_token: str, account_id: int, inbox_id: Optional[int] = None, **pacing):
        super().__init__(**pacing)
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.account_id = account_id
        self.inbox_id = inbox_id

    @property
    def account_url(self) -> str:
        return f"{self.base_url}/api/v1/accounts/{self.account_id}"

    def _headers(self) -> Dict[str, str]:
        return {"api_access_token": self.api_token, "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Any]:
        """JSON body of a 2xx response, None otherwise."""
        response = await self.resilient_api_call(
            self.http_client.request, method, f"{self.account_url}{path}", headers=self._headers(), **kwargs
        )
        if 200 <= response.status_code < 300:
            return response.json() if response.content else {}
        logger.error(f"chatwoot_request_failed {method} {path}: {response.status_code} - {response.text[:200]}")
        return None

    async def _deliver(self, conversation_id: str, content: str) -> Optional[str]:
        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={"content": content, "message_type": "outgoing", "private": False},
        )
        if data is None:
            return None
        return str(data.get("id", "")) or None

    async def toggle_typing(self, conversation_id: str, is_typing: bool) -> None:
        try:
            await self._request(
                "POST",
                f"/conversations/{conversation_id}/toggle_typing_status",
                json={"typing_status": "on" if is_typing else "off"},
            )
        except Exception as e:
            logger.warning(f"Error toggling typing status for {conversation_id}: {e}")

    # --- Contact / conversation resolution ---

    async def find_contact_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        digits = "".join(ch for ch in phone if ch.isdigit())
        try:
            data = await self._request("GET", "/contacts/search", params={"q": digits})
        except Exception as e:
            logger.warning(f"Contact search failed for {digits[-4:]}: {e}")
            return None
        for contact in (data or {}).get("payload", []):
            stored = "".join(ch for ch in (contact.get("phone_number") or "") if ch.isdigit())
            if stored and stored.endswith(digits[-9:]):
                return contact
        return None

    async def create_contact(self, phone: str, name: str) -> Optional[Dict[str, Any]]:
        digits = "".join(ch for ch in phone if ch.isdigit())
        body = {"name": name, "phone_number": f"+{digits}"}
        if self.inbox_id:
            body["inbox_id"] = self.inbox_id
        try:
            data = await self._request("POST", "/contacts", json=body)
        except Exception as e:
            logger.warning(f"Contact creation failed for {digits[-4:]}: {e}")
            return None
        if not data:
            return None
        return (data.get("payload") or {}).get("contact") or data.get("payload") or data

    async def get_or_create_conversation(self, contact: Dict[str, Any]) -> Optional[str]:
        """Open conversation of `contact` in the configured inbox, created if missing."""
        contact_id = contact.get("id")
        if not contact_id:
            return None
        try:
            data = await self._request("GET", f"/contacts/{contact_id}/conversations")
            for conversation in (data or {}).get("payload", []):
                if conversation.get("status") == "open" and (
                    not self.inbox_id or conversation.get("inbox_id") == self.inbox_id
                ):
                    return str(conversation["id"])

            source_id = None
            for contact_inbox in contact.get("contact_inboxes", []):
                inbox = contact_inbox.get("inbox") or {}
                if not self.inbox_id or inbox.get("id") == self.inbox_id:
                    source_id = contact_inbox.get("source_id")
                    break
            body = {"contact_id": contact_id, "inbox_id": self.inbox_id}
            if source_id:
                body["source_id"] = source_id
            created = await self._request("POST", "/conversations", json=body)
        except Exception as e:
            logger.warning(f"Conversation lookup failed for contact {contact_id}: {e}")
            return None
        return str(created["id"]) if created and created.get("id") else None

    async def _conversation_for_phone(self, phone: str, name: str) -> Optional[str]:
        contact = await self.find_contact_by_phone(phone) or await self.create_contact(phone, name)
        if not contact:
            return None
        return await self.get_or_create_conversation(contact)

    async def send_message_to_phone(self, phone: str, name: str, content: str) -> Dict[str, Any]:
        """Proactive message: contact -> conversation -> message. Never raises."""
        conversation_id = await self._conversation_for_phone(phone, name)
        if not conversation_id:
            return {"success": False, "error": "Could not resolve a Chatwoot conversation"}
        try:
            message_id = await self._deliver(conversation_id, content)
        except Exception as e:
            logger.error(f"Error sending message to {phone[-4:]}: {e}")
            return {"success": False, "error": str(e)}
        if not message_id:
            return {"success": False, "error": "Chatwoot rejected the message"}
        return {"success": True, "message_id": message_id}

    async def send_template_to_phone(
        self, phone: str, template_name: str, language_code: str, body_params: List[str]
    ) -> Dict[str, Any]:
        """WhatsApp template through a Chatwoot WhatsApp inbox. Never raises."""
        conversation_id = await self._conversation_for_phone(phone, body_params[0] if body_params else phone)
        if not conversation_id:
            return {"success": False, "error": "Could not resolve a Chatwoot conversation"}
        body = {
            "content": template_name,
            "message_type": "outgoing",
            "template_params": {
                "name": template_name,
                "language": language_code,
                "processed_params": {str(i + 1): str(p) for i, p in enumerate(body_params)},
            },
        }
        try:
            data = await self._request("POST", f"/conversations/{conversation_id}/messages", json=body)
        except Exception as e:
            logger.error(f"Error sending template '{template_name}' to {phone[-4:]}: {e}")
            return {"success": False, "error": str(e)}
        if not data:
            return {"success": False, "error": f"Template '{template_name}' was rejected"}
        return {"success": True, "message_id": str(data.get("id", ""))}
