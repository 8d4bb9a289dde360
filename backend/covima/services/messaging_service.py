# /covima/services/messaging_service.py

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional

import httpx
import tenacity

from covima.config.settings import Settings
from covima.utils.circuit_breaker import CircuitBreaker
from covima.utils.metrics import outbound_messages_counter

# Outbound messaging shared by every provider. Each send waits a synthetic
# typing delay proportional to the message length, and batches pause between
# messages, so replies pace like a person and stay under provider limits.

logger = logging.getLogger(__name__)


class LRUCache:
    """Dict capped at `capacity` entries; the least recently used key is evicted first."""

    def __init__(self, capacity: int = 5000):
        self.capacity = capacity
        self._cache: "OrderedDict[str, Any]" = OrderedDict()

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._cache:
            return default
        self._cache.move_to_end(key)
        return self._cache[key]

    def set(self, key: str, value: Any) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        self._cache[key] = value
        if len(self._cache) > self.capacity:
            self._cache.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)


class MessagingGateway:
    """Provider-independent outbound interface used by the handlers."""

    provider = "base"

    def __init__(
        self,
        typing_min_ms: int = 800,
        typing_max_ms: int = 2500,
        typing_ms_per_char: int = 40,
        batch_pause_ms: int = 500,
        timeout: float = 15.0,
    ):
        self.typing_min_ms = typing_min_ms
        self.typing_max_ms = typing_max_ms
        self.typing_ms_per_char = typing_ms_per_char
        self.batch_pause_ms = batch_pause_ms
        self.http_client = httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker(self.provider)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    def typing_delay_ms(self, content: str) -> int:
        """len(content) * ms_per_char, clamped to [min, max]."""
        raw = len(content or "") * self.typing_ms_per_char
        return max(self.typing_min_ms, min(raw, self.typing_max_ms))

    # --- Provider hooks ---

    def register_conversation(
        self, conversation_id: str, telefono: str, message_id: Optional[str] = None, source: Optional[str] = None
    ) -> None:
        """Called once per inbound message before any reply is sent."""

    async def _deliver(self, conversation_id: str, content: str) -> Optional[str]:
        raise NotImplementedError

    async def toggle_typing(self, conversation_id: str, is_typing: bool) -> None:
        """Shows or hides the typing indicator. Never raises."""

    async def send_template_to_phone(
        self, phone: str, template_name: str, language_code: str, body_params: List[str]
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def send_message_to_phone(self, phone: str, name: str, content: str) -> Dict[str, Any]:
        raise NotImplementedError

    # --- Public interface ---

    async def send_message(self, conversation_id: str, content: str) -> Optional[str]:
        """
        Waits the typing delay, then delivers one text message.

        Returns:
            Provider message id, or None when delivery failed (already logged)
        """
        await asyncio.sleep(self.typing_delay_ms(content) / 1000)
        try:
            message_id = await self._deliver(conversation_id, content)
        except Exception as e:
            outbound_messages_counter.labels(provider=self.provider, status="error").inc()
            logger.error(f"{self.provider}_send_error for conversation {conversation_id}: {e}", exc_info=True)
            return None

        outbound_messages_counter.labels(
            provider=self.provider, status="sent" if message_id else "failed"
        ).inc()
        return message_id

    async def send_messages(self, conversation_id: str, contents: Iterable[str]) -> None:
        """Sends messages in order with a fixed pause after each one."""
        for content in contents:
            await self.send_message(conversation_id, content)
            await asyncio.sleep(self.batch_pause_ms / 1000)

    async def close(self) -> None:
        await self.http_client.aclose()


# Inbound source -> provider that must carry the replies. The local /test
# endpoint uses the phone as conversation id, like the Cloud API.
SOURCE_PROVIDERS = {"whatsapp": "whatsapp", "chatwoot": "chatwoot", "test": "whatsapp"}


class MessagingRouter:
    """
    Sends each reply back through the provider the conversation came in on.

    Proactive sends (templates, reminders) go through the default provider.
    """

    def __init__(self, gateways: Dict[str, MessagingGateway], default: str, conversation_cache_size: int = 5000):
        if default not in gateways:
            raise ValueError(f"Default provider '{default}' has no gateway")
        self.gateways = gateways
        self.default = default
        self._providers = LRUCache(conversation_cache_size)

    @property
    def provider(self) -> str:
        return self.default

    def gateway_for(self, conversation_id: str) -> MessagingGateway:
        return self.gateways[self._providers.get(conversation_id, self.default)]

    def register_conversation(
        self, conversation_id: str, telefono: str, message_id: Optional[str] = None, source: Optional[str] = None
    ) -> None:
        provider = SOURCE_PROVIDERS.get(source or "", self.default)
        if provider not in self.gateways:
            logger.warning(f"No '{provider}' gateway configured for {source} messages; replying via {self.default}")
            provider = self.default
        self._providers.set(conversation_id, provider)
        self.gateways[provider].register_conversation(conversation_id, telefono, message_id, source)

    async def toggle_typing(self, conversation_id: str, is_typing: bool) -> None:
        await self.gateway_for(conversation_id).toggle_typing(conversation_id, is_typing)

    async def send_message(self, conversation_id: str, content: str) -> Optional[str]:
        return await self.gateway_for(conversation_id).send_message(conversation_id, content)

    async def send_messages(self, conversation_id: str, contents: Iterable[str]) -> None:
        await self.gateway_for(conversation_id).send_messages(conversation_id, contents)

    async def send_template_to_phone(
        self, phone: str, template_name: str, language_code: str, body_params: List[str]
    ) -> Dict[str, Any]:
        return await self.gateways[self.default].send_template_to_phone(phone, template_name, language_code, body_params)

    async def send_message_to_phone(self, phone: str, name: str, content: str) -> Dict[str, Any]:
        return await self.gateways[self.default].send_message_to_phone(phone, name, content)

    async def close(self) -> None:
        for gateway in self.gateways.values():
            await gateway.close()


def _pacing(settings_obj: Settings) -> Dict[str, int]:
    return {
        "typing_min_ms": settings_obj.typing_min_ms,
        "typing_max_ms": settings_obj.typing_max_ms,
        "typing_ms_per_char": settings_obj.typing_ms_per_char,
        "batch_pause_ms": settings_obj.batch_pause_ms,
    }


def build_messaging_gateway(settings_obj: Settings, provider: Optional[str] = None) -> MessagingGateway:
    """Instantiates one provider, by default the configured one."""
    provider = provider or settings_obj.messaging_provider
    if provider == "chatwoot":
        from covima.services.chatwoot_service import ChatwootService
        return ChatwootService(
            base_url=settings_obj.chatwoot_base_url or "",
            api_token=settings_obj.chatwoot_api_token or "",
            account_id=settings_obj.chatwoot_account_id or 0,
            inbox_id=settings_obj.chatwoot_inbox_id,
            **_pacing(settings_obj),
        )

    from covima.services.whatsapp_service import WhatsAppService
    return WhatsAppService(
        access_token=settings_obj.whatsapp_token or "",
        phone_number_id=settings_obj.whatsapp_phone_number_id or "",
        api_url=settings_obj.whatsapp_api_url,
        **_pacing(settings_obj),
    )


def build_messaging_router(settings_obj: Settings) -> MessagingRouter:
    """
    The configured provider plus any other provider whose credentials are
    set, so both webhooks can be answered on their own channel.
    """
    configured = {
        "whatsapp": bool(settings_obj.whatsapp_token and settings_obj.whatsapp_phone_number_id),
        "chatwoot": bool(settings_obj.chatwoot_base_url and settings_obj.chatwoot_api_token),
    }
    gateways = {
        provider: build_messaging_gateway(settings_obj, provider)
        for provider, ready in configured.items()
        if ready or provider == settings_obj.messaging_provider
    }
    return MessagingRouter(gateways, default=settings_obj.messaging_provider)
