# backend/tests/unit/test_messaging.py
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, call

from covima.services.chatwoot_service import ChatwootService
from covima.services.messaging_service import (
    LRUCache,
    MessagingGateway,
    MessagingRouter,
    build_messaging_gateway,
    build_messaging_router,
)
from covima.services.whatsapp_service import WhatsAppService

PHONE = "51987654321"


@pytest.fixture
def sleep(mocker):
    return mocker.patch("covima.services.messaging_service.asyncio.sleep", new_callable=AsyncMock)


@pytest.fixture
def whatsapp():
    return WhatsAppService(access_token="token", phone_number_id="123456789", api_url="https://graph.test/v18.0/")


@pytest.fixture
def chatwoot():
    return ChatwootService(base_url="https://chat.test/", api_token="secret", account_id=7, inbox_id=3)


# --- Pacing ---

@pytest.mark.parametrize("content, expected", [("", 800), ("a" * 30, 1200), ("a" * 1000, 2500)])
def test_typing_delay_is_clamped(content, expected):
    gateway = MessagingGateway(typing_min_ms=800, typing_max_ms=2500, typing_ms_per_char=40)
    assert gateway.typing_delay_ms(content) == expected


@pytest.mark.asyncio
async def test_send_message_waits_then_delivers(sleep, mocker):
    gateway = MessagingGateway(typing_min_ms=100, typing_max_ms=2000, typing_ms_per_char=10)
    mocker.patch.object(gateway, "_deliver", AsyncMock(return_value="id-1"))

    assert await gateway.send_message("c1", "a" * 50) == "id-1"

    sleep.assert_awaited_once_with(0.5)
    gateway._deliver.assert_awaited_once_with("c1", "a" * 50)


@pytest.mark.asyncio
async def test_send_message_swallows_provider_errors(sleep, mocker):
    gateway = MessagingGateway()
    mocker.patch.object(gateway, "_deliver", AsyncMock(side_effect=httpx.ConnectError("down")))

    assert await gateway.send_message("c1", "hola") is None


@pytest.mark.asyncio
async def test_send_messages_keeps_order_and_pauses(sleep, mocker):
    gateway = MessagingGateway(typing_min_ms=100, typing_max_ms=100, batch_pause_ms=500)
    mocker.patch.object(gateway, "_deliver", AsyncMock(return_value="id"))

    await gateway.send_messages("c1", ["uno", "dos"])

    assert gateway._deliver.await_args_list == [call("c1", "uno"), call("c1", "dos")]
    assert sleep.await_args_list == [call(0.1), call(0.5), call(0.1), call(0.5)]


def test_gateway_factory_follows_provider():
    pacing = dict(typing_min_ms=0, typing_max_ms=0, typing_ms_per_char=0, batch_pause_ms=0)
    chatwoot_settings = MagicMock(
        messaging_provider="chatwoot",
        chatwoot_base_url="https://chat.test",
        chatwoot_api_token="t",
        chatwoot_account_id=1,
        chatwoot_inbox_id=None,
        **pacing,
    )
    assert isinstance(build_messaging_gateway(chatwoot_settings), ChatwootService)

    whatsapp_settings = MagicMock(
        messaging_provider="whatsapp",
        whatsapp_token="t",
        whatsapp_phone_number_id="1",
        whatsapp_api_url="https://graph.test",
        **pacing,
    )
    assert isinstance(build_messaging_gateway(whatsapp_settings), WhatsAppService)


# --- WhatsApp Cloud API ---

@pytest.mark.asyncio
async def test_whatsapp_delivers_to_registered_phone(whatsapp, mocker):
    api = mocker.patch.object(
        whatsapp, "resilient_api_call",
        AsyncMock(return_value=httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})),
    )
    whatsapp.register_conversation(PHONE, "+51 987 654 321", "wamid.in")

    assert await whatsapp._deliver(PHONE, "hola") == "wamid.1"

    _, url = api.await_args.args
    payload = api.await_args.kwargs["json"]
    assert url == "https://graph.test/v18.0/123456789/messages"
    assert payload["to"] == PHONE
    assert payload["text"]["body"] == "hola"


@pytest.mark.asyncio
async def test_whatsapp_unknown_conversation_is_not_sent(whatsapp, mocker):
    api = mocker.patch.object(whatsapp, "resilient_api_call", AsyncMock())
    assert await whatsapp._deliver("nobody", "hola") is None
    api.assert_not_awaited()


@pytest.mark.asyncio
async def test_whatsapp_typing_marks_last_message_read(whatsapp, mocker):
    api = mocker.patch.object(whatsapp, "resilient_api_call", AsyncMock(return_value=httpx.Response(200, json={})))

    await whatsapp.toggle_typing(PHONE, True)
    api.assert_not_awaited()

    whatsapp.register_conversation(PHONE, PHONE, "wamid.in")
    await whatsapp.toggle_typing(PHONE, True)
    await whatsapp.toggle_typing(PHONE, False)

    api.assert_awaited_once()
    assert api.await_args.kwargs["json"]["message_id"] == "wamid.in"
    assert api.await_args.kwargs["json"]["typing_indicator"] == {"type": "text"}


@pytest.mark.asyncio
async def test_whatsapp_template_outcomes(whatsapp, mocker):
    api = mocker.patch.object(
        whatsapp, "resilient_api_call",
        AsyncMock(return_value=httpx.Response(200, json={"messages": [{"id": "wamid.t"}]})),
    )
    ok = await whatsapp.send_template_to_phone(PHONE, "recordatorio_programa", "es", ["Ana", "sábado 24", "Bienvenida"])
    assert ok == {"success": True, "message_id": "wamid.t"}
    template = api.await_args.kwargs["json"]["template"]
    assert [p["text"] for p in template["components"][0]["parameters"]] == ["Ana", "sábado 24", "Bienvenida"]

    api.return_value = httpx.Response(400, json={"error": {"message": "bad template"}})
    rejected = await whatsapp.send_template_to_phone(PHONE, "recordatorio_programa", "es", ["Ana"])
    assert rejected == {"success": False, "error": "WhatsApp API error 400: bad template"}

    api.side_effect = httpx.ConnectError("down")
    failed = await whatsapp.send_template_to_phone(PHONE, "recordatorio_programa", "es", ["Ana"])
    assert failed["success"] is False


# --- Chatwoot ---

@pytest.mark.asyncio
async def test_chatwoot_delivers_into_conversation(chatwoot, mocker):
    api = mocker.patch.object(chatwoot, "resilient_api_call", AsyncMock(return_value=httpx.Response(200, json={"id": 42})))

    assert await chatwoot._deliver("99", "hola") == "42"

    _, method, url = api.await_args.args
    assert method == "POST"
    assert url == "https://chat.test/api/v1/accounts/7/conversations/99/messages"
    assert api.await_args.kwargs["json"] == {"content": "hola", "message_type": "outgoing", "private": False}
    assert api.await_args.kwargs["headers"]["api_access_token"] == "secret"


@pytest.mark.asyncio
async def test_chatwoot_rejected_message_returns_none(chatwoot, mocker):
    mocker.patch.object(chatwoot, "resilient_api_call", AsyncMock(return_value=httpx.Response(422, text="nope")))
    assert await chatwoot._deliver("99", "hola") is None


@pytest.mark.asyncio
async def test_chatwoot_proactive_send_reuses_open_conversation(chatwoot, mocker):
    responses = [
        httpx.Response(200, json={"payload": [{"id": 5, "phone_number": "+51987654321"}]}),
        httpx.Response(200, json={"payload": [{"id": 77, "status": "open", "inbox_id": 3}]}),
        httpx.Response(200, json={"id": 900}),
    ]
    api = mocker.patch.object(chatwoot, "resilient_api_call", AsyncMock(side_effect=responses))

    result = await chatwoot.send_message_to_phone(PHONE, "Ana", "Recordatorio")

    assert result == {"success": True, "message_id": "900"}
    assert api.await_args.args[2].endswith("/conversations/77/messages")


@pytest.mark.asyncio
async def test_chatwoot_proactive_send_without_contact_fails_softly(chatwoot, mocker):
    mocker.patch.object(
        chatwoot, "resilient_api_call",
        AsyncMock(side_effect=[httpx.Response(200, json={"payload": []}), httpx.Response(500, text="error")]),
    )

    result = await chatwoot.send_message_to_phone(PHONE, "Ana", "Recordatorio")

    assert result == {"success": False, "error": "Could not resolve a Chatwoot conversation"}


@pytest.mark.asyncio
async def test_whatsapp_proactive_text_reports_api_errors(whatsapp, mocker):
    mocker.patch.object(
        whatsapp, "resilient_api_call",
        AsyncMock(return_value=httpx.Response(401, json={"error": {"message": "expired token"}})),
    )

    result = await whatsapp.send_message_to_phone("+51 987 654 321", "Ana", "hola")

    assert result == {"success": False, "error": "WhatsApp API error 401: expired token"}


# --- Conversation registries ---

def test_lru_cache_evicts_least_recently_used():
    cache = LRUCache(capacity=2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)

    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert len(cache) == 2


def test_whatsapp_registries_are_bounded():
    whatsapp = WhatsAppService(access_token="token", phone_number_id="1", conversation_cache_size=2)
    for phone in ("51911111111", "51922222222", "51933333333"):
        whatsapp.register_conversation(phone, phone, f"wamid.{phone}")

    assert whatsapp.phone_for("51911111111") is None
    assert whatsapp.phone_for("51933333333") == "51933333333"
    assert len(whatsapp._last_message_ids) == 2


# --- Replies follow the inbound channel ---

def fake_provider(name):
    gateway = MagicMock(provider=name)
    gateway.send_message = AsyncMock(return_value=f"{name}-id")
    gateway.send_messages = AsyncMock()
    gateway.toggle_typing = AsyncMock()
    gateway.send_template_to_phone = AsyncMock(return_value={"success": True})
    gateway.close = AsyncMock()
    return gateway


@pytest.mark.asyncio
async def test_whatsapp_messages_are_answered_on_whatsapp_when_chatwoot_is_default():
    whatsapp, chatwoot = fake_provider("whatsapp"), fake_provider("chatwoot")
    router = MessagingRouter({"whatsapp": whatsapp, "chatwoot": chatwoot}, default="chatwoot")

    router.register_conversation(PHONE, PHONE, "wamid.in", "whatsapp")
    await router.toggle_typing(PHONE, True)
    assert await router.send_message(PHONE, "hola") == "whatsapp-id"

    whatsapp.register_conversation.assert_called_once_with(PHONE, PHONE, "wamid.in", "whatsapp")
    whatsapp.toggle_typing.assert_awaited_once_with(PHONE, True)
    chatwoot.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_chatwoot_messages_are_answered_in_chatwoot_when_whatsapp_is_default():
    whatsapp, chatwoot = fake_provider("whatsapp"), fake_provider("chatwoot")
    router = MessagingRouter({"whatsapp": whatsapp, "chatwoot": chatwoot}, default="whatsapp")

    router.register_conversation("99", PHONE, "1", "chatwoot")
    await router.send_messages("99", ["uno", "dos"])
    await router.send_message("99", "tres")

    chatwoot.send_messages.assert_awaited_once_with("99", ["uno", "dos"])
    chatwoot.send_message.assert_awaited_once_with("99", "tres")
    whatsapp.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_proactive_sends_use_the_default_provider():
    whatsapp, chatwoot = fake_provider("whatsapp"), fake_provider("chatwoot")
    router = MessagingRouter({"whatsapp": whatsapp, "chatwoot": chatwoot}, default="whatsapp")
    router.register_conversation("99", PHONE, None, "chatwoot")

    await router.send_template_to_phone(PHONE, "recordatorio_programa", "es", ["Ana"])

    whatsapp.send_template_to_phone.assert_awaited_once()
    chatwoot.send_template_to_phone.assert_not_awaited()


@pytest.mark.asyncio
async def test_unconfigured_channel_falls_back_to_default():
    whatsapp = fake_provider("whatsapp")
    router = MessagingRouter({"whatsapp": whatsapp}, default="whatsapp")

    router.register_conversation("99", PHONE, None, "chatwoot")
    await router.send_message("99", "hola")

    whatsapp.send_message.assert_awaited_once_with("99", "hola")


def test_router_requires_a_default_gateway():
    with pytest.raises(ValueError):
        MessagingRouter({"whatsapp": fake_provider("whatsapp")}, default="chatwoot")


def test_router_builds_every_configured_provider():
    pacing = dict(typing_min_ms=0, typing_max_ms=0, typing_ms_per_char=0, batch_pause_ms=0)
    both = MagicMock(
        messaging_provider="whatsapp",
        whatsapp_token="t",
        whatsapp_phone_number_id="1",
        whatsapp_api_url="https://graph.test",
        chatwoot_base_url="https://chat.test",
        chatwoot_api_token="t",
        chatwoot_account_id=1,
        chatwoot_inbox_id=None,
        **pacing,
    )
    router = build_messaging_router(both)
    assert isinstance(router.gateways["whatsapp"], WhatsAppService)
    assert isinstance(router.gateways["chatwoot"], ChatwootService)
    assert router.provider == "whatsapp"

    only_chatwoot = MagicMock(
        messaging_provider="chatwoot",
        whatsapp_token=None,
        whatsapp_phone_number_id=None,
        chatwoot_base_url="https://chat.test",
        chatwoot_api_token="t",
        chatwoot_account_id=1,
        chatwoot_inbox_id=None,
        **pacing,
    )
    assert set(build_messaging_router(only_chatwoot).gateways) == {"chatwoot"}


@pytest.mark.asyncio
async def test_router_close_closes_every_gateway():
    whatsapp, chatwoot = fake_provider("whatsapp"), fake_provider("chatwoot")
    await MessagingRouter({"whatsapp": whatsapp, "chatwoot": chatwoot}, default="whatsapp").close()
    whatsapp.close.assert_awaited_once()
    chatwoot.close.assert_awaited_once()
