# /covima/routes/webhooks.py

import json
import asyncio
import structlog
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from covima.config.settings import settings
from covima.models.api import InboundMessage, TestMessageRequest
from covima.services.intent_router import intent_router
from covima.utils.dependencies import verify_webhook_signature
from covima.utils.metrics import response_time_histogram
from covima.utils.rate_limiter import limiter

# Inbound endpoints for the messaging providers. Each one normalizes the
# provider payload into InboundMessage, acknowledges at once and leaves the
# classify -> dispatch pipeline to a detached task.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

# Detached tasks are referenced until they finish so they are not collected mid-flight.
_background_tasks = set()


def _schedule(message: InboundMessage) -> None:
    task = asyncio.create_task(intent_router.process_message(message))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def extract_whatsapp_messages(data: Dict[str, Any]) -> List[InboundMessage]:
    """Text and interactive replies from a Cloud API payload; statuses and media are skipped."""
    messages: List[InboundMessage] = []
    for entry in data.get("entry", []):
        for change in entry.get("changes", []):
            if change.get("field") != "messages":
                continue
            value = change.get("value", {})
            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name")
                for c in value.get("contacts", [])
            }
            for message in value.get("messages", []):
                content = ""
                if message.get("type") == "text":
                    content = (message.get("text") or {}).get("body", "")
                elif message.get("type") == "interactive":
                    interactive = message.get("interactive") or {}
                    reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
                    content = reply.get("title", "")
                telefono = message.get("from", "")
                if not content.strip() or not telefono:
                    log.debug("Ignoring WhatsApp message", type=message.get("type"))
                    continue
                messages.append(
                    InboundMessage(
                        conversation_id=telefono,
                        telefono=telefono,
                        nombre=names.get(telefono) or "Usuario",
                        content=content,
                        message_id=message.get("id"),
                        source="whatsapp",
                    )
                )
    return messages


def extract_chatwoot_message(payload: Dict[str, Any]) -> Optional[InboundMessage]:
    """The incoming public message of a Chatwoot agent-bot 'message_created' event, if any."""
    if payload.get("event") != "message_created":
        return None
    inner = payload.get("message") or {}
    message_type = payload.get("message_type", inner.get("message_type"))
    if message_type not in ("incoming", 0):
        return None
    if payload.get("private") or inner.get("private"):
        return None

    content = payload.get("content") or inner.get("content") or ""
    conversation = payload.get("conversation") or {}
    if not content.strip() or not conversation.get("id"):
        return None

    sender = payload.get("sender") or inner.get("sender") or (conversation.get("meta") or {}).get("sender") or {}
    telefono = sender.get("phone_number") or (conversation.get("contact_inbox") or {}).get("source_id") or ""
    if not telefono:
        return None

    return InboundMessage(
        conversation_id=str(conversation["id"]),
        telefono=telefono,
        nombre=sender.get("name") or "Usuario",
        content=content,
        message_id=str(payload["id"]) if payload.get("id") else None,
        source="chatwoot",
    )


# --- WhatsApp Webhooks ---

@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Acknowledges at once; each message is processed in its own task."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("Malformed WhatsApp webhook body")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        if data.get("object") != "whatsapp_business_account":
            return JSONResponse({"status": "ignored"})

        for message in extract_whatsapp_messages(data):
            log.info("Processing incoming message", message_id=message.message_id, telefono=message.telefono[-4:])
            _schedule(message)

        return JSONResponse({"status": "ok"})


# --- Chatwoot Webhooks ---

@router.post("/chatwoot")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_chatwoot_webhook(request: Request):
    """Chatwoot agent-bot events; only incoming public messages are processed."""
    with response_time_histogram.labels(endpoint="chatwoot_webhook").time():
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

        message = extract_chatwoot_message(payload)
        if not message:
            log.debug("Ignoring Chatwoot event", event_name=payload.get("event"))
            return JSONResponse({"status": "ignored"})

        log.info("Processing Chatwoot message", conversation_id=message.conversation_id)
        _schedule(message)
        return JSONResponse({"status": "ok"})


# --- Local testing ---

@router.post("/test")
async def handle_test_message(body: TestMessageRequest):
    """Runs one message through the pipeline synchronously. Disabled in production."""
    if settings.environment == "production":
        raise HTTPException(status_code=404, detail="Not Found")

    message = InboundMessage(
        conversation_id=body.telefono,
        telefono=body.telefono,
        nombre=body.nombre or "Test User",
        content=body.message,
        source="test",
    )
    await intent_router.process_message(message)
    return JSONResponse({"status": "processed"})
