from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from marketbot.config import settings
from marketbot.database import SessionLocal
from marketbot.logging_config import get_logger
from marketbot.schemas.webhook import WebhookResponse, WhatsAppMessage, WhatsAppWebhook
from marketbot.services.conversation_service import deliver, process_message
from marketbot.services.media_service import get_media_intake
from marketbot.services.state_service import is_message_processed
from marketbot.services.whatsapp_service import get_whatsapp_service

logger = get_logger("webhook")

router = APIRouter()

SUPPORTED_MESSAGE_TYPES = {"text", "image"}


@router.get("/webhook/whatsapp")
async def verify_webhook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    """Meta subscription handshake: echo the challenge when the token matches."""
    expected = settings.whatsapp_verify_token
    if mode == "subscribe" and expected and token == expected:
        logger.info("Webhook verified")
        return PlainTextResponse(challenge or "")
    logger.warning("Webhook verification failed", extra={"context": {"mode": mode}})
    return PlainTextResponse("Forbidden", status_code=403)


def handle_inbound_message(message: WhatsAppMessage) -> None:
    """Background unit of work for one inbound message. Never raises."""
    address = message.from_
    db = SessionLocal()
    try:
        if is_message_processed(db, message.id):
            logger.info(
                "Skipped duplicate delivery before media intake",
                extra={"context": {"address": address, "message_id": message.id}},
            )
            return

        attachment = None
        if message.media_id:
            attachment = get_media_intake().resolve(message.media_id)

        outcome = process_message(db, address, message.body, attachment=attachment, message_id=message.id)
        if outcome.duplicate:
            return
        deliver(outcome, address, get_whatsapp_service())
    except Exception as e:
        logger.error(
            f"Inbound message handling failed: {e}",
            exc_info=True,
            extra={"context": {"address": address, "message_id": message.id}},
        )
    finally:
        db.close()


async def _parse_webhook_request(request: Request) -> WhatsAppWebhook | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except Exception as exc:
        logger.warning("Webhook payload is not valid JSON", extra={"context": {"error": str(exc)}})
        return WebhookResponse(success=True, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return WebhookResponse(success=True, message="Invalid payload format")

    try:
        return WhatsAppWebhook.model_validate(payload)
    except ValidationError as exc:
        logger.warning(
            "Webhook payload validation failed",
            extra={"context": {"error": str(exc), "payload_keys": list(payload.keys())[:20]}},
        )
        return WebhookResponse(success=True, message="Invalid webhook payload")


@router.post("/webhook/whatsapp", response_model=WebhookResponse)
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    """Acknowledge immediately; every message is processed in the background.

    Always answers 200 so the platform does not retry deliveries we have
    already accepted or can never parse.
    """
    parsed = await _parse_webhook_request(request)
    if isinstance(parsed, WebhookResponse):
        return parsed

    received = 0
    for message in parsed.iter_messages():
        if message.type not in SUPPORTED_MESSAGE_TYPES:
            logger.info(
                f"Ignoring unsupported message type: {message.type}",
                extra={"context": {"address": message.from_, "message_id": message.id}},
            )
            continue
        background_tasks.add_task(handle_inbound_message, message)
        received += 1

    return WebhookResponse(success=True, message="Accepted", received=received)
