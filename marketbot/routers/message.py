from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketbot.database import get_db
from marketbot.logging_config import get_logger
from marketbot.schemas.message import MessageRequest, MessageResponse
from marketbot.services.conversation_service import process_message
from marketbot.services.media_service import is_hosted_media_url
from marketbot.services.whatsapp_service import get_whatsapp_service

logger = get_logger("message")

router = APIRouter()


@router.post("/message", response_model=MessageResponse)
def handle_message(request: MessageRequest, db: Session = Depends(get_db)):
    """Run a conversation turn synchronously (web chat, testing).

    The reply is returned in the response body; only subscriber notifications
    go out over WhatsApp. `image_url` must be a URL we host (signed /media/ link
    or our Cloudinary cloud); anything else is dropped rather than stored on a listing.
    """
    attachment = request.image_url
    if attachment and not is_hosted_media_url(attachment):
        logger.warning(
            "Dropped image_url that is not hosted media",
            extra={"context": {"address": request.address, "message_id": request.message_id}},
        )
        attachment = None

    outcome = process_message(
        db,
        request.address,
        request.content,
        attachment=attachment,
        message_id=request.message_id,
    )

    sent = 0
    if outcome.notifications:
        sender = get_whatsapp_service()
        for notification in outcome.notifications:
            if sender.send_text(notification.to, notification.text):
                sent += 1

    return MessageResponse(
        success=True,
        state=outcome.state,
        bot_response=outcome.reply,
        duplicate=outcome.duplicate,
        notifications_sent=sent,
    )
