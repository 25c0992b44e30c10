from marketbot.schemas.conversation import ConversationData, Intent
from marketbot.schemas.message import MessageRequest, MessageResponse
from marketbot.schemas.webhook import WebhookResponse, WhatsAppWebhook

__all__ = [
    "ConversationData",
    "Intent",
    "MessageRequest",
    "MessageResponse",
    "WebhookResponse",
    "WhatsAppWebhook",
]
