from marketbot.models.listing import Listing
from marketbot.models.processed_message import ProcessedMessage
from marketbot.models.subscription import Subscription
from marketbot.models.user import User

__all__ = [
    "User",
    "Listing",
    "Subscription",
    "ProcessedMessage",
]
