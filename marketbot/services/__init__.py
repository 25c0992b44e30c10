from marketbot.services.conversation_service import TurnOutcome, deliver, process_message
from marketbot.services.state_machine import (
    ConversationState,
    InvalidTransitionError,
    can_transition,
    transition,
)
from marketbot.services.state_service import (
    get_or_create_user_for_update,
    load_conversation,
    save_conversation,
)
