from typing import Optional

from marketbot.logging_config import get_logger
from marketbot.schemas.conversation import ConversationData, Intent
from marketbot.services.flow_handlers import (
    HANDLERS,
    MSG_MENU,
    DispatchContext,
    Transition,
    finish,
    help_menu,
    normalize_text,
    photo_added,
    start_intent,
)
from marketbot.services.state_machine import (
    FLOW_STATES,
    IDLE_STATES,
    ConversationState,
    intent_for_state,
    transition,
)

logger = get_logger("dispatcher")

S = ConversationState

RESTART_COMMANDS = frozenset({"restart", "start over"})
HELP_COMMANDS = frozenset({"help"})

# Steps after the first photo, where further photos are appended.
EXTRA_PHOTO_STATES = frozenset({S.SELLING_CATEGORY_CONFIRM, S.SELLING_MEETING_SPOT, S.SELLING_EXTERNAL_LINK})

MSG_RESTARTED = "🔄 Starting over.\n\n"


def handle_global_command(state: ConversationState, data: ConversationData, command: str) -> Optional[Transition]:
    """restart / help, honoured in idle and flow states (never during onboarding)."""
    if state not in FLOW_STATES and state not in IDLE_STATES:
        return None

    if command in RESTART_COMMANDS:
        if state in FLOW_STATES:
            intent = data.intent or intent_for_state(state) or Intent.SELLING
            restarted = start_intent(intent)
            restarted.reply = MSG_RESTARTED + restarted.reply
            return restarted
        return finish(MSG_MENU)

    if command in HELP_COMMANDS:
        return finish(help_menu())

    return None


def dispatch(
    ctx: DispatchContext,
    state: ConversationState,
    data: ConversationData,
    message: str,
    attachment: Optional[str] = None,
) -> Transition:
    """Route one inbound message to the handler for `state` and validate the result.

    `attachment` is the re-hosted URL of an image sent with the message, if any.
    Raises InvalidTransitionError if a handler returns a state the table forbids.
    """
    message = message or ""
    result = handle_global_command(state, data, normalize_text(message))

    if result is None and attachment and state in EXTRA_PHOTO_STATES:
        if not message.strip():
            result = photo_added(state, data, attachment)
        else:
            # A caption can complete the listing; the photo is part of it either way.
            result = HANDLERS[state](ctx, data.merged({"images": [attachment]}), message, attachment)
            if not result.reset:
                result.updates = {**result.updates, "images": [attachment]}

    if result is None:
        result = HANDLERS[state](ctx, data, message, attachment)

    transition(state, result.state)

    logger.debug(
        f"Dispatched {state.value} -> {result.state.value}",
        extra={"context": {"address": ctx.user.address, "reset": result.reset}},
    )
    return result


def apply_transition(data: ConversationData, result: Transition) -> ConversationData:
    base = ConversationData() if result.reset else data
    return base.merged(result.updates)
