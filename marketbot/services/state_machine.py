from enum import Enum
from typing import Optional

from marketbot.schemas.conversation import ConversationData, Intent


class ConversationState(str, Enum):
    INITIAL = "INITIAL"
    AWAITING_CONSENT = "AWAITING_CONSENT"
    AWAITING_INTENT = "AWAITING_INTENT"
    BUYING_ITEM_NAME = "BUYING_ITEM_NAME"
    BUYING_PRICE_RANGE = "BUYING_PRICE_RANGE"
    BUYING_CONFIRM_SUBSCRIPTION = "BUYING_CONFIRM_SUBSCRIPTION"
    SELLING_ITEM_NAME = "SELLING_ITEM_NAME"
    SELLING_PRICE = "SELLING_PRICE"
    SELLING_IMAGE = "SELLING_IMAGE"
    SELLING_CATEGORY_CONFIRM = "SELLING_CATEGORY_CONFIRM"
    SELLING_MEETING_SPOT = "SELLING_MEETING_SPOT"
    SELLING_EXTERNAL_LINK = "SELLING_EXTERNAL_LINK"
    VERIFIED = "VERIFIED"


S = ConversationState

IDLE_STATES = frozenset({S.AWAITING_INTENT, S.VERIFIED})
ONBOARDING_STATES = frozenset({S.INITIAL, S.AWAITING_CONSENT})
BUYING_STATES = (S.BUYING_ITEM_NAME, S.BUYING_PRICE_RANGE, S.BUYING_CONFIRM_SUBSCRIPTION)
SELLING_STATES = (
    S.SELLING_ITEM_NAME,
    S.SELLING_PRICE,
    S.SELLING_IMAGE,
    S.SELLING_CATEGORY_CONFIRM,
    S.SELLING_MEETING_SPOT,
    S.SELLING_EXTERNAL_LINK,
)
FLOW_STATES = frozenset(BUYING_STATES + SELLING_STATES)

# Every flow state may stay put (re-prompt), restart at its branch's first
# step, or collapse to VERIFIED (help, completion, policy rejection).
VALID_TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    S.INITIAL: frozenset({S.AWAITING_CONSENT}),
    S.AWAITING_CONSENT: frozenset({S.AWAITING_CONSENT, S.AWAITING_INTENT}),
    S.AWAITING_INTENT: frozenset({S.AWAITING_INTENT, S.VERIFIED, S.BUYING_ITEM_NAME, S.SELLING_ITEM_NAME}),
    S.VERIFIED: frozenset({S.VERIFIED, S.BUYING_ITEM_NAME, S.SELLING_ITEM_NAME}),
    S.BUYING_ITEM_NAME: frozenset({S.BUYING_ITEM_NAME, S.BUYING_PRICE_RANGE, S.VERIFIED}),
    S.BUYING_PRICE_RANGE: frozenset(
        {S.BUYING_PRICE_RANGE, S.BUYING_CONFIRM_SUBSCRIPTION, S.BUYING_ITEM_NAME, S.VERIFIED}
    ),
    S.BUYING_CONFIRM_SUBSCRIPTION: frozenset({S.BUYING_CONFIRM_SUBSCRIPTION, S.BUYING_ITEM_NAME, S.VERIFIED}),
    S.SELLING_ITEM_NAME: frozenset({S.SELLING_ITEM_NAME, S.SELLING_PRICE, S.VERIFIED}),
    S.SELLING_PRICE: frozenset({S.SELLING_PRICE, S.SELLING_IMAGE, S.SELLING_ITEM_NAME, S.VERIFIED}),
    S.SELLING_IMAGE: frozenset({S.SELLING_IMAGE, S.SELLING_CATEGORY_CONFIRM, S.SELLING_ITEM_NAME, S.VERIFIED}),
    S.SELLING_CATEGORY_CONFIRM: frozenset(
        {S.SELLING_CATEGORY_CONFIRM, S.SELLING_MEETING_SPOT, S.SELLING_ITEM_NAME, S.VERIFIED}
    ),
    S.SELLING_MEETING_SPOT: frozenset(
        {S.SELLING_MEETING_SPOT, S.SELLING_EXTERNAL_LINK, S.SELLING_ITEM_NAME, S.VERIFIED}
    ),
    S.SELLING_EXTERNAL_LINK: frozenset({S.SELLING_EXTERNAL_LINK, S.SELLING_ITEM_NAME, S.VERIFIED}),
}

_SELLING_ENRICHED = ("intent", "item_name", "price", "images", "category", "condition")

# Payload fields that must be set while the conversation sits in a state.
REQUIRED_FIELDS: dict[ConversationState, tuple[str, ...]] = {
    S.INITIAL: (),
    S.AWAITING_CONSENT: (),
    S.AWAITING_INTENT: (),
    S.VERIFIED: (),
    S.BUYING_ITEM_NAME: ("intent",),
    S.BUYING_PRICE_RANGE: ("intent", "item_name"),
    S.BUYING_CONFIRM_SUBSCRIPTION: ("intent", "item_name"),
    S.SELLING_ITEM_NAME: ("intent",),
    S.SELLING_PRICE: ("intent", "item_name"),
    S.SELLING_IMAGE: ("intent", "item_name", "price"),
    S.SELLING_CATEGORY_CONFIRM: _SELLING_ENRICHED,
    S.SELLING_MEETING_SPOT: _SELLING_ENRICHED,
    S.SELLING_EXTERNAL_LINK: _SELLING_ENRICHED,
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationState, to_state: ConversationState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def parse_state(raw: Optional[str]) -> Optional[ConversationState]:
    """Map a stored state string onto the enum; None for missing or unknown values."""
    if not raw:
        return None
    try:
        return ConversationState(raw)
    except ValueError:
        return None


def can_transition(from_state: ConversationState, to_state: ConversationState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, frozenset())


def transition(from_state: ConversationState, to_state: ConversationState) -> ConversationState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def intent_for_state(state: ConversationState) -> Optional[Intent]:
    if state in BUYING_STATES:
        return Intent.BUYING
    if state in SELLING_STATES:
        return Intent.SELLING
    return None


def first_step(intent: Intent) -> ConversationState:
    return S.BUYING_ITEM_NAME if intent == Intent.BUYING else S.SELLING_ITEM_NAME


def check_invariants(state: ConversationState, data: ConversationData) -> list[str]:
    """Check the payload against the state. Returns a list of violations."""
    violations = []

    for field_name in REQUIRED_FIELDS.get(state, ()):
        value = getattr(data, field_name)
        if value is None or value == []:
            violations.append(f"{state.value.lower()}_missing_{field_name}")

    expected_intent = intent_for_state(state)
    if expected_intent and data.intent and data.intent != expected_intent:
        violations.append(f"{state.value.lower()}_intent_mismatch")

    if state in IDLE_STATES | ONBOARDING_STATES and not data.is_empty():
        violations.append(f"{state.value.lower()}_has_flow_data")

    return violations
