from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from marketbot.logging_config import LoggerAdapter, get_logger
from marketbot.services.classifier_service import Classifier, get_classifier
from marketbot.services.dispatcher import apply_transition, dispatch
from marketbot.services.flow_handlers import DispatchContext
from marketbot.services.state_service import (
    get_or_create_user_for_update,
    load_conversation,
    mark_message_processed,
    save_conversation,
    user_locks,
)
from marketbot.services.subscription_service import OutboundMessage

logger = get_logger("conversation_service")

MAX_TURN_ATTEMPTS = 3
MSG_ERROR = 'Sorry, something went wrong. Please try again or say "HELP" for options.'


@dataclass
class TurnOutcome:
    reply: Optional[str]
    state: Optional[str] = None
    duplicate: bool = False
    recovered: bool = False
    notifications: list[OutboundMessage] = field(default_factory=list)


def _run_turn(
    db: Session,
    address: str,
    text: str,
    attachment: Optional[str],
    message_id: Optional[str],
    now: datetime,
    classifier: Classifier,
) -> TurnOutcome:
    user = get_or_create_user_for_update(db, address, now)

    if not mark_message_processed(db, message_id, address, now):
        return TurnOutcome(reply=None, state=user.conversation_state, duplicate=True)

    stored = load_conversation(user)
    ctx = DispatchContext(db=db, user=user, now=now, classifier=classifier)
    result = dispatch(ctx, stored.state, stored.data, text, attachment)
    save_conversation(db, user, result.state, apply_transition(stored.data, result), now)

    return TurnOutcome(
        reply=result.reply,
        state=result.state.value,
        recovered=stored.recovered,
        notifications=ctx.notifications,
    )


def process_message(
    db: Session,
    address: str,
    text: str,
    attachment: Optional[str] = None,
    message_id: Optional[str] = None,
    now: Optional[datetime] = None,
    classifier: Optional[Classifier] = None,
) -> TurnOutcome:
    """Run one conversation turn for `address` and commit it.

    Turns for the same address are serialized. A concurrent-write conflict rolls
    the whole turn back and retries it; any other failure rolls back and returns
    a generic apology. Never raises.
    """
    now = now or datetime.now(timezone.utc)
    classifier = classifier or get_classifier()
    log = LoggerAdapter(logger, {"address": address, "message_id": message_id})

    with user_locks.hold(address):
        for attempt in range(1, MAX_TURN_ATTEMPTS + 1):
            try:
                outcome = _run_turn(db, address, text, attachment, message_id, now, classifier)
                db.commit()
            except (StaleDataError, IntegrityError) as e:
                db.rollback()
                log.warning(
                    f"Turn conflict, retrying ({attempt}/{MAX_TURN_ATTEMPTS})",
                    context={"error_type": type(e).__name__},
                )
                continue
            except Exception as e:
                db.rollback()
                log.error(f"Turn failed: {e}", exc_info=True)
                return TurnOutcome(reply=MSG_ERROR)

            if outcome.duplicate:
                log.info("Skipped duplicate delivery")
            else:
                log.info("Turn processed", context={"state": outcome.state})
            return outcome

    log.error("Turn abandoned after repeated conflicts")
    return TurnOutcome(reply=MSG_ERROR)


def deliver(outcome: TurnOutcome, address: str, sender) -> int:
    """Send the reply and any subscriber notifications. Returns how many were sent."""
    sent = 0
    if outcome.reply and sender.send_text(address, outcome.reply):
        sent += 1
    for notification in outcome.notifications:
        if sender.send_text(notification.to, notification.text):
            sent += 1
    return sent
