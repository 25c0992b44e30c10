import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from marketbot.logging_config import get_logger
from marketbot.models import ProcessedMessage, User
from marketbot.schemas.conversation import ConversationData
from marketbot.services.state_machine import ConversationState, check_invariants, parse_state

logger = get_logger("state_service")


class KeyedLock:
    """Process-local mutex per key (user address).

    Reference counted so the table only holds locks for keys in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._waiters: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def active_keys(self) -> list[str]:
        with self._guard:
            return list(self._locks)


user_locks = KeyedLock()


@dataclass
class StoredConversation:
    state: ConversationState
    data: ConversationData
    recovered: bool = False  # stored record was missing or corrupt


def get_or_create_user_for_update(db: Session, address: str, now: Optional[datetime] = None) -> User:
    """Find user by address (row-locked where the dialect supports it) or create one."""
    user = db.query(User).filter(User.address == address).with_for_update().first()

    if not user:
        now = now or datetime.now(timezone.utc)
        user = User(
            address=address,
            trust_level="BASIC",
            daily_listing_count=0,
            spam_attempts=0,
            conversation_state=ConversationState.INITIAL.value,
            conversation_data={},
            created_at=now,
        )
        db.add(user)
        db.flush()
        logger.info("Created user", extra={"context": {"address": address}})

    return user


def load_conversation(user: User) -> StoredConversation:
    """Read state and payload; anything unreadable restarts onboarding from INITIAL."""
    state = parse_state(user.conversation_state)
    if state is None:
        logger.warning(
            "Unknown conversation state, restarting",
            extra={"context": {"address": user.address, "state": user.conversation_state}},
        )
        return StoredConversation(ConversationState.INITIAL, ConversationData(), recovered=True)

    try:
        data = ConversationData.model_validate(user.conversation_data or {})
    except ValidationError as e:
        logger.warning(
            "Corrupt conversation data, restarting",
            extra={"context": {"address": user.address, "error": str(e)}},
        )
        return StoredConversation(ConversationState.INITIAL, ConversationData(), recovered=True)

    violations = check_invariants(state, data)
    if violations:
        logger.warning(
            "Conversation invariants violated, restarting",
            extra={"context": {"address": user.address, "violations": violations}},
        )
        return StoredConversation(ConversationState.INITIAL, ConversationData(), recovered=True)

    return StoredConversation(state, data)


def save_conversation(
    db: Session,
    user: User,
    state: ConversationState,
    data: ConversationData,
    now: Optional[datetime] = None,
) -> None:
    """Persist state and payload. The version bump happens on flush."""
    violations = check_invariants(state, data)
    if violations:
        logger.error(
            "Saving conversation with invariant violations",
            extra={"context": {"address": user.address, "state": state.value, "violations": violations}},
        )

    user.conversation_state = state.value
    user.conversation_data = data.to_storage()
    user.last_active_at = now or datetime.now(timezone.utc)
    db.flush()


def clear_conversation(db: Session, user: User, now: Optional[datetime] = None) -> None:
    save_conversation(db, user, ConversationState.VERIFIED, ConversationData(), now)


def is_message_processed(db: Session, message_id: Optional[str]) -> bool:
    return bool(message_id) and db.get(ProcessedMessage, message_id) is not None


def mark_message_processed(db: Session, message_id: Optional[str], address: str, now: datetime) -> bool:
    """Record an inbound message id. Returns False if it was already processed."""
    if not message_id:
        return True

    if is_message_processed(db, message_id):
        logger.info(
            "Duplicate inbound message",
            extra={"context": {"address": address, "message_id": message_id}},
        )
        return False

    db.add(ProcessedMessage(message_id=message_id, address=address, received_at=now))
    db.flush()
    return True
