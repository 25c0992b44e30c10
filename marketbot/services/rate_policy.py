"""Trust levels and per-user rate limits for new listings and buy alerts.

The limit tables are code constants; the checks are pure functions of the user
row plus a count the caller supplies, so they can be evaluated without a DB.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketbot.config import settings
from marketbot.logging_config import get_logger
from marketbot.models import Listing, Subscription, User
from marketbot.models.column_types import as_utc

logger = get_logger("rate_policy")


class TrustLevel(str, Enum):
    BASIC = "BASIC"
    TRUSTED = "TRUSTED"
    SHADOW_BANNED = "SHADOW_BANNED"


@dataclass(frozen=True)
class Limits:
    daily_listings: int
    active_listings: int
    active_alerts: int


LIMITS = {
    TrustLevel.BASIC: Limits(daily_listings=3, active_listings=10, active_alerts=10),
    TrustLevel.TRUSTED: Limits(daily_listings=5, active_listings=15, active_alerts=15),
    TrustLevel.SHADOW_BANNED: Limits(daily_listings=0, active_listings=0, active_alerts=0),
}

ACTIVE_LISTING_STATUSES = ("PUBLISHED", "READY")
PROMOTION_WINDOW_DAYS = 30
PROMOTION_MIN_PUBLISHED = 5
BAN_SPAM_ATTEMPTS = 3

REASON_DAILY_LIMIT = "daily_limit"
REASON_ACTIVE_LIMIT = "active_limit"


@dataclass
class RateLimitResult:
    allowed: bool
    reason: Optional[str] = None
    counts: dict = field(default_factory=dict)


def trust_level_of(user) -> TrustLevel:
    try:
        return TrustLevel(user.trust_level)
    except ValueError:
        logger.warning(f"Unknown trust level {user.trust_level!r}, treating as BASIC")
        return TrustLevel.BASIC


def marketplace_tz() -> ZoneInfo:
    return ZoneInfo(settings.marketplace_timezone)


def start_of_day(now: datetime, tz=timezone.utc) -> datetime:
    """Midnight of `now`'s calendar day in `tz`, as an aware datetime."""
    local = now.astimezone(tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz)


def effective_daily_count(user, now: datetime, tz=timezone.utc) -> int:
    last = as_utc(user.last_listing_date)
    if last is None or last < start_of_day(now, tz):
        return 0
    return user.daily_listing_count or 0


def check_rate_limit(user, active_listings: int, now: datetime, tz=timezone.utc) -> RateLimitResult:
    """Decide whether `user` may create one more listing right now."""
    limits = LIMITS[trust_level_of(user)]
    daily = effective_daily_count(user, now, tz)
    counts = {
        "daily": daily,
        "daily_max": limits.daily_listings,
        "active": active_listings,
        "active_max": limits.active_listings,
    }

    if daily >= limits.daily_listings:
        return RateLimitResult(allowed=False, reason=REASON_DAILY_LIMIT, counts=counts)
    if active_listings >= limits.active_listings:
        return RateLimitResult(allowed=False, reason=REASON_ACTIVE_LIMIT, counts=counts)
    return RateLimitResult(allowed=True, counts=counts)


def check_alert_limit(user, active_alerts: int) -> RateLimitResult:
    limits = LIMITS[trust_level_of(user)]
    counts = {"active": active_alerts, "active_max": limits.active_alerts}
    if active_alerts >= limits.active_alerts:
        return RateLimitResult(allowed=False, reason=REASON_ACTIVE_LIMIT, counts=counts)
    return RateLimitResult(allowed=True, counts=counts)


def rate_limit_message(result: RateLimitResult, kind: str = "listing") -> str:
    if result.allowed:
        return ""

    counts = result.counts
    if kind == "alert":
        if not counts.get("active_max"):
            return "Alerts aren't available on your account right now."
        return (
            f"You already have {counts['active']} active alerts (max {counts['active_max']}). "
            "Wait for one to expire before adding another."
        )

    if result.reason == REASON_DAILY_LIMIT:
        if not counts.get("daily_max"):
            return "Your account can't create new listings right now."
        return f"You've reached your daily limit of {counts['daily_max']} listings. Try again tomorrow!"
    if result.reason == REASON_ACTIVE_LIMIT:
        return (
            f"You already have {counts['active']} active listings (max {counts['active_max']}). "
            "Wait for one to expire or sell something first."
        )
    return "You can't create a new listing right now. Try again later."


def count_active_listings(db: Session, user: User, now: datetime) -> int:
    return (
        db.query(func.count(Listing.id))
        .filter(
            Listing.user_id == user.id,
            Listing.status.in_(ACTIVE_LISTING_STATUSES),
            Listing.expires_at > now,
        )
        .scalar()
        or 0
    )


def count_active_alerts(db: Session, user: User, now: datetime) -> int:
    return (
        db.query(func.count(Subscription.id))
        .filter(
            Subscription.user_id == user.id,
            Subscription.status == "ACTIVE",
            Subscription.expires_at > now,
        )
        .scalar()
        or 0
    )


def check_listing_rate_limit(db: Session, user: User, now: datetime) -> RateLimitResult:
    """DB-backed listing check. A failed count fails open; the daily gate still applies."""
    try:
        active = count_active_listings(db, user, now)
    except SQLAlchemyError as e:
        logger.error(
            "Active listing count failed, failing open",
            extra={"context": {"address": user.address, "error": str(e)}},
        )
        active = 0
    result = check_rate_limit(user, active, now, marketplace_tz())
    if not result.allowed:
        logger.info(
            "Listing rate limited",
            extra={"context": {"address": user.address, "reason": result.reason, "counts": result.counts}},
        )
    return result


def check_user_alert_limit(db: Session, user: User, now: datetime) -> RateLimitResult:
    try:
        active = count_active_alerts(db, user, now)
    except SQLAlchemyError as e:
        logger.error(
            "Active alert count failed, failing open",
            extra={"context": {"address": user.address, "error": str(e)}},
        )
        active = 0
    return check_alert_limit(user, active)


def evaluate_trust_level(current: TrustLevel, published_recently: int, spam_attempts: int) -> TrustLevel:
    """Next trust level. SHADOW_BANNED is sticky: nothing here lifts a ban."""
    if current == TrustLevel.SHADOW_BANNED:
        return current
    if spam_attempts >= BAN_SPAM_ATTEMPTS:
        return TrustLevel.SHADOW_BANNED
    if current == TrustLevel.BASIC and published_recently >= PROMOTION_MIN_PUBLISHED and spam_attempts == 0:
        return TrustLevel.TRUSTED
    return current


def count_recent_published(db: Session, user: User, now: datetime) -> int:
    since = now - timedelta(days=PROMOTION_WINDOW_DAYS)
    return (
        db.query(func.count(Listing.id))
        .filter(Listing.user_id == user.id, Listing.published_at.isnot(None), Listing.published_at >= since)
        .scalar()
        or 0
    )


def refresh_trust_level(db: Session, user: User, now: datetime) -> TrustLevel:
    current = trust_level_of(user)
    published = count_recent_published(db, user, now)
    new_level = evaluate_trust_level(current, published, user.spam_attempts or 0)
    if new_level != current:
        user.trust_level = new_level.value
        logger.info(
            f"Trust level changed {current.value} -> {new_level.value}",
            extra={"context": {"address": user.address, "published_30d": published, "spam": user.spam_attempts}},
        )
    return new_level


def record_spam_attempt(db: Session, user: User, reason: str, now: datetime) -> TrustLevel:
    user.spam_attempts = (user.spam_attempts or 0) + 1
    logger.warning(
        "Spam attempt recorded",
        extra={"context": {"address": user.address, "reason": reason, "attempts": user.spam_attempts}},
    )
    return refresh_trust_level(db, user, now)


def record_published_listing(user, now: datetime, tz=timezone.utc) -> int:
    """Bump the daily counter, resetting it first if the last listing was on an earlier day."""
    user.daily_listing_count = effective_daily_count(user, now, tz) + 1
    user.last_listing_date = now
    return user.daily_listing_count
