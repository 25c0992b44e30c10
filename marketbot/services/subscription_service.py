import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from marketbot.logging_config import get_logger
from marketbot.models import Listing, Subscription, User
from marketbot.services.classifier_service import DEFAULT_CATEGORY, KeywordClassifier
from marketbot.services.listing_service import listing_url
from marketbot.services.rate_policy import check_user_alert_limit, rate_limit_message
from marketbot.services.result import Result

logger = get_logger("subscription_service")

KIND_ALERT = "ALERT"
KIND_BUY_REQUEST = "BUY_REQUEST"

SUBSCRIPTION_TTL = {
    KIND_ALERT: timedelta(days=90),
    KIND_BUY_REQUEST: timedelta(days=30),
}

_AMOUNT = r"\$?\s*(\d[\d,]*(?:\.\d+)?)"
_UNDER_RE = re.compile(rf"^(?:under|below|less than|max|up to|<)\s*{_AMOUNT}$")
_OVER_RE = re.compile(rf"^(?:over|above|more than|min|>)\s*{_AMOUNT}$")
_PLUS_RE = re.compile(rf"^{_AMOUNT}\s*\+$")
_BETWEEN_RE = re.compile(rf"^{_AMOUNT}\s*(?:-|to)\s*{_AMOUNT}$")
_SINGLE_RE = re.compile(rf"^{_AMOUNT}$")


@dataclass
class OutboundMessage:
    to: str
    text: str


def _amount(raw: str) -> float:
    return float(raw.replace(",", ""))


def parse_price_range(text: Optional[str]) -> Optional[tuple[Optional[float], Optional[float]]]:
    """Parse "under 50", "over 20", "20-50", "20+" or "50" into (min, max).

    A single amount is read as a ceiling. Returns None for anything else.
    """
    if not text:
        return None
    value = " ".join(text.strip().lower().split())

    match = _BETWEEN_RE.match(value)
    if match:
        low, high = _amount(match.group(1)), _amount(match.group(2))
        return (min(low, high), max(low, high))

    for pattern in (_UNDER_RE, _SINGLE_RE):
        match = pattern.match(value)
        if match:
            return (None, _amount(match.group(1)))

    for pattern in (_OVER_RE, _PLUS_RE):
        match = pattern.match(value)
        if match:
            return (_amount(match.group(1)), None)

    return None


def price_in_range(price_range: Optional[str], price: Optional[float]) -> bool:
    """No range (or an unreadable stored one) matches any price."""
    bounds = parse_price_range(price_range)
    if bounds is None:
        return True
    if price is None:
        return False
    low, high = bounds
    if low is not None and price < low:
        return False
    if high is not None and price > high:
        return False
    return True


def extract_keywords(text: Optional[str]) -> set[str]:
    words = (re.sub(r"[^\w]", "", word) for word in (text or "").lower().split())
    return {word for word in words if len(word) > 2}


def create_subscription(
    db: Session,
    user: User,
    keywords: str,
    price_range: Optional[str],
    now: datetime,
    kind: str = KIND_ALERT,
) -> Result[Subscription]:
    limit = check_user_alert_limit(db, user, now)
    if not limit.allowed:
        logger.info(
            "Subscription rate limited",
            extra={"context": {"address": user.address, "kind": kind, "counts": limit.counts}},
        )
        return Result.failure(rate_limit_message(limit, kind="alert"), code=limit.reason or "rate_limited")

    subscription = Subscription(
        user_id=user.id,
        kind=kind,
        keywords=keywords.strip(),
        price_range=price_range,
        category=KeywordClassifier().classify(keywords).category,
        status="ACTIVE",
        created_at=now,
        expires_at=now + SUBSCRIPTION_TTL[kind],
    )
    db.add(subscription)
    db.flush()

    logger.info(
        f"Subscription created: {kind}",
        extra={"context": {"address": user.address, "subscription_id": str(subscription.id)}},
    )
    return Result.success(subscription)


def create_buy_request(
    db: Session, user: User, keywords: str, price_range: Optional[str], now: datetime
) -> Result[Subscription]:
    return create_subscription(db, user, keywords, price_range, now, kind=KIND_BUY_REQUEST)


def _category_compatible(subscription_category: Optional[str], listing_category: Optional[str]) -> bool:
    if not subscription_category or subscription_category == DEFAULT_CATEGORY:
        return True
    return subscription_category == listing_category


def subscription_matches(subscription: Subscription, listing: Listing) -> bool:
    if not extract_keywords(subscription.keywords) & extract_keywords(listing.title):
        return False
    if not _category_compatible(subscription.category, listing.category):
        return False
    return price_in_range(subscription.price_range, listing.price)


def find_matching_subscriptions(db: Session, listing: Listing, now: datetime) -> list[Subscription]:
    candidates = (
        db.query(Subscription)
        .filter(
            Subscription.status == "ACTIVE",
            Subscription.expires_at > now,
            Subscription.user_id != listing.user_id,
        )
        .order_by(Subscription.created_at)
        .all()
    )
    return [subscription for subscription in candidates if subscription_matches(subscription, listing)]


def format_match_message(listing: Listing) -> str:
    return (
        "🔔 New match for your alert!\n\n"
        f"📦 {listing.title}\n"
        f"💰 ${listing.price:.2f}\n"
        f"🏷️ {listing.category}\n\n"
        f"View it here: {listing_url(listing)}"
    )


def build_match_notifications(db: Session, listing: Listing, now: datetime) -> list[OutboundMessage]:
    """Messages for every subscriber the listing matches; marks them notified."""
    messages = []
    text = format_match_message(listing)
    for subscription in find_matching_subscriptions(db, listing, now):
        subscription.last_notified_at = now
        messages.append(OutboundMessage(to=subscription.user.address, text=text))

    if messages:
        logger.info(
            f"Listing matched {len(messages)} subscriptions",
            extra={"context": {"listing_id": str(listing.id)}},
        )
    return messages
