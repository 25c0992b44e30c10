import math
import uuid
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Optional

from sqlalchemy.orm import Session

from marketbot.config import settings
from marketbot.logging_config import get_logger
from marketbot.models import Listing, User
from marketbot.schemas.conversation import ConversationData
from marketbot.services.classifier_service import normalize_category, normalize_condition
from marketbot.services.rate_policy import marketplace_tz, record_published_listing, refresh_trust_level
from marketbot.services.result import Result

logger = get_logger("listing_service")

LISTING_TTL = timedelta(days=14)

# listings.price is Numeric(10, 2).
PRICE_QUANTUM = Decimal("0.01")
MAX_PRICE = Decimal("99999999.99")

STATUS_DRAFT = "DRAFT"
STATUS_READY = "READY"
STATUS_PUBLISHED = "PUBLISHED"


def parse_price(text: Optional[str]) -> Optional[float]:
    """Parse "$1,234.50"-style input, rounded half-up to cents.

    None unless the rounded amount is positive and fits the price column.
    """
    if text is None:
        return None
    cleaned = "".join(text.replace("$", "").replace(",", "").split())
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0 or amount > MAX_PRICE + 1:
        return None
    cents = amount.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)
    if cents <= 0 or cents > MAX_PRICE:
        return None
    return float(cents)


def is_publishable(title: Optional[str], price: Optional[float], images: Optional[list]) -> bool:
    return bool(title and title.strip()) and price is not None and math.isfinite(price) and price > 0 and bool(images)


def compute_status(title: Optional[str], price: Optional[float], images: Optional[list], publish: bool = True) -> str:
    if not is_publishable(title, price, images):
        return STATUS_DRAFT
    return STATUS_PUBLISHED if publish else STATUS_READY


def listing_url(listing: Listing) -> str:
    return f"{settings.public_base_url.rstrip('/')}/listing/{listing.id}"


def assemble(
    db: Session,
    user: User,
    data: ConversationData,
    now: datetime,
    publish: bool = True,
    on_published: Optional[Callable[[Listing], None]] = None,
) -> Listing:
    """Persist the collected fields as a listing; status follows field completeness.

    Entering PUBLISHED bumps the seller's daily counter, re-evaluates trust and
    then runs `on_published` best-effort.
    """
    title = (data.item_name or "").strip()
    images = list(data.images)
    status = compute_status(title, data.price, images, publish)

    listing = Listing(
        user_id=user.id,
        title=title,
        price=data.price,
        category=normalize_category(data.category),
        condition=normalize_condition(data.condition),
        meeting_spot=data.meeting_spot,
        external_link=data.external_link,
        images=images,
        status=status,
        created_at=now,
        published_at=now if status == STATUS_PUBLISHED else None,
        expires_at=now + LISTING_TTL,
        updated_at=now,
    )
    db.add(listing)
    db.flush()

    logger.info(
        f"Listing assembled: {status}",
        extra={"context": {"listing_id": str(listing.id), "address": user.address, "status": status}},
    )

    if status != STATUS_PUBLISHED:
        return listing

    record_published_listing(user, now, marketplace_tz())
    refresh_trust_level(db, user, now)

    if on_published is not None:
        try:
            on_published(listing)
        except Exception as e:
            logger.error(
                f"on_published hook failed: {e}",
                exc_info=True,
                extra={"context": {"listing_id": str(listing.id)}},
            )

    return listing


def renew(db: Session, listing_id: uuid.UUID, now: datetime) -> Optional[Listing]:
    """Push expiry to now + 14 days. Returns None if the listing does not exist."""
    listing = db.get(Listing, listing_id)
    if listing is None:
        return None
    listing.expires_at = now + LISTING_TTL
    listing.updated_at = now
    db.flush()
    logger.info("Listing renewed", extra={"context": {"listing_id": str(listing.id)}})
    return listing


def parse_listing_id(raw: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(raw.strip())
    except (ValueError, AttributeError):
        return None


def renew_owned_listing(db: Session, user: User, raw_listing_id: str, now: datetime) -> Result[Listing]:
    listing_id = parse_listing_id(raw_listing_id)
    if listing_id is None:
        return Result.failure("That doesn't look like a listing ID.", code="invalid_id")

    listing = db.get(Listing, listing_id)
    if listing is None or listing.user_id != user.id:
        return Result.failure("Listing not found or you don't have permission to renew it.", code="not_found")
    if listing.status != STATUS_PUBLISHED:
        return Result.failure("Only published listings can be renewed.", code="not_published")

    return Result.success(renew(db, listing.id, now))
