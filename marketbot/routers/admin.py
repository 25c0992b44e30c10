"""Operator endpoints: trust sweep and manual listing renewal."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from marketbot.config import settings
from marketbot.database import get_db
from marketbot.logging_config import get_logger
from marketbot.models import User
from marketbot.services.listing_service import renew
from marketbot.services.rate_policy import TrustLevel, refresh_trust_level

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


class TrustRefreshResponse(BaseModel):
    checked: int
    changed: int
    levels: dict[str, int]


class RenewResponse(BaseModel):
    id: UUID
    title: str
    status: str
    expires_at: datetime


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="admin_token not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/trust/refresh", response_model=TrustRefreshResponse)
def refresh_trust(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Re-evaluate every non-banned user's trust level."""
    _require_admin_token(x_admin_token)
    now = datetime.now(timezone.utc)

    users = db.query(User).filter(User.trust_level != TrustLevel.SHADOW_BANNED.value).all()
    changed = 0
    levels: dict[str, int] = {}
    for user in users:
        before = user.trust_level
        level = refresh_trust_level(db, user, now)
        if level.value != before:
            changed += 1
        levels[level.value] = levels.get(level.value, 0) + 1

    db.commit()
    logger.info("Trust sweep finished", extra={"context": {"checked": len(users), "changed": changed}})
    return TrustRefreshResponse(checked=len(users), changed=changed, levels=levels)


@router.post("/listings/{listing_id}/renew", response_model=RenewResponse)
def renew_listing(
    listing_id: UUID,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    listing = renew(db, listing_id, datetime.now(timezone.utc))
    if listing is None:
        raise HTTPException(status_code=404, detail="Listing not found")
    db.commit()
    return RenewResponse(id=listing.id, title=listing.title, status=listing.status, expires_at=listing.expires_at)
