import math
import uuid
from datetime import timedelta
from unittest.mock import Mock

import pytest

from marketbot.models import Listing
from marketbot.models.column_types import as_utc
from marketbot.schemas.conversation import ConversationData, Intent
from marketbot.services.listing_service import (
    LISTING_TTL,
    assemble,
    compute_status,
    listing_url,
    parse_price,
    renew,
    renew_owned_listing,
)


def _data(**overrides):
    values = {
        "intent": Intent.SELLING,
        "item_name": "iPhone 13",
        "price": 450.0,
        "images": ["https://img/1.jpg"],
        "category": "Electronics",
        "condition": "Good",
    }
    values.update(overrides)
    return ConversationData(**values)


class TestParsePrice:
    @pytest.mark.parametrize(
        "raw,expected",
        [("$1,234.50", 1234.50), ("450", 450.0), (" $ 20 ", 20.0), ("12.99", 12.99), ("1 000", 1000.0)],
    )
    def test_valid(self, raw, expected):
        assert parse_price(raw) == pytest.approx(expected)

    def test_rounded_half_up_to_cents(self):
        assert parse_price("12.345") == 12.35
        assert parse_price("0.005") == 0.01

    def test_largest_storable_price(self):
        assert parse_price("99,999,999.99") == 99999999.99

    @pytest.mark.parametrize("raw", ["0.001", "0.004", "100000000", "99999999.995", "1e30", "-1e30"])
    def test_rejects_prices_the_column_cannot_hold(self, raw):
        assert parse_price(raw) is None

    @pytest.mark.parametrize("raw", ["best offer", "", "0", "-5", "$", "NaN", "inf", "12abc", None])
    def test_rejected(self, raw):
        assert parse_price(raw) is None


class TestComputeStatus:
    def test_complete_publishes(self):
        assert compute_status("Lamp", 10.0, ["u"]) == "PUBLISHED"

    def test_complete_without_publish_is_ready(self):
        assert compute_status("Lamp", 10.0, ["u"], publish=False) == "READY"

    @pytest.mark.parametrize(
        "title,price,images",
        [("", 10.0, ["u"]), ("  ", 10.0, ["u"]), ("Lamp", None, ["u"]), ("Lamp", 0.0, ["u"]), ("Lamp", 10.0, [])],
    )
    def test_incomplete_is_draft(self, title, price, images):
        assert compute_status(title, price, images) == "DRAFT"

    def test_non_finite_price_is_draft(self):
        assert compute_status("Lamp", math.inf, ["u"]) == "DRAFT"


class TestAssemble:
    def test_publishes_complete_listing(self, db_session, make_user, now):
        user = make_user()
        hook = Mock()

        listing = assemble(db_session, user, _data(meeting_spot="Library West"), now, on_published=hook)

        assert listing.status == "PUBLISHED"
        assert listing.title == "iPhone 13"
        assert listing.price == 450.0
        assert listing.meeting_spot == "Library West"
        assert listing.external_link is None
        assert as_utc(listing.expires_at) == now + timedelta(days=14)
        assert as_utc(listing.published_at) == now
        hook.assert_called_once_with(listing)

    def test_publish_bumps_daily_counter(self, db_session, make_user, now):
        user = make_user(daily_listing_count=1, last_listing_date=now - timedelta(hours=1))
        assemble(db_session, user, _data(), now)
        assert user.daily_listing_count == 2
        assert user.last_listing_date == now

    def test_ready_when_not_publishing(self, db_session, make_user, now):
        user = make_user()
        hook = Mock()
        listing = assemble(db_session, user, _data(), now, publish=False, on_published=hook)
        assert listing.status == "READY"
        assert listing.published_at is None
        hook.assert_not_called()
        assert user.daily_listing_count == 0

    def test_missing_image_is_draft(self, db_session, make_user, now):
        user = make_user()
        listing = assemble(db_session, user, _data(images=[]), now)
        assert listing.status == "DRAFT"

    def test_hook_failure_does_not_fail_publish(self, db_session, make_user, now):
        user = make_user()
        hook = Mock(side_effect=RuntimeError("notifier down"))
        listing = assemble(db_session, user, _data(), now, on_published=hook)
        assert listing.status == "PUBLISHED"
        assert db_session.query(Listing).count() == 1

    def test_labels_normalized(self, db_session, make_user, now):
        user = make_user()
        listing = assemble(db_session, user, _data(category="books", condition="excellent"), now)
        assert (listing.category, listing.condition) == ("Textbooks", "Like New")

    def test_listing_url(self, db_session, make_user, now):
        listing = assemble(db_session, make_user(), _data(), now)
        assert listing_url(listing).endswith(f"/listing/{listing.id}")


class TestRenew:
    def test_extends_from_now(self, db_session, make_user, now):
        listing = assemble(db_session, make_user(), _data(), now - timedelta(days=10))
        renewed = renew(db_session, listing.id, now)
        assert as_utc(renewed.expires_at) == now + LISTING_TTL

    def test_missing_listing(self, db_session, now):
        assert renew(db_session, uuid.uuid4(), now) is None

    def test_owned_listing_renewed(self, db_session, make_user, now):
        user = make_user()
        listing = assemble(db_session, user, _data(), now - timedelta(days=13))
        result = renew_owned_listing(db_session, user, str(listing.id), now)
        assert result.ok is True
        assert as_utc(result.value.expires_at) == now + LISTING_TTL

    def test_other_users_listing_rejected(self, db_session, make_user, now):
        owner = make_user("15550000001")
        stranger = make_user("15550000002")
        listing = assemble(db_session, owner, _data(), now)
        result = renew_owned_listing(db_session, stranger, str(listing.id), now)
        assert result.error_code == "not_found"

    def test_draft_cannot_be_renewed(self, db_session, make_user, now):
        user = make_user()
        listing = assemble(db_session, user, _data(images=[]), now)
        assert renew_owned_listing(db_session, user, str(listing.id), now).error_code == "not_published"

    def test_garbage_id(self, db_session, make_user, now):
        assert renew_owned_listing(db_session, make_user(), "abc123", now).error_code == "invalid_id"
