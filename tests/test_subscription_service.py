from datetime import timedelta

import pytest

from marketbot.models import Listing, Subscription
from marketbot.models.column_types import as_utc
from marketbot.services.subscription_service import (
    KIND_ALERT,
    KIND_BUY_REQUEST,
    build_match_notifications,
    create_buy_request,
    create_subscription,
    extract_keywords,
    find_matching_subscriptions,
    parse_price_range,
    price_in_range,
)


def _listing(db_session, seller, now, title="iPhone 13 Pro", price=450.0, category="Electronics"):
    listing = Listing(
        user_id=seller.id,
        title=title,
        price=price,
        category=category,
        condition="Good",
        images=["https://img/1.jpg"],
        status="PUBLISHED",
        created_at=now,
        published_at=now,
        expires_at=now + timedelta(days=14),
    )
    db_session.add(listing)
    db_session.flush()
    return listing


class TestParsePriceRange:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("under 200", (None, 200.0)),
            ("under $1,000", (None, 1000.0)),
            ("over 20", (20.0, None)),
            ("20+", (20.0, None)),
            ("50-100", (50.0, 100.0)),
            ("$100 - $50", (50.0, 100.0)),
            ("50 to 100", (50.0, 100.0)),
            ("75", (None, 75.0)),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_price_range(raw) == expected

    @pytest.mark.parametrize("raw", ["cheap", "", None, "around fifty"])
    def test_unreadable(self, raw):
        assert parse_price_range(raw) is None


class TestPriceInRange:
    def test_bounds_inclusive(self):
        assert price_in_range("50-100", 50.0)
        assert price_in_range("50-100", 100.0)
        assert not price_in_range("50-100", 100.01)

    def test_no_range_matches_everything(self):
        assert price_in_range(None, 9999.0)


class TestExtractKeywords:
    def test_short_words_and_punctuation_dropped(self):
        assert extract_keywords("An iPhone, 13 Pro!") == {"iphone", "pro"}


class TestCreateSubscription:
    def test_alert_expires_in_90_days(self, db_session, make_user, now):
        result = create_subscription(db_session, make_user(), "iPhone", "under 500", now)
        assert result.ok is True
        assert result.value.kind == KIND_ALERT
        assert result.value.category == "Electronics"
        assert as_utc(result.value.expires_at) == now + timedelta(days=90)

    def test_buy_request_expires_in_30_days(self, db_session, make_user, now):
        result = create_buy_request(db_session, make_user(), "desk", None, now)
        assert result.value.kind == KIND_BUY_REQUEST
        assert as_utc(result.value.expires_at) == now + timedelta(days=30)

    def test_shadow_banned_refused(self, db_session, make_user, now):
        result = create_subscription(db_session, make_user(trust_level="SHADOW_BANNED"), "iPhone", None, now)
        assert result.ok is False
        assert result.error_code == "active_limit"
        assert db_session.query(Subscription).count() == 0

    def test_limit_counts_active_subscriptions(self, db_session, make_user, now):
        user = make_user()
        for i in range(10):
            assert create_subscription(db_session, user, f"item {i}", None, now).ok
        assert create_subscription(db_session, user, "one more", None, now).ok is False


class TestMatching:
    def test_matches_keyword_category_and_price(self, db_session, make_user, now):
        seller = make_user("15550000001")
        buyer = make_user("15550000002")
        create_subscription(db_session, buyer, "iphone", "under 500", now)
        listing = _listing(db_session, seller, now)

        matches = find_matching_subscriptions(db_session, listing, now)
        assert [m.user_id for m in matches] == [buyer.id]

    def test_price_out_of_range(self, db_session, make_user, now):
        seller = make_user("15550000001")
        create_subscription(db_session, make_user("15550000002"), "iphone", "under 300", now)
        assert find_matching_subscriptions(db_session, _listing(db_session, seller, now), now) == []

    def test_seller_not_notified_of_own_listing(self, db_session, make_user, now):
        seller = make_user("15550000001")
        create_subscription(db_session, seller, "iphone", None, now)
        assert find_matching_subscriptions(db_session, _listing(db_session, seller, now), now) == []

    def test_expired_subscription_ignored(self, db_session, make_user, now):
        seller = make_user("15550000001")
        create_subscription(db_session, make_user("15550000002"), "iphone", None, now - timedelta(days=91))
        assert find_matching_subscriptions(db_session, _listing(db_session, seller, now), now) == []

    def test_category_mismatch(self, db_session, make_user, now):
        seller = make_user("15550000001")
        create_subscription(db_session, make_user("15550000002"), "iphone", None, now)
        listing = _listing(db_session, seller, now, category="Clothing")
        assert find_matching_subscriptions(db_session, listing, now) == []

    def test_notifications_addressed_to_subscribers(self, db_session, make_user, now):
        seller = make_user("15550000001")
        buyer = make_user("15550000002")
        subscription = create_subscription(db_session, buyer, "iphone", None, now).value

        messages = build_match_notifications(db_session, _listing(db_session, seller, now), now)

        assert len(messages) == 1
        assert messages[0].to == "15550000002"
        assert "iPhone 13 Pro" in messages[0].text
        assert "$450.00" in messages[0].text
        assert subscription.last_notified_at == now
