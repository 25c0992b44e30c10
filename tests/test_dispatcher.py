from datetime import timedelta
from unittest.mock import patch

import pytest

from marketbot.models import Listing, Subscription
from marketbot.schemas.conversation import ConversationData, Intent
from marketbot.services.dispatcher import MSG_RESTARTED, apply_transition, dispatch
from marketbot.services.flow_handlers import (
    HANDLERS,
    MSG_CONSENT_DECLINED,
    MSG_CONSENT_GIVEN,
    MSG_MENU,
    DispatchContext,
    Transition,
    parse_category_correction,
)
from marketbot.services.listing_service import assemble
from marketbot.services.state_machine import ConversationState, InvalidTransitionError
from marketbot.services.subscription_service import create_subscription

S = ConversationState


def _selling(**overrides):
    values = {
        "intent": Intent.SELLING,
        "item_name": "IKEA desk",
        "price": 60.0,
        "images": ["https://img/1.jpg"],
        "category": "Furniture",
        "condition": "Good",
        "confidence": 40,
    }
    values.update(overrides)
    return ConversationData(**values)


@pytest.fixture
def ctx_for(db_session, now, classifier):
    def _ctx(user):
        return DispatchContext(db=db_session, user=user, now=now, classifier=classifier)

    return _ctx


def _step(ctx, state, data, message, attachment=None):
    result = dispatch(ctx, state, data, message, attachment)
    return result, apply_transition(data, result)


class TestOnboarding:
    def test_first_message_gets_welcome(self, make_user, ctx_for):
        ctx = ctx_for(make_user(conversation_state="INITIAL", consented_at=None))
        result, _ = _step(ctx, S.INITIAL, ConversationData(), "hi")
        assert result.state == S.AWAITING_CONSENT
        assert "Welcome to GatorEx" in result.reply

    def test_consent_yes(self, make_user, ctx_for, now):
        user = make_user(conversation_state="AWAITING_CONSENT", consented_at=None)
        result, _ = _step(ctx_for(user), S.AWAITING_CONSENT, ConversationData(), "Yes")
        assert result.state == S.AWAITING_INTENT
        assert result.reply == MSG_CONSENT_GIVEN
        assert user.consented_at == now

    def test_consent_no_stays(self, make_user, ctx_for):
        user = make_user(conversation_state="AWAITING_CONSENT", consented_at=None)
        result, _ = _step(ctx_for(user), S.AWAITING_CONSENT, ConversationData(), "no")
        assert result.state == S.AWAITING_CONSENT
        assert result.reply == MSG_CONSENT_DECLINED
        assert user.consented_at is None

    def test_help_not_global_during_onboarding(self, make_user, ctx_for):
        user = make_user(conversation_state="AWAITING_CONSENT", consented_at=None)
        result, _ = _step(ctx_for(user), S.AWAITING_CONSENT, ConversationData(), "help")
        assert result.state == S.AWAITING_CONSENT
        assert "YES" in result.reply


class TestIdle:
    def test_sell_starts_selling_flow(self, make_user, ctx_for):
        result, data = _step(ctx_for(make_user()), S.VERIFIED, ConversationData(), "SELL")
        assert result.state == S.SELLING_ITEM_NAME
        assert data == ConversationData(intent=Intent.SELLING)

    def test_buy_from_awaiting_intent(self, make_user, ctx_for):
        result, data = _step(ctx_for(make_user()), S.AWAITING_INTENT, ConversationData(), "buy")
        assert result.state == S.BUYING_ITEM_NAME
        assert data.intent == Intent.BUYING

    def test_unrecognized_shows_menu(self, make_user, ctx_for):
        result, _ = _step(ctx_for(make_user()), S.VERIFIED, ConversationData(), "hello?")
        assert (result.state, result.reply) == (S.VERIFIED, MSG_MENU)

    def test_renew_command(self, db_session, make_user, ctx_for, now):
        user = make_user()
        listing = assemble(db_session, user, _selling(), now - timedelta(days=13))

        result, _ = _step(ctx_for(user), S.VERIFIED, ConversationData(), f"RENEW {listing.id}")

        assert result.state == S.VERIFIED
        assert "renewed" in result.reply
        assert listing.expires_at == now + timedelta(days=14)

    def test_renew_without_id(self, make_user, ctx_for):
        result, _ = _step(ctx_for(make_user()), S.VERIFIED, ConversationData(), "renew")
        assert "RENEW <listing-id>" in result.reply

    @pytest.mark.parametrize("text", ["renewable lamp", "renewal?"])
    def test_words_starting_with_renew_show_menu(self, make_user, ctx_for, text):
        result, _ = _step(ctx_for(make_user()), S.VERIFIED, ConversationData(), text)
        assert (result.state, result.reply) == (S.VERIFIED, MSG_MENU)


class TestGlobalCommands:
    def test_restart_mid_flow_clears_payload(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.SELLING, item_name="Lamp")
        result, new_data = _step(ctx_for(make_user()), S.SELLING_PRICE, data, "restart")
        assert result.state == S.SELLING_ITEM_NAME
        assert result.reply.startswith(MSG_RESTARTED)
        assert new_data == ConversationData(intent=Intent.SELLING)

    def test_start_over_in_buying(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.BUYING, item_name="bike", price_range="under 100")
        result, new_data = _step(ctx_for(make_user()), S.BUYING_CONFIRM_SUBSCRIPTION, data, "Start Over")
        assert result.state == S.BUYING_ITEM_NAME
        assert new_data.item_name is None

    def test_restart_when_idle_shows_menu(self, make_user, ctx_for):
        result, _ = _step(ctx_for(make_user()), S.VERIFIED, ConversationData(), "restart")
        assert (result.state, result.reply) == (S.VERIFIED, MSG_MENU)

    def test_help_abandons_flow(self, make_user, ctx_for):
        result, new_data = _step(ctx_for(make_user()), S.SELLING_IMAGE, _selling(images=[]), "HELP")
        assert result.state == S.VERIFIED
        assert "Bot Commands" in result.reply
        assert new_data.is_empty()


class TestBuying:
    def test_alert_created_on_confirm(self, db_session, make_user, ctx_for):
        ctx = ctx_for(make_user())
        data = ConversationData(intent=Intent.BUYING)

        result, data = _step(ctx, S.BUYING_ITEM_NAME, data, "desk")
        assert result.state == S.BUYING_PRICE_RANGE
        result, data = _step(ctx, S.BUYING_PRICE_RANGE, data, "under 100")
        assert result.state == S.BUYING_CONFIRM_SUBSCRIPTION
        assert data.price_range == "under 100"
        result, data = _step(ctx, S.BUYING_CONFIRM_SUBSCRIPTION, data, "confirm")

        assert result.state == S.VERIFIED
        assert data.is_empty()
        subscription = db_session.query(Subscription).one()
        assert (subscription.kind, subscription.keywords, subscription.price_range) == ("ALERT", "desk", "under 100")

    def test_post_request(self, db_session, make_user, ctx_for):
        data = ConversationData(intent=Intent.BUYING, item_name="bike")
        result, _ = _step(ctx_for(make_user()), S.BUYING_CONFIRM_SUBSCRIPTION, data, "POST REQUEST")
        assert "Buy request posted" in result.reply
        assert db_session.query(Subscription).one().kind == "BUY_REQUEST"

    def test_skip_budget(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.BUYING, item_name="bike")
        result, new_data = _step(ctx_for(make_user()), S.BUYING_PRICE_RANGE, data, "skip")
        assert result.state == S.BUYING_CONFIRM_SUBSCRIPTION
        assert new_data.price_range is None

    def test_unreadable_budget_reprompts(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.BUYING, item_name="bike")
        result, _ = _step(ctx_for(make_user()), S.BUYING_PRICE_RANGE, data, "cheap please")
        assert result.state == S.BUYING_PRICE_RANGE


class TestSelling:
    def test_banned_item_blocked_and_counted(self, db_session, make_user, ctx_for):
        user = make_user()
        data = ConversationData(intent=Intent.SELLING)
        result, new_data = _step(ctx_for(user), S.SELLING_ITEM_NAME, data, "Glock handgun")
        assert result.state == S.SELLING_ITEM_NAME
        assert "Weapons" in result.reply
        assert new_data.item_name is None
        assert user.spam_attempts == 1

    def test_third_block_shadow_bans(self, make_user, ctx_for):
        user = make_user(spam_attempts=2)
        _step(ctx_for(user), S.SELLING_ITEM_NAME, ConversationData(intent=Intent.SELLING), "vodka")
        assert user.trust_level == "SHADOW_BANNED"

    def test_invalid_price_reprompts(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.SELLING, item_name="Lamp")
        result, _ = _step(ctx_for(make_user()), S.SELLING_PRICE, data, "best offer")
        assert result.state == S.SELLING_PRICE

    @pytest.mark.parametrize("text", ["0.001", "$0", "100000000"])
    def test_unstorable_price_reprompts(self, make_user, ctx_for, text):
        data = ConversationData(intent=Intent.SELLING, item_name="Lamp")
        result, new_data = _step(ctx_for(make_user()), S.SELLING_PRICE, data, text)
        assert result.state == S.SELLING_PRICE
        assert new_data.price is None

    def test_price_rounded_to_cents(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.SELLING, item_name="Lamp")
        result, new_data = _step(ctx_for(make_user()), S.SELLING_PRICE, data, "12.345")
        assert result.state == S.SELLING_IMAGE
        assert new_data.price == 12.35
        assert "$12.35" in result.reply

    def test_text_instead_of_photo_reprompts(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.SELLING, item_name="Lamp", price=20.0)
        result, _ = _step(ctx_for(make_user()), S.SELLING_IMAGE, data, "here you go")
        assert result.state == S.SELLING_IMAGE
        assert "photo" in result.reply

    def test_photo_triggers_classification(self, make_user, ctx_for):
        data = ConversationData(intent=Intent.SELLING, item_name="iPhone 13", price=450.0)
        result, new_data = _step(ctx_for(make_user()), S.SELLING_IMAGE, data, "", "https://img/1.jpg")
        assert result.state == S.SELLING_CATEGORY_CONFIRM
        assert "Electronics - Good" in result.reply
        assert new_data.images == ["https://img/1.jpg"]
        assert new_data.category == "Electronics"

    def test_category_correction(self, make_user, ctx_for):
        result, new_data = _step(
            ctx_for(make_user()), S.SELLING_CATEGORY_CONFIRM, _selling(), "Furniture - Like New"
        )
        assert result.state == S.SELLING_MEETING_SPOT
        assert (new_data.category, new_data.condition) == ("Furniture", "Like New")

    def test_unknown_category_reprompts(self, make_user, ctx_for):
        result, new_data = _step(ctx_for(make_user()), S.SELLING_CATEGORY_CONFIRM, _selling(), "Gadgets")
        assert result.state == S.SELLING_CATEGORY_CONFIRM
        assert new_data.category == "Furniture"

    def test_extra_photo_appended(self, make_user, ctx_for):
        result, new_data = _step(
            ctx_for(make_user()), S.SELLING_CATEGORY_CONFIRM, _selling(), "", "https://img/2.jpg"
        )
        assert result.state == S.SELLING_CATEGORY_CONFIRM
        assert "(2/5)" in result.reply
        assert new_data.images == ["https://img/1.jpg", "https://img/2.jpg"]

    def test_photo_with_answer_advances_and_appends(self, make_user, ctx_for):
        result, new_data = _step(
            ctx_for(make_user()), S.SELLING_MEETING_SPOT, _selling(), "Library West", "https://img/2.jpg"
        )
        assert result.state == S.SELLING_EXTERNAL_LINK
        assert new_data.meeting_spot == "Library West"
        assert len(new_data.images) == 2

    def test_photo_with_skip_caption_published_with_listing(self, db_session, make_user, ctx_for):
        result, _ = _step(
            ctx_for(make_user()), S.SELLING_EXTERNAL_LINK, _selling(), "skip", "https://img/2.jpg"
        )

        listing = db_session.query(Listing).one()
        assert result.state == S.VERIFIED
        assert listing.images == ["https://img/1.jpg", "https://img/2.jpg"]

    def test_publish(self, db_session, make_user, ctx_for, now):
        user = make_user()
        result, new_data = _step(ctx_for(user), S.SELLING_EXTERNAL_LINK, _selling(), "skip")

        listing = db_session.query(Listing).one()
        assert result.state == S.VERIFIED
        assert new_data.is_empty()
        assert listing.status == "PUBLISHED"
        assert "Your listing is live" in result.reply
        assert str(listing.id) in result.reply
        assert user.daily_listing_count == 1

    def test_publish_queues_subscriber_notifications(self, db_session, make_user, ctx_for, now):
        buyer = make_user("15550000002")
        create_subscription(db_session, buyer, "desk", None, now)
        ctx = ctx_for(make_user("15550000001"))

        _step(ctx, S.SELLING_EXTERNAL_LINK, _selling(), "https://fb.me/desk")

        assert [n.to for n in ctx.notifications] == ["15550000002"]
        assert db_session.query(Listing).one().external_link == "https://fb.me/desk"

    def test_daily_limit_blocks_publish(self, db_session, make_user, ctx_for, now):
        user = make_user(daily_listing_count=3, last_listing_date=now - timedelta(hours=2))
        result, new_data = _step(ctx_for(user), S.SELLING_EXTERNAL_LINK, _selling(), "skip")
        assert result.state == S.VERIFIED
        assert "daily limit" in result.reply
        assert new_data.is_empty()
        assert db_session.query(Listing).count() == 0

    def test_yesterdays_count_does_not_block(self, db_session, make_user, ctx_for, now):
        user = make_user(daily_listing_count=3, last_listing_date=now - timedelta(days=1))
        _step(ctx_for(user), S.SELLING_EXTERNAL_LINK, _selling(), "skip")
        assert db_session.query(Listing).count() == 1
        assert user.daily_listing_count == 1


class TestParseCategoryCorrection:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Furniture - Like New", ("Furniture", "Like New")),
            ("electronics-new", ("Electronics", "New")),
            ("Home and Garden", ("Home & Garden", None)),
            ("Gadgets - New", None),
        ],
    )
    def test_parse(self, text, expected):
        assert parse_category_correction(text) == expected


def test_every_state_has_a_handler():
    assert set(HANDLERS) == set(ConversationState)


def test_handler_returning_forbidden_state_raises(make_user, ctx_for):
    with patch.dict(HANDLERS, {S.INITIAL: lambda ctx, data, text, attachment: Transition(state=S.VERIFIED)}):
        with pytest.raises(InvalidTransitionError):
            dispatch(ctx_for(make_user()), S.INITIAL, ConversationData(), "hi")
