"""One handler per conversation state.

A handler reads the current payload and the inbound message and returns a
`Transition`; it never writes conversation state itself. Persistence side
effects are limited to listings, subscriptions and the user's trust counters.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from marketbot.config import settings
from marketbot.logging_config import get_logger
from marketbot.models import Listing, User
from marketbot.schemas.conversation import MAX_LISTING_IMAGES, ConversationData, Intent
from marketbot.services.classifier_service import (
    CATEGORIES,
    Classifier,
    is_known_category,
    normalize_category,
    normalize_condition,
)
from marketbot.services.listing_service import (
    LISTING_TTL,
    STATUS_PUBLISHED,
    assemble,
    listing_url,
    parse_price,
    renew_owned_listing,
)
from marketbot.services.moderation_service import moderate
from marketbot.services.rate_policy import check_listing_rate_limit, rate_limit_message, record_spam_attempt
from marketbot.services.state_machine import ConversationState, first_step
from marketbot.services.subscription_service import (
    OutboundMessage,
    build_match_notifications,
    create_buy_request,
    create_subscription,
    parse_price_range,
)

logger = get_logger("flow")

S = ConversationState

MSG_WELCOME = (
    "👋 Welcome to {name}!\n\n"
    "I help students buy and sell items safely on campus.\n\n"
    "To get started, I need your consent to:\n"
    "• Store your user information\n"
    "• Send you listing notifications\n"
    "• Connect you with other students\n\n"
    'Reply "YES" to continue or "NO" to stop.'
)
MSG_CONSENT_GIVEN = (
    "🎉 Perfect! You're all set up!\n\n"
    "What would you like to do today?\n\n"
    "🛒 BUY - Search for items or set up alerts\n"
    "🏷️ SELL - List an item for sale\n\n"
    'Just reply "BUY" or "SELL" to get started!'
)
MSG_CONSENT_DECLINED = "No problem! Feel free to message me anytime if you change your mind.\n\nHave a great day!"
MSG_CONSENT_REPROMPT = 'Please reply "YES" to continue or "NO" to stop.'
MSG_INTENT_REPROMPT = 'Please reply "BUY" if you\'re looking to purchase something, or "SELL" if you want to list an item.'
MSG_MENU = (
    "Hi again! What would you like to do?\n\n"
    '🛒 Say "BUY" to search for items\n'
    '🏷️ Say "SELL" to list something\n'
    '📋 Say "HELP" for more options'
)
MSG_HELP = (
    "🤖 {name} Bot Commands:\n\n"
    '🛒 "BUY" - Search for items or set up alerts\n'
    '🏷️ "SELL" - List an item for sale\n'
    '🔁 "RESTART" - Start the current flow over\n'
    '♻️ "RENEW <listing-id>" - Extend a listing for 14 more days\n'
    '📋 "HELP" - Show this menu\n\n'
    "What would you like to do?"
)

MSG_BUY_ITEM_PROMPT = 'What are you looking to buy?\n\nJust tell me the item name (e.g., "iPhone 13", "calculus textbook", "bike"):'
MSG_BUY_PRICE_PROMPT = (
    'Got it! Looking for "{item}"\n\n'
    'What\'s your budget? (optional - just say "skip")\n\n'
    'Examples: "50-100", "under 200", "skip"'
)
MSG_BUY_PRICE_REPROMPT = 'I couldn\'t read that budget. Try "50-100", "under 200", "over 20", or "skip":'
MSG_BUY_CONFIRM_PROMPT = (
    "Perfect! I'll notify you when someone posts:\n"
    "📦 {item}{range_line}\n\n"
    'Reply "CONFIRM" to set up alerts, or "POST REQUEST" to post a buy request that sellers can see.'
)
MSG_BUY_CONFIRM_REPROMPT = 'Reply "CONFIRM" for alerts or "POST REQUEST" to let sellers know you\'re buying.'
MSG_ALERT_CREATED = "✅ Alert set up! I'll message you when matching items are posted.\n\nWant to do anything else? Just say \"BUY\" or \"SELL\""
MSG_REQUEST_POSTED = (
    '📢 Buy request posted! Sellers can now see you\'re looking for "{item}"\n\n'
    'Want to do anything else? Just say "BUY" or "SELL"'
)

MSG_SELL_ITEM_PROMPT = "What are you selling?\n\nPlease tell me the item name:"
MSG_BLOCKED_ITEM = "Sorry, I can't help with that item. {reason}\n\nPlease try a different item:"
MSG_SELL_PRICE_PROMPT = 'Great! Now what\'s your asking price for "{item}"?\n\nPlease enter a number (e.g., "50", "125.99"):'
MSG_SELL_PRICE_REPROMPT = 'That doesn\'t look like a valid price. Please enter just the number (e.g., "50", "125.99"):'
MSG_SELL_IMAGE_PROMPT = "Perfect! ${price} for {item}\n\nNow I need at least one photo. Please send me a clear image of your item:"
MSG_SELL_IMAGE_REPROMPT = 'I need a photo to create your listing. Please send me an image of "{item}":'
MSG_CATEGORY_CONFIRM_PROMPT = (
    "📸 Photo received!\n\n"
    "I think this is: {category} - {condition}\n\n"
    'Is this correct? Reply "YES" or tell me the right one (e.g., "Furniture - Like New"):'
)
MSG_CATEGORY_REPROMPT = (
    "I don't know that category. Try one of: {categories}\n\n"
    'Reply "YES" to keep {category} - {condition}:'
)
MSG_MEETING_SPOT_PROMPT = 'Got it! Where would you like to meet buyers?\n\nOr just say "skip" if you\'ll decide later:'
MSG_EXTERNAL_LINK_PROMPT = 'Any external links? (Facebook Marketplace, Amazon, etc.)\n\nSend the link or say "skip":'
MSG_PHOTO_ADDED = "📸 Added another photo ({count}/{max})."
MSG_LISTING_LIVE = (
    "🎉 Your listing is live!\n\n"
    "📦 {title} - ${price:.2f}\n"
    "🔗 {url}\n\n"
    "Your listing expires in {days} days. Reply \"RENEW {id}\" any time to extend it.\n\n"
    'Want to list something else? Just say "SELL"'
)
MSG_LISTING_DRAFT = "📝 Saved \"{title}\" as a draft. It needs a title, a price and a photo before it can go live."
MSG_RENEW_USAGE = 'To renew a listing, reply "RENEW <listing-id>".'
MSG_RENEWED = '✅ Your "{title}" listing has been renewed for another 14 days!\n\n📅 New expiry date: {expires}'

YES_WORDS = frozenset({"yes", "y", "yeah", "yep", "ok", "okay", "correct"})
NO_WORDS = frozenset({"no", "n", "nope", "stop"})
SKIP_WORDS = frozenset({"skip", "none", "no", "n/a"})
BUY_WORDS = frozenset({"buy", "buying"})
SELL_WORDS = frozenset({"sell", "selling"})
CONFIRM_WORDS = frozenset({"confirm", "alert", "alerts"})
POST_WORDS = frozenset({"post request", "post", "request"})


@dataclass
class Transition:
    state: ConversationState
    updates: dict[str, Any] = field(default_factory=dict)
    reply: str = ""
    reset: bool = False  # clear the payload before applying updates


@dataclass
class DispatchContext:
    db: Session
    user: User
    now: datetime
    classifier: Classifier
    notifications: list[OutboundMessage] = field(default_factory=list)


Handler = Callable[[DispatchContext, ConversationData, str, Optional[str]], Transition]


def normalize_text(text: Optional[str]) -> str:
    return " ".join((text or "").strip().lower().split())


def _fmt(template: str, **kwargs) -> str:
    return template.format(name=settings.marketplace_name, **kwargs)


def stay(state: ConversationState, reply: str) -> Transition:
    return Transition(state=state, reply=reply)


def finish(reply: str) -> Transition:
    return Transition(state=S.VERIFIED, reply=reply, reset=True)


def start_intent(intent: Intent) -> Transition:
    prompt = MSG_BUY_ITEM_PROMPT if intent == Intent.BUYING else MSG_SELL_ITEM_PROMPT
    return Transition(state=first_step(intent), updates={"intent": intent}, reply=prompt, reset=True)


def help_menu() -> str:
    return _fmt(MSG_HELP)


# Onboarding


def handle_initial(ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]) -> Transition:
    return Transition(state=S.AWAITING_CONSENT, reply=_fmt(MSG_WELCOME))


def handle_consent(ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]) -> Transition:
    answer = normalize_text(text)
    if answer in YES_WORDS:
        ctx.user.consented_at = ctx.now
        logger.info("User consented", extra={"context": {"address": ctx.user.address}})
        return Transition(state=S.AWAITING_INTENT, reply=MSG_CONSENT_GIVEN)
    if answer in NO_WORDS:
        return stay(S.AWAITING_CONSENT, MSG_CONSENT_DECLINED)
    return stay(S.AWAITING_CONSENT, MSG_CONSENT_REPROMPT)


# Idle


def handle_renew_command(ctx: DispatchContext, text: str) -> Transition:
    parts = text.strip().split()
    if len(parts) < 2:
        return finish(MSG_RENEW_USAGE)

    result = renew_owned_listing(ctx.db, ctx.user, parts[1], ctx.now)
    if not result.ok:
        return finish(f"Sorry! {result.error}")
    listing = result.value
    return finish(MSG_RENEWED.format(title=listing.title, expires=listing.expires_at.strftime("%b %d, %Y")))


def _handle_idle(state: ConversationState, ctx: DispatchContext, text: str) -> Transition:
    command = normalize_text(text)
    if command in BUY_WORDS:
        return start_intent(Intent.BUYING)
    if command in SELL_WORDS:
        return start_intent(Intent.SELLING)
    if command.split()[:1] == ["renew"]:
        return handle_renew_command(ctx, text)
    if state == S.AWAITING_INTENT:
        return stay(S.AWAITING_INTENT, MSG_INTENT_REPROMPT)
    return stay(S.VERIFIED, MSG_MENU)


def handle_awaiting_intent(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    return _handle_idle(S.AWAITING_INTENT, ctx, text)


def handle_verified(ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]) -> Transition:
    return _handle_idle(S.VERIFIED, ctx, text)


# Shared item-name step


def _check_item_name(ctx: DispatchContext, state: ConversationState, text: str, prompt: str) -> Optional[Transition]:
    """Re-prompt on empty input; block and count a spam attempt on banned content."""
    item = text.strip()
    if not item:
        return stay(state, prompt)

    result = moderate(item)
    if not result.allowed:
        record_spam_attempt(ctx.db, ctx.user, result.category or "banned_content", ctx.now)
        return stay(state, MSG_BLOCKED_ITEM.format(reason=result.reason))
    return None


# Buying branch


def handle_buying_item_name(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    rejected = _check_item_name(ctx, S.BUYING_ITEM_NAME, text, MSG_BUY_ITEM_PROMPT)
    if rejected:
        return rejected
    item = text.strip()
    return Transition(
        state=S.BUYING_PRICE_RANGE,
        updates={"item_name": item},
        reply=MSG_BUY_PRICE_PROMPT.format(item=item),
    )


def handle_buying_price_range(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    answer = normalize_text(text)
    price_range = None
    if answer not in SKIP_WORDS:
        if parse_price_range(answer) is None:
            return stay(S.BUYING_PRICE_RANGE, MSG_BUY_PRICE_REPROMPT)
        price_range = text.strip()

    range_line = f"\n💰 {price_range}" if price_range else ""
    return Transition(
        state=S.BUYING_CONFIRM_SUBSCRIPTION,
        updates={"price_range": price_range},
        reply=MSG_BUY_CONFIRM_PROMPT.format(item=data.item_name, range_line=range_line),
    )


def handle_buying_confirm(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    answer = normalize_text(text)
    if answer in CONFIRM_WORDS:
        result = create_subscription(ctx.db, ctx.user, data.item_name, data.price_range, ctx.now)
        return finish(result.reply(MSG_ALERT_CREATED))
    if answer in POST_WORDS:
        result = create_buy_request(ctx.db, ctx.user, data.item_name, data.price_range, ctx.now)
        return finish(result.reply(MSG_REQUEST_POSTED.format(item=data.item_name)))
    return stay(S.BUYING_CONFIRM_SUBSCRIPTION, MSG_BUY_CONFIRM_REPROMPT)


# Selling branch


def handle_selling_item_name(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    rejected = _check_item_name(ctx, S.SELLING_ITEM_NAME, text, MSG_SELL_ITEM_PROMPT)
    if rejected:
        return rejected
    item = text.strip()
    return Transition(
        state=S.SELLING_PRICE,
        updates={"item_name": item},
        reply=MSG_SELL_PRICE_PROMPT.format(item=item),
    )


def handle_selling_price(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    price = parse_price(text)
    if price is None:
        return stay(S.SELLING_PRICE, MSG_SELL_PRICE_REPROMPT)
    return Transition(
        state=S.SELLING_IMAGE,
        updates={"price": price},
        reply=MSG_SELL_IMAGE_PROMPT.format(price=f"{price:.2f}", item=data.item_name),
    )


def handle_selling_image(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    if not attachment:
        return stay(S.SELLING_IMAGE, MSG_SELL_IMAGE_REPROMPT.format(item=data.item_name))

    classification = ctx.classifier.classify(data.item_name)
    logger.info(
        "Item classified",
        extra={
            "context": {
                "address": ctx.user.address,
                "category": classification.category,
                "condition": classification.condition,
                "confidence": classification.confidence,
                "source": classification.source,
            }
        },
    )
    return Transition(
        state=S.SELLING_CATEGORY_CONFIRM,
        updates={
            "images": [attachment],
            "category": classification.category,
            "condition": classification.condition,
            "confidence": classification.confidence,
        },
        reply=MSG_CATEGORY_CONFIRM_PROMPT.format(
            category=classification.category, condition=classification.condition
        ),
    )


def parse_category_correction(text: str) -> Optional[tuple[str, Optional[str]]]:
    """Read "Category - Condition" or a bare category. None if the category is unknown."""
    parts = [part.strip() for part in text.split(" - " if " - " in text else "-", 1)]
    if len(parts) == 2 and is_known_category(parts[0]):
        return normalize_category(parts[0]), normalize_condition(parts[1])
    if is_known_category(text):
        return normalize_category(text), None
    return None


def handle_selling_category_confirm(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    answer = normalize_text(text)
    if answer in YES_WORDS:
        return Transition(state=S.SELLING_MEETING_SPOT, reply=MSG_MEETING_SPOT_PROMPT)

    correction = parse_category_correction(text.strip())
    if correction is None:
        return stay(
            S.SELLING_CATEGORY_CONFIRM,
            MSG_CATEGORY_REPROMPT.format(
                categories=", ".join(CATEGORIES), category=data.category, condition=data.condition
            ),
        )

    category, condition = correction
    return Transition(
        state=S.SELLING_MEETING_SPOT,
        updates={"category": category, "condition": condition},
        reply=MSG_MEETING_SPOT_PROMPT,
    )


def handle_selling_meeting_spot(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    answer = normalize_text(text)
    if not answer:
        return stay(S.SELLING_MEETING_SPOT, MSG_MEETING_SPOT_PROMPT)
    meeting_spot = None if answer in SKIP_WORDS else text.strip()
    return Transition(
        state=S.SELLING_EXTERNAL_LINK,
        updates={"meeting_spot": meeting_spot},
        reply=MSG_EXTERNAL_LINK_PROMPT,
    )


def _notify_subscribers(ctx: DispatchContext) -> Callable[[Listing], None]:
    def on_published(listing: Listing) -> None:
        ctx.notifications.extend(build_match_notifications(ctx.db, listing, ctx.now))

    return on_published


def handle_selling_external_link(
    ctx: DispatchContext, data: ConversationData, text: str, attachment: Optional[str]
) -> Transition:
    answer = normalize_text(text)
    if not answer:
        return stay(S.SELLING_EXTERNAL_LINK, MSG_EXTERNAL_LINK_PROMPT)
    external_link = None if answer in SKIP_WORDS else text.strip()

    limit = check_listing_rate_limit(ctx.db, ctx.user, ctx.now)
    if not limit.allowed:
        return finish(rate_limit_message(limit))

    listing = assemble(
        ctx.db,
        ctx.user,
        data.merged({"external_link": external_link}),
        ctx.now,
        on_published=_notify_subscribers(ctx),
    )
    if listing.status != STATUS_PUBLISHED:
        return finish(MSG_LISTING_DRAFT.format(title=listing.title))

    return finish(
        MSG_LISTING_LIVE.format(
            title=listing.title,
            price=listing.price,
            url=listing_url(listing),
            days=LISTING_TTL.days,
            id=listing.id,
        )
    )


def photo_added(state: ConversationState, data: ConversationData, attachment: str) -> Transition:
    count = len(data.merged({"images": [attachment]}).images)
    return Transition(
        state=state,
        updates={"images": [attachment]},
        reply=MSG_PHOTO_ADDED.format(count=count, max=MAX_LISTING_IMAGES),
    )


HANDLERS: dict[ConversationState, Handler] = {
    S.INITIAL: handle_initial,
    S.AWAITING_CONSENT: handle_consent,
    S.AWAITING_INTENT: handle_awaiting_intent,
    S.VERIFIED: handle_verified,
    S.BUYING_ITEM_NAME: handle_buying_item_name,
    S.BUYING_PRICE_RANGE: handle_buying_price_range,
    S.BUYING_CONFIRM_SUBSCRIPTION: handle_buying_confirm,
    S.SELLING_ITEM_NAME: handle_selling_item_name,
    S.SELLING_PRICE: handle_selling_price,
    S.SELLING_IMAGE: handle_selling_image,
    S.SELLING_CATEGORY_CONFIRM: handle_selling_category_confirm,
    S.SELLING_MEETING_SPOT: handle_selling_meeting_spot,
    S.SELLING_EXTERNAL_LINK: handle_selling_external_link,
}
