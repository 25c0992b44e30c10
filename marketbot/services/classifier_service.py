"""Category and condition classification for listing titles.

Two strategies share the `Classifier` interface: an LLM-backed classifier and a
deterministic keyword scorer. `FallbackClassifier` chains them explicitly so an
unavailable model never blocks a seller.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from marketbot.config import settings
from marketbot.logging_config import get_logger
from marketbot.services.llm import LLMProvider, OpenAIProvider, system_and_user

logger = get_logger("classifier")

CATEGORIES = (
    "Electronics",
    "Textbooks",
    "Furniture",
    "Clothing",
    "Sports & Recreation",
    "Home & Garden",
    "Transportation",
    "Services",
    "Food & Beverages",
    "Beauty & Personal Care",
    "Art & Crafts",
    "Music & Instruments",
    "Pet Supplies",
    "Office & School Supplies",
    "Health & Wellness",
    "Party & Events",
    "Storage & Organization",
    "Seasonal Items",
    "Other",
)

CONDITIONS = ("New", "Like New", "Good", "Fair", "Poor")

DEFAULT_CATEGORY = "Other"
DEFAULT_CONDITION = "Good"

MIN_KEYWORD_CONFIDENCE = 30
MAX_KEYWORD_CONFIDENCE = 90

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Electronics": (
        "iphone", "phone", "smartphone", "android", "samsung", "pixel", "tablet", "ipad",
        "laptop", "computer", "macbook", "desktop", "monitor", "webcam", "charger", "adapter",
        "headphones", "earbuds", "airpods", "speaker", "bluetooth", "television",
        "camera", "gopro", "tripod", "xbox", "playstation", "ps5", "nintendo", "console",
        "controller", "oculus", "air fryer", "airfryer", "blender", "microwave", "toaster",
        "coffee maker", "keurig", "rice cooker", "instant pot", "kettle", "printer", "router",
        "smart watch", "apple watch", "fitbit", "drone", "projector", "kindle",
    ),
    "Textbooks": (
        "textbook", "book", "edition", "isbn", "study guide", "lab manual", "calculus",
        "chemistry", "physics", "biology", "psychology", "economics", "accounting",
        "statistics", "algebra", "anatomy", "organic chem",
    ),
    "Furniture": (
        "chair", "couch", "sofa", "loveseat", "futon", "desk", "table", "nightstand",
        "mattress", "bed frame", "headboard", "dresser", "wardrobe", "bookshelf", "shelf",
        "cabinet", "tv stand", "bean bag", "stool", "ottoman",
    ),
    "Clothing": (
        "shirt", "t-shirt", "blouse", "sweater", "hoodie", "sweatshirt", "cardigan", "jacket",
        "coat", "blazer", "pants", "jeans", "shorts", "skirt", "dress", "leggings", "joggers",
        "shoes", "sneakers", "boots", "sandals", "heels", "nike", "adidas", "converse",
        "jordans", "beanie", "scarf", "backpack", "purse", "wallet", "jewelry", "necklace",
        "bracelet",
    ),
    "Sports & Recreation": (
        "dumbbell", "barbell", "kettlebell", "weights", "resistance bands", "yoga mat",
        "treadmill", "basketball", "football", "soccer", "tennis", "racket", "golf",
        "baseball", "helmet", "cleats", "camping", "tent", "sleeping bag", "hiking",
        "fishing", "skateboard", "longboard", "roller blades", "cooler",
    ),
    "Home & Garden": (
        "lamp", "string lights", "fairy lights", "candle", "mirror", "picture frame",
        "wall art", "poster", "tapestry", "rug", "curtains", "pillow", "cushion", "blanket",
        "comforter", "duvet", "dishes", "plates", "bowls", "mugs", "utensils", "cookware",
        "pots", "pans", "cutting board", "plant", "succulent", "planter", "vase",
    ),
    "Transportation": (
        "car", "vehicle", "truck", "sedan", "honda", "toyota", "bike", "bicycle", "e-bike",
        "scooter", "moped", "motorcycle", "tires", "parking pass",
    ),
    "Services": (
        "tutoring", "tutor", "lessons", "cleaning service", "moving help", "delivery",
        "repair", "photography", "photoshoot", "graphic design", "haircut",
    ),
    "Food & Beverages": (
        "food", "snacks", "coffee beans", "energy drink", "protein bars", "meal prep",
        "dining plan", "meal swipes", "gift card",
    ),
    "Beauty & Personal Care": (
        "makeup", "cosmetics", "skincare", "perfume", "cologne", "lotion", "shampoo",
        "hair dryer", "straightener", "curling iron", "nail polish", "lipstick", "razor",
    ),
    "Art & Crafts": (
        "art supplies", "paint", "brushes", "canvas", "sketchbook", "colored pencils",
        "markers", "yarn", "sewing machine", "fabric", "beads", "glue gun",
    ),
    "Music & Instruments": (
        "guitar", "piano", "keyboard", "drums", "violin", "ukulele", "microphone",
        "amplifier", "music stand", "sheet music", "audio interface", "midi controller",
    ),
    "Pet Supplies": (
        "pet food", "dog food", "cat food", "pet bed", "leash", "collar", "litter box",
        "aquarium", "fish tank", "bird cage", "pet carrier",
    ),
    "Office & School Supplies": (
        "pens", "pencils", "notebook", "binder", "folders", "stapler", "highlighters",
        "sticky notes", "calculator", "ti-84", "graphing calculator", "scissors",
    ),
    "Health & Wellness": (
        "vitamins", "supplements", "protein powder", "first aid", "thermometer",
        "heating pad", "essential oils", "massage gun",
    ),
    "Party & Events": (
        "decorations", "balloons", "party supplies", "costume", "halloween", "birthday",
        "graduation", "tickets", "photo booth",
    ),
    "Storage & Organization": (
        "storage bins", "containers", "organizer", "hangers", "shoe rack", "drawer dividers",
        "file cabinet", "storage boxes", "baskets", "crates",
    ),
    "Seasonal Items": (
        "winter coat", "summer gear", "holiday decorations", "christmas tree", "beach gear",
        "snow gear", "space heater", "heater", "box fan", "fan",
    ),
}

CONDITION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "New": ("brand new", "new", "sealed", "unopened", "never used", "in box", "nib"),
    "Like New": ("like new", "barely used", "mint", "excellent", "lightly used", "used once"),
    "Good": ("good", "gently used", "works great", "works fine", "used"),
    "Fair": ("fair", "some wear", "scratches", "scratched", "worn", "dent"),
    "Poor": ("poor", "broken", "damaged", "for parts", "cracked", "not working"),
}

# Lower-cased aliases mapped onto the canonical labels.
CATEGORY_SYNONYMS = {
    "electronic": "Electronics",
    "appliances": "Electronics",
    "appliance": "Electronics",
    "gaming": "Electronics",
    "tech": "Electronics",
    "books": "Textbooks",
    "book": "Textbooks",
    "textbook": "Textbooks",
    "clothes": "Clothing",
    "apparel": "Clothing",
    "sports": "Sports & Recreation",
    "sport": "Sports & Recreation",
    "home": "Home & Garden",
    "decor": "Home & Garden",
    "kitchen": "Home & Garden",
    "vehicles": "Transportation",
    "bikes": "Transportation",
    "service": "Services",
    "food": "Food & Beverages",
    "beauty": "Beauty & Personal Care",
    "art": "Art & Crafts",
    "crafts": "Art & Crafts",
    "music": "Music & Instruments",
    "instruments": "Music & Instruments",
    "pets": "Pet Supplies",
    "pet": "Pet Supplies",
    "office": "Office & School Supplies",
    "school supplies": "Office & School Supplies",
    "health": "Health & Wellness",
    "tickets": "Party & Events",
    "party": "Party & Events",
    "events": "Party & Events",
    "storage": "Storage & Organization",
    "seasonal": "Seasonal Items",
    "misc": "Other",
}

CONDITION_SYNONYMS = {
    "brand new": "New",
    "new with tags": "New",
    "sealed": "New",
    "likenew": "Like New",
    "like-new": "Like New",
    "excellent": "Like New",
    "mint": "Like New",
    "very good": "Good",
    "used": "Good",
    "ok": "Fair",
    "okay": "Fair",
    "worn": "Fair",
    "bad": "Poor",
    "broken": "Poor",
    "damaged": "Poor",
    "for parts": "Poor",
}

_CATEGORY_LOOKUP = {label.lower(): label for label in CATEGORIES}
_CATEGORY_LOOKUP.update(CATEGORY_SYNONYMS)
_CONDITION_LOOKUP = {label.lower(): label for label in CONDITIONS}
_CONDITION_LOOKUP.update(CONDITION_SYNONYMS)


def _normalize_key(value: str) -> str:
    key = " ".join(value.strip().lower().split())
    return key.replace(" and ", " & ")


def normalize_category(value: Optional[str]) -> str:
    """Map free text onto one of CATEGORIES, defaulting to Other."""
    if not value:
        return DEFAULT_CATEGORY
    return _CATEGORY_LOOKUP.get(_normalize_key(value), DEFAULT_CATEGORY)


def normalize_condition(value: Optional[str]) -> str:
    """Map free text onto one of CONDITIONS, defaulting to Good."""
    if not value:
        return DEFAULT_CONDITION
    return _CONDITION_LOOKUP.get(_normalize_key(value), DEFAULT_CONDITION)


def is_known_category(value: Optional[str]) -> bool:
    return bool(value) and _normalize_key(value) in _CATEGORY_LOOKUP


@dataclass
class Classification:
    category: str
    condition: str
    confidence: int
    source: str  # llm, keyword


class ClassificationError(Exception):
    pass


class Classifier(ABC):
    @abstractmethod
    def classify(self, text: str) -> Classification:
        pass


def _best_label(text: str, table: dict[str, tuple[str, ...]]) -> tuple[Optional[str], int]:
    """Highest keyword-length score; ties keep the earlier label."""
    best_label, best_score = None, 0
    for label, keywords in table.items():
        score = sum(len(keyword) for keyword in keywords if keyword in text)
        if score > best_score:
            best_label, best_score = label, score
    return best_label, best_score


class KeywordClassifier(Classifier):
    """Deterministic fallback: substring keyword scoring over lower-cased text."""

    def classify(self, text: str) -> Classification:
        lowered = (text or "").lower()
        category, category_score = _best_label(lowered, CATEGORY_KEYWORDS)
        condition, condition_score = _best_label(lowered, CONDITION_KEYWORDS)

        confidence = MIN_KEYWORD_CONFIDENCE + 4 * category_score + 2 * condition_score
        confidence = max(MIN_KEYWORD_CONFIDENCE, min(MAX_KEYWORD_CONFIDENCE, confidence))

        return Classification(
            category=category or DEFAULT_CATEGORY,
            condition=condition or DEFAULT_CONDITION,
            confidence=confidence,
            source="keyword",
        )


CLASSIFIER_PROMPT = """You classify items for a student marketplace.
Categories: {categories}
Conditions: {conditions}

Reply with exactly three lines and nothing else:
Category: <one category from the list>
Condition: <one condition from the list, Good if unknown>
Confidence: <integer 0-100>"""

_LINE_RE = {
    "category": re.compile(r"^\s*category\s*:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE),
    "condition": re.compile(r"^\s*condition\s*:\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE),
    "confidence": re.compile(r"^\s*confidence\s*:\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE | re.MULTILINE),
}

DEFAULT_LLM_CONFIDENCE = 50


def parse_llm_reply(content: str) -> Classification:
    """Parse the three-line model reply. Raises ClassificationError if no category line."""
    category_match = _LINE_RE["category"].search(content or "")
    if not category_match:
        raise ClassificationError(f"Unparseable classifier reply: {content!r}")

    condition_match = _LINE_RE["condition"].search(content)
    confidence_match = _LINE_RE["confidence"].search(content)

    confidence = DEFAULT_LLM_CONFIDENCE
    if confidence_match:
        confidence = int(round(float(confidence_match.group(1))))
    confidence = max(0, min(100, confidence))

    return Classification(
        category=normalize_category(category_match.group(1)),
        condition=normalize_condition(condition_match.group(1) if condition_match else None),
        confidence=confidence,
        source="llm",
    )


class LLMClassifier(Classifier):
    def __init__(self, provider: LLMProvider, model: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds

    def classify(self, text: str) -> Classification:
        prompt = CLASSIFIER_PROMPT.format(categories=", ".join(CATEGORIES), conditions=", ".join(CONDITIONS))
        messages = system_and_user(prompt, text)
        response = self.provider.generate(
            messages,
            model=self.model,
            temperature=0.1,
            max_tokens=60,
            timeout_seconds=self.timeout_seconds,
        )
        return parse_llm_reply(response.content)


class FallbackClassifier(Classifier):
    """Ask the primary classifier; on any failure answer from the fallback."""

    def __init__(self, primary: Classifier, fallback: Classifier):
        self.primary = primary
        self.fallback = fallback

    def classify(self, text: str) -> Classification:
        try:
            return self.primary.classify(text)
        except Exception as e:
            logger.warning(
                "Primary classifier failed, using fallback",
                extra={"context": {"error": str(e), "error_type": type(e).__name__}},
            )
            return self.fallback.classify(text)


def get_classifier() -> Classifier:
    if settings.openai_api_key:
        provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.classifier_model,
            timeout_seconds=settings.classifier_timeout_seconds,
        )
        return FallbackClassifier(LLMClassifier(provider), KeywordClassifier())
    return KeywordClassifier()
