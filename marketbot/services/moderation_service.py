"""Banned-content checks for listing titles and buy requests.

Case-insensitive substring scan for banned keywords, then regexes for scheme
phrasing. No I/O. The first matching category wins. Keywords are long enough
not to hit ordinary words ("burgundy", "something", "hammock").
"""

import re
from dataclasses import dataclass
from typing import Optional

from marketbot.config import settings

# Order matters: the first category with a matching keyword is reported.
BANNED_KEYWORDS: dict[str, tuple[str, ...]] = {
    "weapons": (
        "firearm",
        "handgun",
        "shotgun",
        "pistol",
        "rifle",
        "ammunition",
        "weapon",
        "sword",
        "explosive",
        "taser",
        "pepper spray",
    ),
    "drugs": (
        "weed",
        "marijuana",
        "cocaine",
        "heroin",
        "methamphetamine",
        "pills",
        "adderall",
        "xanax",
        "prescription",
        "drugs",
    ),
    "alcohol": ("alcohol", "beer", "wine", "vodka", "whiskey", "liquor", "tequila"),
    "animals": ("puppy", "puppies", "kitten", "live animal", "pet sale", "reptile for sale"),
    "adult": ("escort", "adult services", "porn", "sexual"),
    "academic_dishonesty": (
        "essay writing",
        "homework help",
        "do your homework",
        "test answers",
        "exam answers",
        "take your exam",
        "cheat sheet for",
    ),
    "counterfeit": ("counterfeit", "replica", "knock off", "knockoff", "stolen", "fake id"),
}

SCHEME_PATTERNS = [
    re.compile(r"\b(quick|fast|easy)\s+(money|cash|profit)\b", re.IGNORECASE),
    re.compile(r"\b(work\s+from\s+home|make\s+money|get\s+rich)\b", re.IGNORECASE),
    re.compile(r"\b(mlm|pyramid|ponzi)\b", re.IGNORECASE),
    re.compile(r"\b(crypto|bitcoin)\s+(investment|opportunity|signals)\b", re.IGNORECASE),
]

SCHEME_CATEGORY = "scheme"

CATEGORY_MESSAGES = {
    "weapons": "🚫 Weapons and dangerous items aren't allowed on {name}. Stay safe!",
    "drugs": "🚫 Prescription drugs and controlled substances aren't allowed on {name}.",
    "alcohol": "🚫 Alcohol sales aren't permitted on {name}.",
    "animals": "🚫 Pet sales aren't allowed. Check with local shelters for adoption!",
    "adult": "🚫 Adult services aren't permitted. Keep it campus-appropriate!",
    "academic_dishonesty": "🚫 Academic integrity matters! Homework and exam help can't be sold here.",
    "counterfeit": "🚫 We don't allow stolen or counterfeit items. Keep it legal!",
    SCHEME_CATEGORY: "🚫 This looks like a business opportunity or scheme, which isn't allowed on {name}.",
}

GENERIC_MESSAGE = "🚫 This item isn't allowed on {name}. Please review our community guidelines."


@dataclass
class ModerationResult:
    allowed: bool
    reason: Optional[str] = None
    category: Optional[str] = None


def moderation_message(category: Optional[str]) -> str:
    template = CATEGORY_MESSAGES.get(category or "", GENERIC_MESSAGE)
    return template.format(name=settings.marketplace_name)


def moderate(title: str, description: Optional[str] = None) -> ModerationResult:
    """Scan title and description for banned items, then for scheme phrasing."""
    content = f"{title or ''} {description or ''}".lower()

    for category, keywords in BANNED_KEYWORDS.items():
        for keyword in keywords:
            if keyword in content:
                return ModerationResult(allowed=False, reason=moderation_message(category), category=category)

    for pattern in SCHEME_PATTERNS:
        if pattern.search(content):
            return ModerationResult(
                allowed=False,
                reason=moderation_message(SCHEME_CATEGORY),
                category=SCHEME_CATEGORY,
            )

    return ModerationResult(allowed=True)
