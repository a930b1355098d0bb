"""Yes / no / unclear classification for confirmation replies."""

import re
from enum import Enum


class Intent(str, Enum):
    YES = "yes"
    NO = "no"
    UNCLEAR = "unclear"


AFFIRMATIVE = (
    "yes", "y", "yeah", "yep", "yea", "ok", "okay", "sure",
    "go ahead", "do it", "please", "sounds good", "ow",
)
NEGATIVE = (
    "no", "n", "nah", "nope", "cancel", "skip", "never mind", "nevermind",
    "don't", "dont", "stop", "not now",
)

# A token only counts when the reply is the token, or the token followed by one of these
BOUNDARIES = (" ", ",", ".")

# An explicit negation anywhere overrides a polite opener ("please don't")
NEGATION = re.compile(r"\b(don'?t|do not|not now)\b")


def _matches(text: str, tokens) -> bool:
    for token in tokens:
        if text == token:
            return True
        if any(text.startswith(token + mark) for mark in BOUNDARIES):
            return True
    return False


def classify_confirmation(text) -> Intent:
    """
    Classify a free-text reply to "want me to categorize these?".

    Examples:
        "Yes please"      → Intent.YES
        "ok, sounds good" → Intent.YES
        "nah, skip it"    → Intent.NO
        "please don't"    → Intent.NO
        "maybe later"     → Intent.UNCLEAR
    """
    if not isinstance(text, str):
        return Intent.UNCLEAR

    lowered = text.strip().lower()
    if not lowered:
        return Intent.UNCLEAR

    if NEGATION.search(lowered):
        return Intent.NO
    if _matches(lowered, AFFIRMATIVE):
        return Intent.YES
    if _matches(lowered, NEGATIVE):
        return Intent.NO
    return Intent.UNCLEAR
