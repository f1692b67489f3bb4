"""
Family Event Planner — Reply Classifier.

Turns a free-text SMS or email reply into an approval intent. Deterministic
keyword rules only: the same text always yields the same classification, so
a reply can be re-processed safely after a crash.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class Intent(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    PAYMENT_CONFIRM = "payment_confirm"
    CANCEL = "cancel"
    UNCLEAR = "unclear"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Classification:
    intent: Intent
    confidence: Confidence


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

_EXACT_APPROVE = {"yes", "y", "1", "ok"}
_EXACT_REJECT = {"no", "n", "0"}

_APPROVE_WORDS = (
    "yes", "y", "yeah", "yep", "yup", "yas", "ya", "yea", "sure", "ok", "okay",
    "good", "great", "perfect", "awesome", "approve", "approved", "book",
    "register", "go", "1", "true", "accept",
)
_REJECT_WORDS = (
    "no", "n", "nope", "nah", "na", "nay", "pass", "skip", "reject", "decline",
    "0", "false",
)
_APPROVE_PHRASES = (
    "sounds good", "sure thing", "do it", "lets do it", "let's do it",
    "love it", "want it", "sign us up", "count me in",
)
_REJECT_PHRASES = (
    "not interested", "not now", "next time", "not this time", "maybe later",
    "no thanks", "not really",
)
_HEDGE_WORDS = ("maybe", "perhaps", "possibly", "might", "not sure", "hmm", "dunno")
_PAYMENT_WORDS = ("paid", "payment", "complete", "completed", "done")
_CANCEL_WORDS = ("cancel", "cancelled", "canceled", "abort")

_APPROVE_EMOJI = ("👍", "✅", "✓", "✔")
_REJECT_EMOJI = ("👎", "❌", "✗")

_NEGATOR = r"(?<![\w'])(?:\w+n't|cannot|dont|cant|wont|not|never)\s+"


def _negated(terms: tuple[str, ...]) -> re.Pattern:
    alternatives = "|".join(re.escape(t) for t in sorted(terms, key=len, reverse=True))
    return re.compile(rf"{_NEGATOR}(?:{alternatives})(?![\w'])")


# "don't book", "not ok", "do not register us"
_NEGATED_APPROVAL = _negated(_APPROVE_PHRASES + _APPROVE_WORDS)
# "don't skip" is a double negative
_NEGATED_REJECTION = _negated(_REJECT_WORDS)


def _has_word(text: str, words: tuple[str, ...]) -> bool:
    return any(re.search(rf"(?<![\w']){re.escape(w)}(?![\w'])", text) for w in words)


def _has_phrase(text: str, phrases: tuple[str, ...]) -> bool:
    return any(p in text for p in phrases)


def _has_emoji(text: str, emoji: tuple[str, ...]) -> bool:
    return any(e in text for e in emoji)


def classify(text: str | None) -> Classification:
    """Classify a human reply.

    Rules, in order:
    1. empty input is unclear;
    2. bare tokens ("yes", "n", "1") and emoji-only replies are high confidence;
    3. payment words are their own intent (never approve), and payment mixed
       with approval or rejection is unclear;
    4. hedging words and double negatives ("don't skip") make the reply unclear;
    5. a negated approval ("don't book", "not ok") counts as rejection;
    6. approval mixed with rejection or cancel words is unclear;
    7. otherwise the single detected intent at medium confidence.
    """
    if not text or not text.strip():
        return Classification(Intent.UNCLEAR, Confidence.LOW)

    normalized = " ".join(text.lower().replace("’", "'").split())
    bare = normalized.strip(" .!?,")

    if bare in _EXACT_APPROVE:
        return Classification(Intent.APPROVE, Confidence.HIGH)
    if bare in _EXACT_REJECT:
        return Classification(Intent.REJECT, Confidence.HIGH)

    approve_emoji = _has_emoji(normalized, _APPROVE_EMOJI)
    reject_emoji = _has_emoji(normalized, _REJECT_EMOJI)
    if not re.search(r"\w", normalized):
        if approve_emoji and not reject_emoji:
            return Classification(Intent.APPROVE, Confidence.HIGH)
        if reject_emoji and not approve_emoji:
            return Classification(Intent.REJECT, Confidence.HIGH)
        return Classification(Intent.UNCLEAR, Confidence.LOW)

    rejected = _has_phrase(normalized, _REJECT_PHRASES) or _has_word(normalized, _REJECT_WORDS) or reject_emoji

    if _has_word(normalized, _PAYMENT_WORDS):
        # "yes, payment" may be an answer to the proposal; ask again
        if rejected or _has_word(normalized, _APPROVE_WORDS) or approve_emoji:
            return Classification(Intent.UNCLEAR, Confidence.LOW)
        return Classification(Intent.PAYMENT_CONFIRM, Confidence.HIGH)

    if _has_phrase(normalized, _HEDGE_WORDS) and not _has_phrase(normalized, _REJECT_PHRASES):
        return Classification(Intent.UNCLEAR, Confidence.LOW)
    if _NEGATED_REJECTION.search(normalized):
        return Classification(Intent.UNCLEAR, Confidence.LOW)

    # "no thanks, not now" must not match "no" -> approve via leftover words
    stripped = normalized
    for phrase in _REJECT_PHRASES:
        stripped = stripped.replace(phrase, " ")
    if _NEGATED_APPROVAL.search(stripped):
        rejected = True
        stripped = _NEGATED_APPROVAL.sub(" ", stripped)
    approved = (
        _has_phrase(stripped, _APPROVE_PHRASES)
        or _has_word(stripped, _APPROVE_WORDS)
        or approve_emoji
    )
    cancelled = _has_word(normalized, _CANCEL_WORDS)

    if approved and (rejected or cancelled):
        return Classification(Intent.UNCLEAR, Confidence.LOW)
    if cancelled:
        return Classification(Intent.CANCEL, Confidence.HIGH)
    if approved:
        return Classification(Intent.APPROVE, Confidence.MEDIUM)
    if rejected:
        return Classification(Intent.REJECT, Confidence.MEDIUM)
    return Classification(Intent.UNCLEAR, Confidence.LOW)


# ---------------------------------------------------------------------------
# Email reply cleanup
# ---------------------------------------------------------------------------

_QUOTE_HEADER = re.compile(r"^on .+wrote:\s*$", re.IGNORECASE)
_SIGNOFF = re.compile(r"^(--\s*$|best regards?\b|thanks?\b|thank you\b|sent from my\b)", re.IGNORECASE)


def clean_email_body(body: str | None, max_lines: int = 3) -> str:
    """Strip quoted text, reply headers and signatures from an email reply."""
    if not body:
        return ""

    kept: list[str] = []
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith(">"):
            continue
        if _QUOTE_HEADER.match(stripped):
            break
        if _SIGNOFF.match(stripped):
            break
        if stripped:
            kept.append(stripped)

    return "\n".join(kept[:max_lines])
