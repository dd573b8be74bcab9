import re
from typing import Optional

from libsync.models import Condition

ACCESSION_WIDTH = 6

# ASCII only: other Unicode digits are not valid accession characters
_NON_DIGITS = re.compile(r"[^0-9]")

# Checked in order; the first keyword found wins.
_CONDITION_KEYWORDS = (
    (Condition.VERIFIED, ("verified", "good")),
    (Condition.DAMAGED, ("damage", "torn", "broken")),
    (Condition.LOST, ("lost", "missing")),
)

_CONDITION_SHORTHAND = {"v": Condition.VERIFIED, "d": Condition.DAMAGED, "l": Condition.LOST}


def normalize(raw: Optional[str]) -> Optional[str]:
    """Canonicalize a free-form accession number.

    Non-digits are stripped and the rest is left-padded with zeros to six
    digits. Longer numbers are returned as-is, never truncated. Returns None
    when no digit is left.

    >>> normalize("ACC-12")
    '000012'
    >>> normalize("123456789")
    '123456789'
    """
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    if not digits:
        return None
    return digits.zfill(ACCESSION_WIDTH)


def pad_prefix(partial: str) -> str:
    """Pad a partial accession number typed for autocomplete (``"12"`` -> ``"000012"``)."""
    digits = _NON_DIGITS.sub("", partial or "")
    return digits.zfill(ACCESSION_WIDTH) if digits else ""


def resolve_condition_label(raw: Optional[str]) -> Condition:
    """Map a free-text stock-check status to Verified, Damaged or Lost.

    Matching is case-insensitive on substrings, plus the single-letter
    shorthands ``v``, ``d`` and ``l``. Anything else is Verified.
    """
    if raw is None:
        return Condition.VERIFIED
    text = str(raw).strip().lower()
    if not text:
        return Condition.VERIFIED
    if text in _CONDITION_SHORTHAND:
        return _CONDITION_SHORTHAND[text]
    for condition, keywords in _CONDITION_KEYWORDS:
        if any(word in text for word in keywords):
            return condition
    return Condition.VERIFIED
