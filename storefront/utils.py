import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import bleach


def normalize_email(value: Optional[str]) -> str:
    """Lookup form of an email address: trimmed and lower-cased."""
    return (value or "").strip().lower()


def to_major_units(cents: int) -> int:
    """Convert integer cents to whole currency units, rounding half up."""
    return int((Decimal(cents) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sanitize_input(value: Optional[str], max_length: int | None = None) -> str:
    """Sanitize customer-supplied text before it is sent to the payment gateway.

    - Strips HTML tags using bleach.clean(..., strip=True)
    - Removes control characters
    - Collapses whitespace and trims
    """
    if value is None:
        return ""
    # remove NULL bytes and other control characters
    val = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", value)
    # strip tags
    val = bleach.clean(val, tags=[], strip=True)
    val = re.sub(r"\s+", " ", val).strip()
    if max_length is not None:
        val = val[:max_length]
    return val
