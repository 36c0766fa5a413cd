"""
Shared utility functions for the candidate analysis pipeline.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

import tldextract

# Offline extractor: uses the bundled public suffix snapshot, never the network.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


def now_utc() -> datetime:
    """
    Get current UTC datetime with timezone information.

    Returns:
        Current UTC datetime
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_text(text: str | None) -> str:
    """
    Normalize whitespace in text content.

    Args:
        text: Input text string (can be None)

    Returns:
        Normalized text with single spaces and trimmed edges
    """
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def extract_domain_from_url(url: str) -> str:
    """
    Extract the registered domain from a URL.

    Args:
        url: Full URL string

    Returns:
        Normalized domain name in lowercase, e.g. "instagram.com"
    """
    extracted = _EXTRACT(url)
    if extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}".lower()
    return (extracted.domain or urlparse(url).netloc).lower()


_EMOJI_ONLY_RE = re.compile(
    "^["
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F680-\U0001F6FF"  # transport & map
    "\U0001F1E0-\U0001F1FF"  # flags
    "\U0001F900-\U0001F9FF"  # supplemental symbols
    "\U0001FA70-\U0001FAFF"
    "\U0001F3FB-\U0001F3FF"  # skin tones
    "☀-⛿"
    "✀-➿"
    "❤‍️\\s"
    "]+$"
)
_PUNCTUATION_ONLY_RE = re.compile(r"^[^\w\s]+$")
_NUMERIC_ONLY_RE = re.compile(r"^\d+$")


def is_emoji_only(text: str) -> bool:
    """True when the text is made of emoji (and whitespace) only."""
    return bool(text) and bool(_EMOJI_ONLY_RE.match(text))


def is_punctuation_only(text: str) -> bool:
    """True when the text has no letters, digits or whitespace."""
    return bool(_PUNCTUATION_ONLY_RE.match(text))


def is_numeric_only(text: str) -> bool:
    return bool(_NUMERIC_ONLY_RE.match(text))


def clamp(value: float, low: float, high: float) -> float:
    """Clamp a float value to the closed range [low, high]."""
    return max(low, min(high, value))


def clamp_to_unit_range(value: float) -> float:
    """
    Clamp a float value to the range [0.0, 1.0].

    Args:
        value: Input float value

    Returns:
        Value clamped to [0.0, 1.0] range
    """
    return clamp(value, 0.0, 1.0)


def coerce_float(value: object) -> Optional[float]:
    """Return value as a float when it is numeric (or a numeric string), else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", "."))
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (2.5 -> 3, not 2)."""
    return int(math.floor(value + 0.5))
