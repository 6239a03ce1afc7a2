"""Meeting URL detection in free text (event location and description)."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

# Ordered by how common each service is; the first pattern that matches wins.
MEETING_LINK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"https?://meet\.google\.com/[A-Za-z0-9\-]+",
        r"https?://(www\.)?zoom\.us/j/[A-Za-z0-9?&=\-]+",
        r"https?://([A-Za-z0-9\-]+)\.zoom\.us/j/[A-Za-z0-9?&=\-]+",
        r"https?://teams\.microsoft\.com/l/meetup-join/[A-Za-z0-9/_\-?&=.%]+",
        r"https?://([A-Za-z0-9\-]+)\.webex\.com/[A-Za-z0-9/_\-?&=.%]+",
        r"https?://(www\.)?bluejeans\.com/[A-Za-z0-9\-]+",
        r"https?://(global\.|app\.)?gotomeeting\.com/join/[0-9]+",
        r"https?://meet\.jit\.si/[A-Za-z0-9\-_]+",
    )
)


def detect_meeting_link(text: str | None) -> str | None:
    """Return the first recognised meeting URL in *text*, or ``None``."""
    if not text:
        return None
    for pattern in MEETING_LINK_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        candidate = match.group(0)
        parts = urlsplit(candidate)
        if parts.scheme.lower() in ("http", "https") and parts.netloc:
            return candidate
    return None
