"""Error taxonomy shared by the credential, provider and sync layers.

Every error raised by the core derives from :class:`AlmanacError` so callers
can isolate a failing account with a single ``except`` clause.  Messages are
safe to log and to show to the user: they never carry token values.
"""

from __future__ import annotations

import re
from typing import Any

# Upper bound on any error text stored or surfaced to the user.
MAX_ERROR_MESSAGE_LENGTH = 200


class AlmanacError(RuntimeError):
    """Base error for every failure raised by the almanac core."""


class ConfigMissingError(AlmanacError):
    """Raised when OAuth client configuration is absent or incomplete."""


class AuthFailedError(AlmanacError):
    """Raised when the consent step errors, is cancelled, or yields no code."""


class TokenExchangeFailedError(AlmanacError):
    """Raised when the authorization-code exchange does not produce a credential."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TokenRefreshFailedError(AlmanacError):
    """Raised when the refresh-token exchange does not produce a credential."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(AlmanacError):
    """Raised on HTTP 401: the stored credential is no longer usable."""

    def __init__(self, message: str = "Unauthorized (401); re-authenticate the account") -> None:
        self.status_code = 401
        super().__init__(message)


class RequestFailedError(AlmanacError):
    """Raised when a calendar API request fails with a non-2xx status.

    ``status_code`` is ``0`` when the request never produced a response
    (connection refused, DNS failure, timeout).
    """

    def __init__(self, *, status_code: int, body: str | None) -> None:
        self.status_code = status_code
        self.body = body or ""
        if self.body:
            message = f"HTTP {status_code}: {self.body}"
        else:
            message = f"HTTP {status_code} from calendar API"
        super().__init__(message)


class VaultError(AlmanacError):
    """Raised when the credential vault cannot decrypt or persist a value."""


_SECRET_KEYS = "client_secret|refresh_token|access_token|id_token|code_verifier"
_SECRET_PAIR_PATTERNS = (
    # key=value style pairs
    (re.compile(rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)"), r"\1=[REDACTED]"),
    # JSON style quoted values
    (
        re.compile(rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2"""),
        r'\1"[REDACTED]"',
    ),
)


def safe_error_message(exc: BaseException | str) -> str:
    """Return a redacted, whitespace-normalized, truncated message for *exc*."""
    raw = exc if isinstance(exc, str) else str(exc)
    for pattern, replacement in _SECRET_PAIR_PATTERNS:
        raw = pattern.sub(replacement, raw)
    normalized = " ".join(raw.split())
    if not normalized and isinstance(exc, BaseException):
        normalized = type(exc).__name__
    return normalized[:MAX_ERROR_MESSAGE_LENGTH]


def response_error_message(response: Any) -> str:
    """Extract a short, redacted error message from an HTTP error response.

    Understands the Google ``{"error": {"message": ...}}`` envelope and the
    OAuth ``{"error": ..., "error_description": ...}`` shape, and falls back to
    the raw body text.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return safe_error_message(message)
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return safe_error_message(description)
        if isinstance(error_payload, str) and error_payload.strip():
            return safe_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return safe_error_message(raw_text)
    return "Request failed without an error payload"
