"""Domain records shared by the provider, sync, layout and scheduler layers."""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time, tzinfo
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CALENDAR_COLOR = "#4285F4"
DEFAULT_EVENT_COLOR = "#5E6AD2"
# Colors handed out to newly connected accounts, in order.
ACCOUNT_COLOR_PALETTE: tuple[str, ...] = (
    "#4285F4",
    "#DB4437",
    "#F4B400",
    "#0F9D58",
    "#AB47BC",
    "#00ACC1",
)
FALLBACK_ACCOUNT_COLOR = "#5E6AD2"

_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
# Separator between the provider event id and the account id in Event.id.
EVENT_ID_SEPARATOR = "|"


def local_timezone() -> tzinfo:
    """Return the process' local timezone as an aware ``tzinfo``."""
    tz = datetime.now().astimezone().tzinfo
    return tz if tz is not None else UTC


def normalize_hex_color(value: str) -> str:
    """Validate a ``#RRGGBB`` color and return it upper-cased."""
    normalized = value.strip()
    if not _HEX_COLOR_PATTERN.match(normalized):
        raise ValueError(f"color must be a #RRGGBB hex string, got {value!r}")
    return normalized.upper()


def compound_event_id(provider_event_id: str, account_id: str) -> str:
    return f"{provider_event_id}{EVENT_ID_SEPARATOR}{account_id}"


def next_account_color(assigned: set[str] | frozenset[str]) -> str:
    """Return the first palette color not in *assigned*."""
    taken = {color.upper() for color in assigned}
    for color in ACCOUNT_COLOR_PALETTE:
        if color not in taken:
            return color
    return FALLBACK_ACCOUNT_COLOR


class SelfResponse(StrEnum):
    """The signed-in user's RSVP state for an event."""

    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"
    needs_action = "needsAction"
    unknown = "unknown"

    @classmethod
    def parse(cls, value: object) -> SelfResponse:
        """Map a provider ``responseStatus`` string; anything unrecognised is ``unknown``."""
        if not isinstance(value, str):
            return cls.unknown
        lowered = value.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        return cls.unknown


class Credential(BaseModel):
    """OAuth credential for one account. Replaced wholesale on refresh."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    account_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    id_token: str | None = None
    expiry: datetime

    @field_validator("expiry")
    @classmethod
    def _require_aware_expiry(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expiry

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> Credential:
        return cls.model_validate_json(raw)

    def __repr__(self) -> str:
        return (
            f"Credential("
            f"account_id={self.account_id!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, "
            f"expiry={self.expiry.isoformat()!r})"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


class Account(BaseModel):
    """A connected calendar account. ``id`` is the account email."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    display_name: str
    color_hex: str = FALLBACK_ACCOUNT_COLOR
    auto_join_enabled: bool = True

    @field_validator("color_hex")
    @classmethod
    def _normalize_color(cls, value: str) -> str:
        return normalize_hex_color(value)


class CalendarRef(BaseModel):
    """A calendar listed by the provider plus the user's local overrides."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    summary: str
    provider_color: str | None = None
    is_visible: bool = True
    custom_color: str | None = None

    @property
    def display_color(self) -> str:
        return self.custom_color or self.provider_color or DEFAULT_CALENDAR_COLOR


class Event(BaseModel):
    """A single (already expanded) calendar event on the merged timeline."""

    model_config = ConfigDict(frozen=True)

    id: str
    provider_event_id: str
    calendar_id: str
    account_id: str
    title: str
    start: datetime
    end: datetime
    meeting_url: str | None = None
    color_hex: str | None = None
    location: str | None = None
    description: str | None = None
    self_response: SelfResponse | None = None

    def is_all_day(self, tz: tzinfo | None = None) -> bool:
        """True iff both boundaries fall exactly on local midnight."""
        zone = tz or local_timezone()
        return _is_local_midnight(self.start, zone) and _is_local_midnight(self.end, zone)

    def intersects(self, start: datetime, end: datetime) -> bool:
        if self.end <= self.start:
            return start <= self.start < end
        return self.start < end and self.end > start


def _is_local_midnight(value: datetime, tz: tzinfo) -> bool:
    local = value.astimezone(tz) if value.tzinfo is not None else value.replace(tzinfo=tz)
    return local.time() == time(0, 0)


class ViewMode(StrEnum):
    day = "day"
    week = "week"
    month = "month"


class WeekStyle(StrEnum):
    list = "list"
    grid = "grid"


class ViewState(BaseModel):
    """Last-used view, restored at startup."""

    model_config = ConfigDict(frozen=True)

    mode: ViewMode = ViewMode.month
    week_style: WeekStyle = WeekStyle.grid
    selected_date: date = Field(default_factory=date.today)


class SyncOutcome(BaseModel):
    """Result of one account's sync pass."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    status: Literal["ok", "skipped", "error"]
    calendars: int = 0
    events: int = 0
    error: str | None = None
    error_type: str | None = None
    finished_at: datetime

    @property
    def ok(self) -> bool:
        return self.status == "ok"
