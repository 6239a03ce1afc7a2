"""Google Calendar v3 provider.

Lists calendars and single-expanded events with a bearer credential and
normalizes the JSON into :mod:`almanac.models` records.  There is no retry
and no refresh here: a 401 surfaces as :class:`UnauthorizedError` and the
sync engine decides what to do.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, tzinfo
from typing import Any
from urllib.parse import quote, urlsplit

import httpx

from almanac.errors import (
    RequestFailedError,
    UnauthorizedError,
    response_error_message,
    safe_error_message,
)
from almanac.meeting_links import detect_meeting_link
from almanac.models import (
    CalendarRef,
    Credential,
    Event,
    SelfResponse,
    compound_event_id,
    local_timezone,
)
from almanac.providers.base import CalendarProvider

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
UNTITLED_EVENT_TITLE = "(No title)"
# Upper bound on nextPageToken hops for one listing.
MAX_PAGES = 50
_PAGE_SIZE = 250


# ---------------------------------------------------------------------------
# Payload parsing helpers
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(payload: Any, *, display_tz: tzinfo) -> datetime:
    """Parse a ``start``/``end`` object; ``date`` values become local midnight."""
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event is missing a start/end object")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time)

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=display_tz)

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _emails_match(candidate: Any, self_email: str) -> bool:
    return (
        isinstance(candidate, str)
        and bool(self_email)
        and candidate.strip().lower() == self_email.strip().lower()
    )


def resolve_self_response(
    payload: dict[str, Any],
    *,
    self_email: str,
    organizer_default: SelfResponse = SelfResponse.accepted,
) -> SelfResponse | None:
    """Work out the signed-in user's RSVP for an event payload.

    The matching attendee wins.  Failing that, when the user organizes the
    event, the organizer's own ``responseStatus`` or *organizer_default*.
    """
    attendees = payload.get("attendees")
    if isinstance(attendees, list):
        for attendee in attendees:
            if isinstance(attendee, dict) and _emails_match(attendee.get("email"), self_email):
                return SelfResponse.parse(attendee.get("responseStatus"))

    organizer = payload.get("organizer")
    if isinstance(organizer, dict) and _emails_match(organizer.get("email"), self_email):
        status = organizer.get("responseStatus")
        if isinstance(status, str) and status.strip():
            return SelfResponse.parse(status)
        return organizer_default

    return None


def _is_absolute_http_url(value: str) -> bool:
    parts = urlsplit(value)
    return parts.scheme.lower() in ("http", "https") and bool(parts.netloc)


def resolve_meeting_url(payload: dict[str, Any]) -> str | None:
    """``hangoutLink``, then http(s) entry points, then any entry point, then free text."""
    hangout = _normalize_optional_text(payload.get("hangoutLink"))
    if hangout:
        return hangout

    conference = payload.get("conferenceData")
    entry_points = conference.get("entryPoints") if isinstance(conference, dict) else None
    uris: list[str] = []
    if isinstance(entry_points, list):
        for entry in entry_points:
            if isinstance(entry, dict):
                uri = _normalize_optional_text(entry.get("uri"))
                if uri:
                    uris.append(uri)
    for uri in uris:
        if _is_absolute_http_url(uri):
            return uri
    if uris:
        return uris[0]

    location = _normalize_optional_text(payload.get("location")) or ""
    description = _normalize_optional_text(payload.get("description")) or ""
    return detect_meeting_link(f"{location}\n{description}")


def google_event_to_event(
    payload: dict[str, Any],
    *,
    calendar_id: str,
    account_id: str,
    self_email: str,
    display_tz: tzinfo,
    organizer_default: SelfResponse = SelfResponse.accepted,
) -> Event | None:
    """Normalize one ``events.list`` item; ``None`` for cancelled or id-less items.

    Raises:
        ValueError: when the start/end boundaries cannot be parsed.
    """
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    provider_event_id = _normalize_optional_text(payload.get("id"))
    if provider_event_id is None:
        return None

    start_at = _parse_google_event_boundary(payload.get("start"), display_tz=display_tz)
    end_at = _parse_google_event_boundary(payload.get("end"), display_tz=display_tz)

    return Event(
        id=compound_event_id(provider_event_id, account_id),
        provider_event_id=provider_event_id,
        calendar_id=calendar_id,
        account_id=account_id,
        title=_normalize_optional_text(payload.get("summary")) or UNTITLED_EVENT_TITLE,
        start=start_at,
        end=end_at,
        meeting_url=resolve_meeting_url(payload),
        location=_normalize_optional_text(payload.get("location")),
        description=_normalize_optional_text(payload.get("description")),
        self_response=resolve_self_response(
            payload,
            self_email=self_email,
            organizer_default=organizer_default,
        ),
    )


def google_calendar_to_ref(payload: dict[str, Any]) -> CalendarRef | None:
    calendar_id = _normalize_optional_text(payload.get("id"))
    summary = _normalize_optional_text(payload.get("summary"))
    if calendar_id is None or summary is None:
        return None
    return CalendarRef(
        id=calendar_id,
        summary=summary,
        provider_color=_normalize_optional_text(payload.get("backgroundColor")),
    )


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar provider over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        display_tz: tzinfo | None = None,
        organizer_default: SelfResponse = SelfResponse.accepted,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._base_url = base_url.rstrip("/")
        self._display_tz = display_tz or local_timezone()
        self._organizer_default = organizer_default

    @property
    def name(self) -> str:
        return "google"

    async def _request_google_json(
        self,
        credential: Credential,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._base_url}{normalized_path}"
        try:
            response = await self._http_client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {credential.access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise RequestFailedError(status_code=0, body=safe_error_message(exc)) from exc

        if response.status_code == 401:
            raise UnauthorizedError()

        if response.status_code < 200 or response.status_code >= 300:
            raise RequestFailedError(
                status_code=response.status_code,
                body=response_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RequestFailedError(
                status_code=response.status_code,
                body="Google Calendar API returned invalid JSON",
            ) from exc

        if not isinstance(payload, dict):
            raise RequestFailedError(
                status_code=response.status_code,
                body="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _list_paginated(
        self,
        credential: Credential,
        path: str,
        params: dict[str, Any],
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        for _ in range(MAX_PAGES):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = await self._request_google_json(credential, path, params=page_params)

            page_items = payload.get("items", [])
            if not isinstance(page_items, list):
                raise RequestFailedError(
                    status_code=200,
                    body="Google Calendar API response items is not an array",
                )
            items.extend(item for item in page_items if isinstance(item, dict))

            page_token = _normalize_optional_text(payload.get("nextPageToken"))
            if page_token is None:
                return items

        logger.warning("Stopped following %s after %d pages", path, MAX_PAGES)
        return items

    async def list_calendars(self, credential: Credential) -> list[CalendarRef]:
        items = await self._list_paginated(
            credential,
            "/users/me/calendarList",
            {"maxResults": _PAGE_SIZE},
        )
        calendars: list[CalendarRef] = []
        for item in items:
            calendar = google_calendar_to_ref(item)
            if calendar is None:
                logger.debug("Skipping calendar list entry without id or summary")
                continue
            calendars.append(calendar)
        return calendars

    async def list_events(
        self,
        credential: Credential,
        *,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
        self_email: str,
    ) -> list[Event]:
        normalized_calendar_id = quote(calendar_id, safe="")
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "conferenceDataVersion": 1,
            "maxResults": _PAGE_SIZE,
            "timeMin": _google_rfc3339(start_at),
            "timeMax": _google_rfc3339(end_at),
        }
        items = await self._list_paginated(
            credential,
            f"/calendars/{normalized_calendar_id}/events",
            params,
        )

        events: list[Event] = []
        for item in items:
            try:
                event = google_event_to_event(
                    item,
                    calendar_id=calendar_id,
                    account_id=credential.account_id,
                    self_email=self_email,
                    display_tz=self._display_tz,
                    organizer_default=self._organizer_default,
                )
            except ValueError as exc:
                logger.warning(
                    "Skipping event %r in calendar %r: %s",
                    item.get("id"),
                    calendar_id,
                    exc,
                )
                continue
            if event is not None:
                events.append(event)
        return events

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
