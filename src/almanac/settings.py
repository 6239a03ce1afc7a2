"""Typed persistence helpers over a :class:`~almanac.core.state.StateStore`.

Keys:

- ``accounts``: list of serialized :class:`~almanac.models.Account`.
- ``calendar-settings.<account_id>``: list of serialized
  :class:`~almanac.models.CalendarRef` (the merged listing incl. overrides,
  see :func:`merge_calendar_overrides`).
- ``view-state``: serialized :class:`~almanac.models.ViewState`.

Malformed stored entries are logged and skipped rather than failing startup.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from almanac.core.state import StateStore
from almanac.models import Account, CalendarRef, ViewState

logger = logging.getLogger(__name__)

ACCOUNTS_KEY = "accounts"
CALENDAR_SETTINGS_KEY_PREFIX = "calendar-settings."
VIEW_STATE_KEY = "view-state"


def calendar_settings_key(account_id: str) -> str:
    return f"{CALENDAR_SETTINGS_KEY_PREFIX}{account_id}"


def _validate_list(raw: Any, model: type, *, key: str) -> list:
    if raw is None:
        return []
    if not isinstance(raw, list):
        logger.warning("Ignoring settings key %r: expected a list, got %s", key, type(raw).__name__)
        return []
    items = []
    for entry in raw:
        try:
            items.append(model.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Skipping malformed entry under %r: %s", key, exc.errors()[:1])
    return items


async def load_accounts(store: StateStore) -> list[Account]:
    raw = await store.get(ACCOUNTS_KEY)
    accounts: list[Account] = _validate_list(raw, Account, key=ACCOUNTS_KEY)
    seen: set[str] = set()
    unique: list[Account] = []
    for account in accounts:
        if account.id in seen:
            continue
        seen.add(account.id)
        unique.append(account)
    return unique


async def save_accounts(store: StateStore, accounts: list[Account]) -> None:
    await store.set(ACCOUNTS_KEY, [account.model_dump(mode="json") for account in accounts])


def merge_calendar_overrides(
    fresh: list[CalendarRef],
    stored: list[CalendarRef],
) -> list[CalendarRef]:
    """Carry visibility and custom color from *stored* onto *fresh* by calendar id.

    Order, summary and provider color come from *fresh*; calendars the user
    has never seen are visible with no custom color.
    """
    overrides = {calendar.id: calendar for calendar in stored}
    merged: list[CalendarRef] = []
    for calendar in fresh:
        previous = overrides.get(calendar.id)
        if previous is None:
            merged.append(calendar.model_copy(update={"is_visible": True, "custom_color": None}))
        else:
            merged.append(
                calendar.model_copy(
                    update={
                        "is_visible": previous.is_visible,
                        "custom_color": previous.custom_color,
                    }
                )
            )
    return merged


async def load_calendar_settings(store: StateStore, account_id: str) -> list[CalendarRef]:
    key = calendar_settings_key(account_id)
    return _validate_list(await store.get(key), CalendarRef, key=key)


async def save_calendar_settings(
    store: StateStore,
    account_id: str,
    calendars: list[CalendarRef],
) -> None:
    await store.set(
        calendar_settings_key(account_id),
        [calendar.model_dump(mode="json") for calendar in calendars],
    )


async def delete_calendar_settings(store: StateStore, account_id: str) -> None:
    await store.delete(calendar_settings_key(account_id))


async def load_view_state(store: StateStore) -> ViewState:
    raw = await store.get(VIEW_STATE_KEY)
    if raw is None:
        return ViewState()
    try:
        return ViewState.model_validate(raw)
    except ValidationError:
        logger.warning("Stored view state is malformed; using defaults")
        return ViewState()


async def save_view_state(store: StateStore, view_state: ViewState) -> None:
    await store.set(VIEW_STATE_KEY, view_state.model_dump(mode="json"))
