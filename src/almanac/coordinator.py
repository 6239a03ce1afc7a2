"""CalendarCoordinator: single owner of accounts, calendars and the timeline.

All mutations run under one ``asyncio.Lock`` and persist before returning.
Queries never take the lock: they read immutable snapshots (tuples, frozen
models, a :class:`Timeline`) that mutations swap in wholesale.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from types import MappingProxyType

from almanac import settings
from almanac.core.state import StateStore
from almanac.credential_store import CredentialVault
from almanac.errors import safe_error_message
from almanac.models import (
    Account,
    CalendarRef,
    Credential,
    Event,
    ViewState,
    next_account_color,
    normalize_hex_color,
)
from almanac.oauth import Clock, utc_now
from almanac.timeline import Timeline

logger = logging.getLogger(__name__)

DEFAULT_UPCOMING_WINDOW = timedelta(hours=1)
DEFAULT_UPCOMING_GRACE = timedelta(seconds=60)


class UnknownAccountError(KeyError):
    """Raised when a command names an account that is not connected."""


class UnknownCalendarError(KeyError):
    """Raised when a command names a calendar the account does not list."""


class CalendarCoordinator:
    def __init__(
        self,
        store: StateStore,
        vault: CredentialVault,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._vault = vault
        self._clock = clock
        self._lock = asyncio.Lock()

        self._accounts: tuple[Account, ...] = ()
        self._calendars: Mapping[str, tuple[CalendarRef, ...]] = MappingProxyType({})
        self._timeline = Timeline()
        self._sync_errors: Mapping[str, str] = MappingProxyType({})
        self._view_state = ViewState()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore accounts, calendar overrides and the view state."""
        async with self._lock:
            accounts = await settings.load_accounts(self._store)
            calendars: dict[str, tuple[CalendarRef, ...]] = {}
            for account in accounts:
                stored = await settings.load_calendar_settings(self._store, account.id)
                calendars[account.id] = tuple(stored)
            self._accounts = tuple(accounts)
            self._calendars = MappingProxyType(calendars)
            self._view_state = await settings.load_view_state(self._store)
        logger.info("Loaded %d account(s)", len(accounts))

    # ------------------------------------------------------------------
    # Account commands
    # ------------------------------------------------------------------

    async def add_account(
        self,
        account_id: str,
        credential: Credential,
        display_name: str | None = None,
    ) -> Account:
        """Store *credential* and connect the account.

        Re-signing-in keeps the account's color and auto-join setting.
        """
        if credential.account_id != account_id:
            raise ValueError(
                f"credential belongs to {credential.account_id!r}, not {account_id!r}"
            )
        async with self._lock:
            await self._vault.put_credential(credential)

            existing = self._find_account(account_id)
            if existing is not None:
                account = existing
                if display_name and display_name != existing.display_name:
                    account = existing.model_copy(update={"display_name": display_name})
                accounts = tuple(account if a.id == account_id else a for a in self._accounts)
            else:
                color = next_account_color({a.color_hex for a in self._accounts})
                account = Account(
                    id=account_id,
                    display_name=display_name or account_id,
                    color_hex=color,
                )
                accounts = (*self._accounts, account)

            await settings.save_accounts(self._store, list(accounts))
            self._accounts = accounts
        logger.info("Connected account %s", account_id)
        return account

    async def remove_account(self, account_id: str) -> bool:
        """Disconnect: drop credential, overrides, calendars and events."""
        async with self._lock:
            existed = self._find_account(account_id) is not None
            await self._vault.delete_credential(account_id)
            await settings.delete_calendar_settings(self._store, account_id)

            accounts = tuple(a for a in self._accounts if a.id != account_id)
            await settings.save_accounts(self._store, list(accounts))

            self._accounts = accounts
            self._calendars = _without(self._calendars, account_id)
            self._sync_errors = _without(self._sync_errors, account_id)
            self._timeline = self._timeline.remove_account(account_id)
        if existed:
            logger.info("Disconnected account %s", account_id)
        return existed

    async def set_auto_join(self, account_id: str, enabled: bool) -> Account:
        async with self._lock:
            account = self._require_account(account_id)
            updated = account.model_copy(update={"auto_join_enabled": enabled})
            accounts = tuple(updated if a.id == account_id else a for a in self._accounts)
            await settings.save_accounts(self._store, list(accounts))
            self._accounts = accounts
        return updated

    # ------------------------------------------------------------------
    # Calendar commands
    # ------------------------------------------------------------------

    async def set_calendar_visibility(
        self,
        account_id: str,
        calendar_id: str,
        visible: bool,
    ) -> CalendarRef:
        """Toggle a calendar. Hiding drops its events from the timeline at once."""
        async with self._lock:
            updated = await self._update_calendar(
                account_id, calendar_id, {"is_visible": visible}
            )
            if not visible:
                self._timeline = self._timeline.remove_calendar(account_id, calendar_id)
        return updated

    async def set_calendar_color(
        self,
        account_id: str,
        calendar_id: str,
        color: str | None,
    ) -> CalendarRef:
        """Set (or clear with ``None``) a custom color and restamp the calendar's events."""
        custom_color = normalize_hex_color(color) if color is not None else None
        async with self._lock:
            updated = await self._update_calendar(
                account_id, calendar_id, {"custom_color": custom_color}
            )
            self._timeline = self._timeline.restamp_calendar(
                account_id, calendar_id, updated.display_color
            )
        return updated

    async def _update_calendar(
        self,
        account_id: str,
        calendar_id: str,
        changes: dict,
    ) -> CalendarRef:
        self._require_account(account_id)
        current = self._calendars.get(account_id, ())
        target = next((c for c in current if c.id == calendar_id), None)
        if target is None:
            raise UnknownCalendarError(calendar_id)
        updated = target.model_copy(update=changes)
        calendars = tuple(updated if c.id == calendar_id else c for c in current)
        await settings.save_calendar_settings(self._store, account_id, list(calendars))
        self._calendars = _with(self._calendars, account_id, calendars)
        return updated

    # ------------------------------------------------------------------
    # Sync results
    # ------------------------------------------------------------------

    async def apply_sync(
        self,
        account_id: str,
        calendars: list[CalendarRef],
        events: list[Event],
    ) -> bool:
        """Atomically replace the account's calendars and timeline slice.

        Overrides changed while the sync was in flight win over the synced
        copy.  Returns ``False`` when the account was disconnected meanwhile.
        """
        async with self._lock:
            if self._find_account(account_id) is None:
                logger.info("Dropping sync result for disconnected account %s", account_id)
                return False

            stored = await settings.load_calendar_settings(self._store, account_id)
            current = self._calendars.get(account_id)
            merged = settings.merge_calendar_overrides(
                calendars, list(current) if current is not None else stored
            )
            by_id = {calendar.id: calendar for calendar in merged}
            kept: list[Event] = []
            for event in events:
                calendar = by_id.get(event.calendar_id)
                if calendar is None or not calendar.is_visible:
                    continue
                if event.color_hex != calendar.display_color:
                    event = event.model_copy(update={"color_hex": calendar.display_color})
                kept.append(event)

            if merged != stored:
                await settings.save_calendar_settings(self._store, account_id, merged)
            self._calendars = _with(self._calendars, account_id, tuple(merged))
            self._timeline = self._timeline.replace_account(account_id, kept)
            self._sync_errors = _without(self._sync_errors, account_id)
        return True

    async def persist_credential(self, credential: Credential) -> bool:
        """Store a refreshed credential unless its account was disconnected meanwhile."""
        async with self._lock:
            if self._find_account(credential.account_id) is None:
                return False
            await self._vault.put_credential(credential)
        return True

    async def purge_disconnected(self, account_id: str) -> bool:
        """Drop credential and overrides of an account that is no longer connected."""
        async with self._lock:
            if self._find_account(account_id) is not None:
                return False
            await self._vault.delete_credential(account_id)
            await settings.delete_calendar_settings(self._store, account_id)
        return True

    async def record_sync_error(self, account_id: str, message: str) -> bool:
        async with self._lock:
            if self._find_account(account_id) is None:
                return False
            self._sync_errors = _with(self._sync_errors, account_id, safe_error_message(message))
        return True

    async def set_view_state(self, view_state: ViewState) -> None:
        async with self._lock:
            await settings.save_view_state(self._store, view_state)
            self._view_state = view_state

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def accounts(self) -> tuple[Account, ...]:
        return self._accounts

    def account(self, account_id: str) -> Account | None:
        return self._find_account(account_id)

    def calendars(self, account_id: str) -> tuple[CalendarRef, ...]:
        return self._calendars.get(account_id, ())

    def timeline(self) -> Timeline:
        return self._timeline

    def events(self) -> tuple[Event, ...]:
        return self._timeline.events

    def events_between(self, start: datetime, end: datetime) -> tuple[Event, ...]:
        return self._timeline.between(start, end)

    def upcoming_events(
        self,
        *,
        now: datetime | None = None,
        within: timedelta = DEFAULT_UPCOMING_WINDOW,
        grace: timedelta = DEFAULT_UPCOMING_GRACE,
    ) -> tuple[Event, ...]:
        """Events starting in ``[now - grace, now + within]``."""
        return self._timeline.upcoming(now or self._clock(), within=within, grace=grace)

    def auto_join_account_ids(self) -> frozenset[str]:
        return frozenset(a.id for a in self._accounts if a.auto_join_enabled)

    def sync_errors(self) -> Mapping[str, str]:
        return self._sync_errors

    def view_state(self) -> ViewState:
        return self._view_state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_account(self, account_id: str) -> Account | None:
        return next((a for a in self._accounts if a.id == account_id), None)

    def _require_account(self, account_id: str) -> Account:
        account = self._find_account(account_id)
        if account is None:
            raise UnknownAccountError(account_id)
        return account


def _with(mapping: Mapping, key: str, value) -> Mapping:
    updated = dict(mapping)
    updated[key] = value
    return MappingProxyType(updated)


def _without(mapping: Mapping, key: str) -> Mapping:
    if key not in mapping:
        return mapping
    return MappingProxyType({k: v for k, v in mapping.items() if k != key})
