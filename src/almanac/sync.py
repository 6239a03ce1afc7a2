"""Per-account synchronization pipeline.

``refresh_account`` runs: load credential -> ensure fresh (persist when
refreshed) -> list calendars -> merge stored overrides -> list events of
visible calendars over a sliding window -> hand everything to the
coordinator, which persists the calendar list and swaps in the account's
slice atomically.  Every write goes through the coordinator, so an account
disconnected mid-sync leaves nothing behind.

A failure anywhere after the credential load becomes an ``error``
:class:`SyncOutcome`: the message is recorded on the coordinator, the
account's previous timeline contribution stays as it was, and other accounts
are never touched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from opentelemetry import trace

from almanac import settings
from almanac.coordinator import CalendarCoordinator
from almanac.core.logging import account_context
from almanac.core.state import StateStore
from almanac.credential_store import CredentialVault
from almanac.errors import AlmanacError, safe_error_message
from almanac.models import Event, SyncOutcome
from almanac.oauth import Clock, OAuthLifecycle, utc_now
from almanac.providers.base import CalendarProvider

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("almanac.sync")

DEFAULT_PAST_WINDOW = timedelta(days=14)
DEFAULT_FUTURE_WINDOW = timedelta(days=60)


def sync_window(
    now: datetime,
    *,
    past: timedelta = DEFAULT_PAST_WINDOW,
    future: timedelta = DEFAULT_FUTURE_WINDOW,
) -> tuple[datetime, datetime]:
    """The sliding ``[now - past, now + future]`` retrieval range."""
    return now - past, now + future


class SyncEngine:
    def __init__(
        self,
        *,
        coordinator: CalendarCoordinator,
        vault: CredentialVault,
        store: StateStore,
        oauth: OAuthLifecycle,
        provider: CalendarProvider,
        clock: Clock = utc_now,
        past_window: timedelta = DEFAULT_PAST_WINDOW,
        future_window: timedelta = DEFAULT_FUTURE_WINDOW,
    ) -> None:
        self._coordinator = coordinator
        self._vault = vault
        self._store = store
        self._oauth = oauth
        self._provider = provider
        self._clock = clock
        self._past_window = past_window
        self._future_window = future_window

    async def refresh_all_accounts(self) -> list[SyncOutcome]:
        """Sync every connected account in turn."""
        outcomes: list[SyncOutcome] = []
        for account in self._coordinator.accounts():
            outcomes.append(await self.refresh_account(account.id))
        return outcomes

    async def refresh_account(self, account_id: str) -> SyncOutcome:
        with (
            account_context(account_id),
            tracer.start_as_current_span("almanac.sync.account") as span,
        ):
            span.set_attribute("almanac.account_id", account_id)
            outcome = await self._refresh_account(account_id)
            span.set_attribute("almanac.sync.status", outcome.status)
            span.set_attribute("almanac.sync.events", outcome.events)
            return outcome

    async def _refresh_account(self, account_id: str) -> SyncOutcome:
        try:
            credential = await self._vault.get_credential(account_id)
        except AlmanacError as exc:
            return await self._failed(account_id, exc)

        if credential is None:
            logger.info("No stored credential for %s; skipping sync", account_id)
            return SyncOutcome(
                account_id=account_id,
                status="skipped",
                error="No stored credential; sign in again",
                finished_at=self._clock(),
            )

        try:
            fresh = await self._oauth.ensure_fresh(credential)
            if fresh is not credential:
                if not await self._coordinator.persist_credential(fresh):
                    return await self._disconnected(account_id)

            listed = await self._provider.list_calendars(fresh)
            stored = await settings.load_calendar_settings(self._store, account_id)
            calendars = settings.merge_calendar_overrides(listed, stored)

            start_at, end_at = sync_window(
                self._clock(), past=self._past_window, future=self._future_window
            )
            events: list[Event] = []
            for calendar in calendars:
                if not calendar.is_visible:
                    continue
                listed_events = await self._provider.list_events(
                    fresh,
                    calendar_id=calendar.id,
                    start_at=start_at,
                    end_at=end_at,
                    self_email=account_id,
                )
                color = calendar.display_color
                events.extend(
                    event.model_copy(update={"color_hex": color}) for event in listed_events
                )
        except AlmanacError as exc:
            return await self._failed(account_id, exc)

        applied = await self._coordinator.apply_sync(account_id, calendars, events)
        if not applied:
            return await self._disconnected(account_id)

        logger.info(
            "Synced %s: %d calendar(s), %d event(s)",
            account_id,
            len(calendars),
            len(events),
        )
        return SyncOutcome(
            account_id=account_id,
            status="ok",
            calendars=len(calendars),
            events=len(events),
            finished_at=self._clock(),
        )

    async def _failed(self, account_id: str, exc: AlmanacError) -> SyncOutcome:
        message = safe_error_message(exc)
        logger.warning("Sync failed for %s: %s", account_id, message)
        if not await self._coordinator.record_sync_error(account_id, message):
            return await self._disconnected(account_id)
        return SyncOutcome(
            account_id=account_id,
            status="error",
            error=message,
            error_type=type(exc).__name__,
            finished_at=self._clock(),
        )

    async def _disconnected(self, account_id: str) -> SyncOutcome:
        self._oauth.forget(account_id)
        await self._coordinator.purge_disconnected(account_id)
        return SyncOutcome(
            account_id=account_id,
            status="skipped",
            error="Account was disconnected during sync",
            finished_at=self._clock(),
        )
