"""Auto-join scheduler: opens meeting links when accepted events begin.

Every ``interval`` the scheduler asks its host for events starting soon and
opens the meeting URL of each accepted event whose start is within
``window`` of now.  An event id is launched at most once per process; the
id is marked before the opener runs, so a failing opener is not retried.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from opentelemetry import trace

from almanac.models import Event, SelfResponse
from almanac.oauth import Clock, utc_now

logger = logging.getLogger(__name__)

UrlOpener = Callable[[str], object]

DEFAULT_INTERVAL = timedelta(seconds=30)
DEFAULT_WINDOW = timedelta(seconds=120)
DEFAULT_LOOKAHEAD = timedelta(hours=1)


class AutoJoinHost(Protocol):
    def upcoming_events(
        self,
        *,
        now: datetime | None = None,
        within: timedelta = ...,
        grace: timedelta = ...,
    ) -> tuple[Event, ...]: ...

    def auto_join_account_ids(self) -> frozenset[str]: ...


class AutoJoinScheduler:
    def __init__(
        self,
        host: AutoJoinHost,
        opener: UrlOpener,
        *,
        clock: Clock = utc_now,
        interval: timedelta = DEFAULT_INTERVAL,
        window: timedelta = DEFAULT_WINDOW,
        lookahead: timedelta = DEFAULT_LOOKAHEAD,
    ) -> None:
        self._host = host
        self._opener = opener
        self._clock = clock
        self.interval = interval
        self.window = window
        self.lookahead = lookahead
        self.launched_event_ids: set[str] = set()
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_due(self, event: Event, now: datetime, enabled_accounts: frozenset[str]) -> bool:
        return (
            event.self_response == SelfResponse.accepted
            and event.account_id in enabled_accounts
            and bool(event.meeting_url)
            and event.id not in self.launched_event_ids
            and abs(event.start - now) <= self.window
        )

    async def tick(self) -> list[str]:
        """Run one evaluation. Returns the ids launched; skipped while another tick runs."""
        if self._tick_lock.locked():
            logger.debug("Auto-join tick skipped; previous tick still running")
            return []

        async with self._tick_lock:
            tracer = trace.get_tracer("almanac")
            with tracer.start_as_current_span("almanac.autojoin.tick") as span:
                now = self._clock()
                candidates = self._host.upcoming_events(
                    now=now, within=self.lookahead, grace=self.window
                )
                enabled_accounts = self._host.auto_join_account_ids()
                span.set_attribute("events_considered", len(candidates))

                launched: list[str] = []
                for event in candidates:
                    if not self.is_due(event, now, enabled_accounts):
                        continue
                    self.launched_event_ids.add(event.id)
                    launched.append(event.id)
                    await self._open(event)

                span.set_attribute("events_launched", len(launched))
                return launched

    async def _open(self, event: Event) -> None:
        assert event.meeting_url is not None
        logger.info("Auto-joining %r (%s)", event.title, event.id)
        try:
            result = self._opener(event.meeting_url)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Failed to open meeting link for %s", event.id)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="almanac-autojoin")
        logger.info(
            "Auto-join scheduler started (interval=%ss, window=%ss)",
            self.interval.total_seconds(),
            self.window.total_seconds(),
        )

    async def stop(self) -> None:
        """Stop the loop once any in-flight tick has finished."""
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not None:
            await task

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Auto-join tick error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.interval.total_seconds(),
                )
            except TimeoutError:
                pass
