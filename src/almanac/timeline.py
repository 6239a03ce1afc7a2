"""Immutable merged event timeline.

Every mutation returns a new :class:`Timeline`, so a reader holding a
reference never observes a half-applied update.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from almanac.models import Event


def timeline_sort_key(event: Event) -> tuple[datetime, datetime, str]:
    return (event.start, event.end, event.id)


def _dedupe(events: Iterable[Event]) -> list[Event]:
    """Keep the last occurrence of each event id."""
    by_id: dict[str, Event] = {}
    for event in events:
        by_id[event.id] = event
    return list(by_id.values())


@dataclass(frozen=True)
class Timeline:
    events: tuple[Event, ...] = ()

    @classmethod
    def from_events(cls, events: Iterable[Event]) -> Timeline:
        return cls(tuple(sorted(_dedupe(events), key=timeline_sort_key)))

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):
        return iter(self.events)

    def replace_account(self, account_id: str, events: Iterable[Event]) -> Timeline:
        """Swap the account's slice for *events*; other accounts are untouched."""
        incoming = [event for event in events if event.account_id == account_id]
        kept = [event for event in self.events if event.account_id != account_id]
        return Timeline.from_events([*kept, *incoming])

    def remove_account(self, account_id: str) -> Timeline:
        return Timeline(tuple(event for event in self.events if event.account_id != account_id))

    def remove_calendar(self, account_id: str, calendar_id: str) -> Timeline:
        return Timeline(
            tuple(
                event
                for event in self.events
                if not (event.account_id == account_id and event.calendar_id == calendar_id)
            )
        )

    def restamp_calendar(self, account_id: str, calendar_id: str, color_hex: str) -> Timeline:
        return Timeline(
            tuple(
                event.model_copy(update={"color_hex": color_hex})
                if event.account_id == account_id and event.calendar_id == calendar_id
                else event
                for event in self.events
            )
        )

    def between(self, start: datetime, end: datetime) -> tuple[Event, ...]:
        """Events intersecting ``[start, end)``."""
        return tuple(event for event in self.events if event.intersects(start, end))

    def starting_between(self, start: datetime, end: datetime) -> tuple[Event, ...]:
        """Events whose start falls in ``[start, end]``."""
        return tuple(event for event in self.events if start <= event.start <= end)

    def upcoming(
        self,
        now: datetime,
        *,
        within: timedelta,
        grace: timedelta = timedelta(seconds=60),
    ) -> tuple[Event, ...]:
        return self.starting_between(now - grace, now + within)
