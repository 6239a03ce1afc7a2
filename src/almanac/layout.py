"""Overlap layout: non-colliding columns for the timed events of one day.

Sweep events by start time.  Each event takes the first column whose last
event has ended, or opens a new column.  A group of mutually reachable
overlaps ends when the next event starts at or after the group's running
maximum end; every event in a finished group learns how many columns the
group used, so siblings share the width evenly.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo

from almanac.models import Event, local_timezone

MIN_VISUAL_DURATION = timedelta(minutes=30)


@dataclass(frozen=True)
class LayoutSlot:
    event: Event
    column_index: int
    columns_in_group: int
    # Minutes from local midnight; only set by layout_day.
    start_minute: float | None = None
    end_minute: float | None = None

    @property
    def width(self) -> float:
        return 1.0 / self.columns_in_group

    @property
    def offset(self) -> float:
        return self.column_index * self.width


def visual_end(event: Event, min_duration: timedelta = MIN_VISUAL_DURATION) -> datetime:
    """End time used for layout: zero/negative durations are stretched."""
    if event.end <= event.start:
        return event.start + min_duration
    return event.end


def assign_columns(
    events: Iterable[Event],
    *,
    min_duration: timedelta = MIN_VISUAL_DURATION,
) -> list[LayoutSlot]:
    """Lay out timed events; the result follows start order (stable on ties)."""
    ordered = sorted(events, key=lambda e: e.start)
    slots: list[LayoutSlot] = []

    group: list[tuple[Event, int]] = []
    column_ends: list[datetime] = []
    group_end: datetime | None = None

    def flush() -> None:
        columns = len(column_ends)
        for member, column in group:
            slots.append(LayoutSlot(event=member, column_index=column, columns_in_group=columns))

    for event in ordered:
        end = visual_end(event, min_duration)
        if group_end is not None and event.start >= group_end:
            flush()
            group = []
            column_ends = []
            group_end = None

        for index, column_end in enumerate(column_ends):
            if column_end <= event.start:
                column_ends[index] = end
                group.append((event, index))
                break
        else:
            column_ends.append(end)
            group.append((event, len(column_ends) - 1))

        group_end = end if group_end is None else max(group_end, end)

    if group:
        flush()
    return slots


def day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time(0, 0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz)
    return start, end


def all_day_events(
    events: Sequence[Event],
    day: date,
    tz: tzinfo | None = None,
) -> list[Event]:
    """All-day events covering *day*, for the fixed lane above the grid."""
    zone = tz or local_timezone()
    start, end = day_bounds(day, zone)
    return [e for e in events if e.is_all_day(zone) and e.intersects(start, end)]


def layout_day(
    events: Sequence[Event],
    day: date,
    tz: tzinfo | None = None,
    *,
    min_duration: timedelta = MIN_VISUAL_DURATION,
) -> list[LayoutSlot]:
    """Columns for the timed events intersecting *day*, clipped to the day."""
    zone = tz or local_timezone()
    day_start, day_end = day_bounds(day, zone)

    clipped: list[Event] = []
    for event in events:
        if event.is_all_day(zone) or not event.intersects(day_start, day_end):
            continue
        if event.start < day_start or event.end > day_end:
            event = event.model_copy(
                update={"start": max(event.start, day_start), "end": min(event.end, day_end)}
            )
        clipped.append(event)

    slots = assign_columns(clipped, min_duration=min_duration)
    day_minutes = (day_end - day_start).total_seconds() / 60
    placed: list[LayoutSlot] = []
    for slot in slots:
        start_minute = (slot.event.start - day_start).total_seconds() / 60
        end_minute = (visual_end(slot.event, min_duration) - day_start).total_seconds() / 60
        placed.append(
            LayoutSlot(
                event=slot.event,
                column_index=slot.column_index,
                columns_in_group=slot.columns_in_group,
                start_minute=start_minute,
                end_minute=min(end_minute, day_minutes),
            )
        )
    return placed
