"""Tests for almanac.layout: column assignment and the single-day view."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from almanac.layout import MIN_VISUAL_DURATION, all_day_events, assign_columns, layout_day

pytestmark = pytest.mark.unit

_DAY = date(2026, 3, 2)


def _at(hour: int, minute: int = 0, day: date = _DAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=UTC)


def _columns(slots) -> dict[str, tuple[int, int]]:
    return {
        slot.event.provider_event_id: (slot.column_index, slot.columns_in_group) for slot in slots
    }


class TestAssignColumns:
    def test_overlap_pair_and_separate_group(self, make_event):
        events = [
            make_event("late", start=_at(11)),
            make_event("first", start=_at(9)),
            make_event("second", start=_at(9, 30)),
        ]

        slots = assign_columns(events)

        assert [s.event.provider_event_id for s in slots] == ["first", "second", "late"]
        assert _columns(slots) == {"first": (0, 2), "second": (1, 2), "late": (0, 1)}
        assert slots[1].width == 0.5
        assert slots[1].offset == 0.5

    def test_touching_events_do_not_overlap(self, make_event):
        slots = assign_columns(
            [make_event("a", start=_at(9)), make_event("b", start=_at(10))]
        )
        assert _columns(slots) == {"a": (0, 1), "b": (0, 1)}

    def test_freed_column_is_reused_within_a_group(self, make_event):
        events = [
            make_event("long", start=_at(9), minutes=180),
            make_event("short", start=_at(9), minutes=30),
            make_event("after-short", start=_at(10)),
        ]

        assert _columns(assign_columns(events)) == {
            "long": (0, 2),
            "short": (1, 2),
            "after-short": (1, 2),
        }

    def test_chained_overlaps_share_one_group(self, make_event):
        events = [
            make_event("a", start=_at(9), minutes=60),
            make_event("b", start=_at(9, 45), minutes=60),
            make_event("c", start=_at(10, 30), minutes=60),
        ]

        assert _columns(assign_columns(events)) == {"a": (0, 2), "b": (1, 2), "c": (0, 2)}

    def test_zero_duration_gets_minimum_visual_height(self, make_event):
        events = [
            make_event("point", start=_at(9), minutes=0),
            make_event("next", start=_at(9, 15)),
        ]

        assert _columns(assign_columns(events)) == {"point": (0, 2), "next": (1, 2)}

    def test_short_positive_duration_is_not_stretched(self, make_event):
        events = [
            make_event("blip", start=_at(9), minutes=5),
            make_event("next", start=_at(9, 15)),
        ]

        assert _columns(assign_columns(events)) == {"blip": (0, 1), "next": (0, 1)}

    def test_no_overlapping_events_share_a_column(self, make_event):
        events = [
            make_event(f"e{i}", start=_at(8) + timedelta(minutes=20 * i), minutes=50)
            for i in range(8)
        ]
        slots = assign_columns(events)

        for a in slots:
            for b in slots:
                if a is b or a.column_index != b.column_index:
                    continue
                assert a.event.end <= b.event.start or b.event.end <= a.event.start

    def test_empty(self):
        assert assign_columns([]) == []


class TestLayoutDay:
    def test_minutes_and_all_day_exclusion(self, make_event):
        events = [
            make_event("holiday", start=_at(0), minutes=24 * 60),
            make_event("standup", start=_at(9), minutes=15),
        ]

        slots = layout_day(events, _DAY, UTC)

        assert [s.event.provider_event_id for s in slots] == ["standup"]
        assert slots[0].start_minute == 9 * 60
        assert slots[0].end_minute == 9 * 60 + 15

    def test_events_crossing_midnight_are_clipped(self, make_event):
        overnight = make_event("overnight", start=_at(22, day=date(2026, 3, 1)), minutes=240)

        (slot,) = layout_day([overnight], _DAY, UTC)

        assert slot.event.start == _at(0)
        assert slot.event.end == _at(2)
        assert slot.start_minute == 0

    def test_events_on_other_days_are_ignored(self, make_event):
        tomorrow = make_event("tomorrow", start=_at(9, day=date(2026, 3, 3)))
        assert layout_day([tomorrow], _DAY, UTC) == []

    def test_zero_duration_end_minute_uses_minimum(self, make_event):
        (slot,) = layout_day([make_event("point", start=_at(12), minutes=0)], _DAY, UTC)
        assert slot.end_minute - slot.start_minute == MIN_VISUAL_DURATION.total_seconds() / 60

    def test_all_day_events_lane(self, make_event):
        events = [
            make_event("holiday", start=_at(0), minutes=24 * 60),
            make_event("trip", start=_at(0, day=date(2026, 3, 1)), minutes=3 * 24 * 60),
            make_event("standup", start=_at(9), minutes=15),
        ]

        lane = all_day_events(events, _DAY, UTC)

        assert {e.provider_event_id for e in lane} == {"holiday", "trip"}
