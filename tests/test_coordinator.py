"""Tests for almanac.coordinator.CalendarCoordinator."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from almanac import settings
from almanac.coordinator import CalendarCoordinator, UnknownAccountError, UnknownCalendarError
from almanac.credential_store import credential_key
from almanac.models import ACCOUNT_COLOR_PALETTE, CalendarRef, ViewMode, ViewState

pytestmark = pytest.mark.unit

_ME = "me@example.com"
_OTHER = "other@example.com"
_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


async def _connect(coordinator, make_credential, account_id: str = _ME, **kwargs):
    return await coordinator.add_account(account_id, make_credential(account_id), **kwargs)


async def _seed(coordinator, make_event, account_id: str = _ME):
    calendars = [
        CalendarRef(id="work", summary="Work", provider_color="#0B8043"),
        CalendarRef(id="home", summary="Home"),
    ]
    events = [
        make_event("w1", account_id=account_id, calendar_id="work"),
        make_event(
            "h1", account_id=account_id, calendar_id="home", start=_NOW + timedelta(hours=2)
        ),
    ]
    assert await coordinator.apply_sync(account_id, calendars, events) is True


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class TestAccounts:
    async def test_add_account_persists_credential_and_settings(
        self, coordinator, make_credential, store, secret_backend
    ):
        account = await _connect(coordinator, make_credential, display_name="Me")

        assert account.display_name == "Me"
        assert account.color_hex == ACCOUNT_COLOR_PALETTE[0]
        assert account.auto_join_enabled is True
        assert credential_key(_ME) in secret_backend.data
        assert [a.id for a in await settings.load_accounts(store)] == [_ME]

    async def test_new_accounts_get_distinct_colors(self, coordinator, make_credential):
        first = await _connect(coordinator, make_credential)
        second = await _connect(coordinator, make_credential, _OTHER)

        assert first.color_hex != second.color_hex
        assert second.display_name == _OTHER

    async def test_re_sign_in_keeps_color_and_auto_join(
        self, coordinator, make_credential, vault
    ):
        await _connect(coordinator, make_credential)
        await coordinator.set_auto_join(_ME, False)
        original = coordinator.account(_ME)

        renewed = make_credential(_ME, access_token="fresh-token")
        account = await coordinator.add_account(_ME, renewed)

        assert account.color_hex == original.color_hex
        assert account.auto_join_enabled is False
        assert len(coordinator.accounts()) == 1
        assert (await vault.get_credential(_ME)).access_token == "fresh-token"

    async def test_credential_for_other_account_rejected(self, coordinator, make_credential):
        with pytest.raises(ValueError):
            await coordinator.add_account(_ME, make_credential(_OTHER))
        assert coordinator.accounts() == ()

    async def test_remove_account_cascades(
        self, coordinator, make_credential, make_event, store, secret_backend
    ):
        await _connect(coordinator, make_credential)
        await _connect(coordinator, make_credential, _OTHER)
        await _seed(coordinator, make_event)
        await _seed(coordinator, make_event, _OTHER)
        await coordinator.record_sync_error(_ME, "boom")

        assert await coordinator.remove_account(_ME) is True

        assert [a.id for a in coordinator.accounts()] == [_OTHER]
        assert coordinator.calendars(_ME) == ()
        assert _ME not in coordinator.sync_errors()
        assert {e.account_id for e in coordinator.events()} == {_OTHER}
        assert credential_key(_ME) not in secret_backend.data
        assert await settings.load_calendar_settings(store, _ME) == []
        assert [a.id for a in await settings.load_accounts(store)] == [_OTHER]

    async def test_remove_unknown_account_reports_false(self, coordinator):
        assert await coordinator.remove_account("ghost@example.com") is False

    async def test_set_auto_join_unknown_account(self, coordinator):
        with pytest.raises(UnknownAccountError):
            await coordinator.set_auto_join("ghost@example.com", True)

    async def test_auto_join_account_ids(self, coordinator, make_credential):
        await _connect(coordinator, make_credential)
        await _connect(coordinator, make_credential, _OTHER)
        await coordinator.set_auto_join(_OTHER, False)

        assert coordinator.auto_join_account_ids() == frozenset({_ME})

    async def test_load_restores_persisted_state(
        self, coordinator, make_credential, make_event, store, vault, clock
    ):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)
        await coordinator.set_calendar_visibility(_ME, "home", False)
        view_state = ViewState(mode=ViewMode.week, selected_date=date(2026, 3, 2))
        await coordinator.set_view_state(view_state)

        reloaded = CalendarCoordinator(store, vault, clock=clock)
        await reloaded.load()

        assert [a.id for a in reloaded.accounts()] == [_ME]
        assert {c.id: c.is_visible for c in reloaded.calendars(_ME)} == {
            "work": True,
            "home": False,
        }
        assert reloaded.view_state() == view_state
        assert reloaded.events() == ()


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


class TestCalendarOverrides:
    async def test_hiding_removes_events_immediately(
        self, coordinator, make_credential, make_event
    ):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)

        hidden = await coordinator.set_calendar_visibility(_ME, "home", False)

        assert hidden.is_visible is False
        assert {e.calendar_id for e in coordinator.events()} == {"work"}

    async def test_color_restamps_events(self, coordinator, make_credential, make_event):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)

        updated = await coordinator.set_calendar_color(_ME, "work", "#ff0000")

        assert updated.custom_color == "#FF0000"
        colors = {e.calendar_id: e.color_hex for e in coordinator.events()}
        assert colors["work"] == "#FF0000"

        await coordinator.set_calendar_color(_ME, "work", None)
        colors = {e.calendar_id: e.color_hex for e in coordinator.events()}
        assert colors["work"] == "#0B8043"

    async def test_invalid_color_rejected(self, coordinator, make_credential, make_event):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)
        with pytest.raises(ValueError):
            await coordinator.set_calendar_color(_ME, "work", "red")

    async def test_unknown_calendar(self, coordinator, make_credential):
        await _connect(coordinator, make_credential)
        with pytest.raises(UnknownCalendarError):
            await coordinator.set_calendar_visibility(_ME, "nope", False)

    async def test_unknown_account(self, coordinator):
        with pytest.raises(UnknownAccountError):
            await coordinator.set_calendar_color("ghost@example.com", "work", None)


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------


class TestApplySync:
    async def test_events_stamped_with_calendar_color(
        self, coordinator, make_credential, make_event
    ):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)

        colors = {e.calendar_id: e.color_hex for e in coordinator.events()}
        assert colors == {"work": "#0B8043", "home": "#4285F4"}

    async def test_accounts_are_isolated(self, coordinator, make_credential, make_event):
        await _connect(coordinator, make_credential)
        await _connect(coordinator, make_credential, _OTHER)
        await _seed(coordinator, make_event)
        await _seed(coordinator, make_event, _OTHER)

        await coordinator.apply_sync(_ME, list(coordinator.calendars(_ME)), [])

        assert {e.account_id for e in coordinator.events()} == {_OTHER}
        assert len(coordinator.events()) == 2

    async def test_idempotent(self, coordinator, make_credential, make_event):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)
        first = coordinator.timeline()

        await _seed(coordinator, make_event)

        assert coordinator.timeline() == first

    async def test_override_made_during_sync_wins(self, coordinator, make_credential, make_event):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)
        # The provider's listing still says visible; the user hid it meanwhile.
        fresh = [CalendarRef(id="work", summary="Work"), CalendarRef(id="home", summary="Home")]
        await coordinator.set_calendar_visibility(_ME, "home", False)

        await coordinator.apply_sync(
            _ME,
            fresh,
            [make_event("h2", calendar_id="home"), make_event("w2", calendar_id="work")],
        )

        assert [e.provider_event_id for e in coordinator.events()] == ["w2"]
        assert {c.id: c.is_visible for c in coordinator.calendars(_ME)}["home"] is False

    async def test_events_of_unknown_calendars_dropped(
        self, coordinator, make_credential, make_event
    ):
        await _connect(coordinator, make_credential)
        await coordinator.apply_sync(
            _ME,
            [CalendarRef(id="work", summary="Work")],
            [make_event("x", calendar_id="elsewhere")],
        )
        assert coordinator.events() == ()

    async def test_disconnected_account_is_ignored(self, coordinator, make_event):
        result = await coordinator.apply_sync(
            _ME, [CalendarRef(id="work", summary="Work")], [make_event("w1", calendar_id="work")]
        )

        assert result is False
        assert coordinator.events() == ()

    async def test_clears_previous_sync_error(self, coordinator, make_credential, make_event):
        await _connect(coordinator, make_credential)
        await coordinator.record_sync_error(_ME, "access_token=abc failed\n twice")
        assert coordinator.sync_errors()[_ME] == "access_token=[REDACTED] failed twice"

        await _seed(coordinator, make_event)

        assert _ME not in coordinator.sync_errors()

    async def test_sync_error_for_unknown_account_not_recorded(self, coordinator):
        assert await coordinator.record_sync_error(_ME, "boom") is False
        assert coordinator.sync_errors() == {}

    async def test_persists_merged_settings(self, coordinator, make_credential, make_event, store):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)

        stored = await settings.load_calendar_settings(store, _ME)
        assert [c.id for c in stored] == ["work", "home"]
        assert list(coordinator.calendars(_ME)) == stored


class TestCredentialWrites:
    async def test_persist_refreshed_credential(self, coordinator, make_credential, vault):
        await _connect(coordinator, make_credential)
        refreshed = make_credential(access_token="refreshed")

        assert await coordinator.persist_credential(refreshed) is True
        assert (await vault.get_credential(_ME)).access_token == "refreshed"

    async def test_persist_for_disconnected_account_is_dropped(
        self, coordinator, make_credential, secret_backend
    ):
        await _connect(coordinator, make_credential)
        await coordinator.remove_account(_ME)

        assert await coordinator.persist_credential(make_credential()) is False
        assert credential_key(_ME) not in secret_backend.data

    async def test_purge_disconnected(self, coordinator, make_credential, vault, store):
        await vault.put_credential(make_credential())
        await settings.save_calendar_settings(store, _ME, [CalendarRef(id="w", summary="W")])

        assert await coordinator.purge_disconnected(_ME) is True
        assert await vault.get_credential(_ME) is None
        assert await settings.load_calendar_settings(store, _ME) == []

    async def test_purge_leaves_connected_account_alone(self, coordinator, make_credential, vault):
        await _connect(coordinator, make_credential)

        assert await coordinator.purge_disconnected(_ME) is False
        assert await vault.get_credential(_ME) == make_credential()


class TestQueries:
    async def test_upcoming_and_between(self, coordinator, make_credential, make_event):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)

        upcoming = coordinator.upcoming_events()
        assert [e.provider_event_id for e in upcoming] == ["w1"]

        wider = coordinator.upcoming_events(within=timedelta(hours=3))
        assert [e.provider_event_id for e in wider] == ["w1", "h1"]

        later = coordinator.events_between(_NOW + timedelta(hours=1), _NOW + timedelta(hours=4))
        assert [e.provider_event_id for e in later] == ["h1"]

    async def test_snapshots_are_not_affected_by_later_mutations(
        self, coordinator, make_credential, make_event
    ):
        await _connect(coordinator, make_credential)
        await _seed(coordinator, make_event)
        snapshot = coordinator.events()

        await coordinator.set_calendar_visibility(_ME, "home", False)

        assert len(snapshot) == 2
        assert len(coordinator.events()) == 1
