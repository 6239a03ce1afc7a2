"""Shared fixtures: a controllable clock, in-memory storage and a fake provider."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from almanac.coordinator import CalendarCoordinator
from almanac.core.state import MemoryStateStore
from almanac.credential_store import CredentialVault, MemorySecretBackend
from almanac.errors import AlmanacError
from almanac.models import CalendarRef, Credential, Event, SelfResponse, compound_event_id
from almanac.providers.base import CalendarProvider

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)
TEST_VAULT_KEY = bytes(range(32))


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProvider(CalendarProvider):
    """In-memory provider keyed by account id; records every call."""

    def __init__(self) -> None:
        self.calendars: dict[str, list[CalendarRef]] = {}
        self.events: dict[tuple[str, str], list[Event]] = {}
        self.errors: dict[str, AlmanacError] = {}
        self.calls: list[tuple[str, str, str | None]] = []

    @property
    def name(self) -> str:
        return "fake"

    async def list_calendars(self, credential: Credential) -> list[CalendarRef]:
        self.calls.append(("list_calendars", credential.account_id, None))
        if credential.account_id in self.errors:
            raise self.errors[credential.account_id]
        return list(self.calendars.get(credential.account_id, []))

    async def list_events(
        self,
        credential: Credential,
        *,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
        self_email: str,
    ) -> list[Event]:
        self.calls.append(("list_events", credential.account_id, calendar_id))
        return [
            event
            for event in self.events.get((credential.account_id, calendar_id), [])
            if event.intersects(start_at, end_at)
        ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def secret_backend() -> MemorySecretBackend:
    return MemorySecretBackend()


@pytest.fixture
def vault(secret_backend: MemorySecretBackend) -> CredentialVault:
    return CredentialVault(secret_backend, key=TEST_VAULT_KEY)


@pytest.fixture
def coordinator(store, vault, clock) -> CalendarCoordinator:
    return CalendarCoordinator(store, vault, clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_credential(clock: FakeClock) -> Callable[..., Credential]:
    def _make(account_id: str = "me@example.com", **overrides: Any) -> Credential:
        values: dict[str, Any] = {
            "account_id": account_id,
            "access_token": f"access-{account_id}",
            "refresh_token": f"refresh-{account_id}",
            "expiry": clock.now + timedelta(hours=1),
        }
        values.update(overrides)
        return Credential(**values)

    return _make


@pytest.fixture
def make_event() -> Callable[..., Event]:
    def _make(
        provider_id: str = "evt1",
        *,
        account_id: str = "me@example.com",
        calendar_id: str = "primary",
        start: datetime = NOW,
        minutes: float = 60,
        end: datetime | None = None,
        title: str | None = None,
        meeting_url: str | None = None,
        self_response: SelfResponse | None = None,
        color_hex: str | None = None,
    ) -> Event:
        return Event(
            id=compound_event_id(provider_id, account_id),
            provider_event_id=provider_id,
            calendar_id=calendar_id,
            account_id=account_id,
            title=title or provider_id,
            start=start,
            end=end if end is not None else start + timedelta(minutes=minutes),
            meeting_url=meeting_url,
            self_response=self_response,
            color_hex=color_hex,
        )

    return _make
