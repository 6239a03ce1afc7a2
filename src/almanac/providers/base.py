"""Calendar provider abstraction."""

from __future__ import annotations

import abc
from datetime import datetime

from almanac.models import CalendarRef, Credential, Event


class CalendarProvider(abc.ABC):
    """Read-only calendar source for one credential at a time.

    Implementations are stateless apart from their HTTP client: the caller
    passes a fresh credential on every call and handles refresh itself.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_calendars(self, credential: Credential) -> list[CalendarRef]:
        """Return the account's calendars with default (visible, uncolored) overrides."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        credential: Credential,
        *,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
        self_email: str,
    ) -> list[Event]:
        """Return expanded events of *calendar_id* in ``[start_at, end_at)``."""
        ...

    async def shutdown(self) -> None:
        """Release provider resources (HTTP clients, etc)."""
        return None
