"""AlmanacDaemon: builds every component from an :class:`AlmanacConfig`.

Startup sequence:

1. Open storage (settings store + secret backend) for the configured backend.
2. Resolve the vault key and build the :class:`CredentialVault`.
3. Build the OAuth lifecycle, calendar provider, coordinator and sync engine.
4. Restore accounts and overrides (``coordinator.load()``).
5. (``start`` only) launch the sync poller and the auto-join scheduler.

The CLI uses the daemon as an async context manager for one-shot commands
and calls :meth:`start` for the long-running ``almanac run``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

import asyncpg
import click
import httpx

from almanac.autojoin import AutoJoinScheduler, UrlOpener
from almanac.config import AlmanacConfig
from almanac.coordinator import CalendarCoordinator
from almanac.core.state import (
    JsonFileStateStore,
    MemoryStateStore,
    PostgresStateStore,
    StateStore,
)
from almanac.credential_store import (
    CredentialVault,
    FileSecretBackend,
    MemorySecretBackend,
    PostgresSecretBackend,
    SecretBackend,
    credential_key,
    resolve_vault_key,
)
from almanac.models import SyncOutcome, local_timezone
from almanac.oauth import Clock, OAuthClientConfig, OAuthLifecycle, utc_now
from almanac.providers.base import CalendarProvider
from almanac.providers.google import GoogleCalendarProvider
from almanac.sync import SyncEngine

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"
SECRETS_DIRNAME = "secrets"
VAULT_KEY_FILENAME = "vault.key"


def open_url_in_browser(url: str) -> None:
    """Default auto-join opener: the system browser."""
    click.launch(url)


class AlmanacDaemon:
    """Owns the component graph and its background tasks.

    Every collaborator can be injected for tests; anything left ``None`` is
    built from *config*.
    """

    def __init__(
        self,
        config: AlmanacConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        provider: CalendarProvider | None = None,
        store: StateStore | None = None,
        secret_backend: SecretBackend | None = None,
        vault_key: bytes | None = None,
        opener: UrlOpener = open_url_in_browser,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self._clock = clock
        self._opener = opener
        self._owns_http_client = http_client is None
        self._http_client = http_client
        self._provider = provider
        self._store = store
        self._secret_backend = secret_backend
        self._vault_key = vault_key
        self._pool: Any = None

        self.vault: CredentialVault | None = None
        self.oauth: OAuthLifecycle | None = None
        self.coordinator: CalendarCoordinator | None = None
        self.sync_engine: SyncEngine | None = None
        self.scheduler: AutoJoinScheduler | None = None

        self._opened = False
        self._sync_task: asyncio.Task | None = None
        self._force_sync_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._opened:
            return
        await self._open_storage()

        if self._vault_key is None:
            self._vault_key = resolve_vault_key(self.config.data_dir / VAULT_KEY_FILENAME)
        assert self._secret_backend is not None and self._store is not None
        self.vault = CredentialVault(self._secret_backend, key=self._vault_key)

        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)

        display_tz = self.config.zone or local_timezone()
        if self._provider is None:
            self._provider = GoogleCalendarProvider(
                self._http_client,
                base_url=self.config.sync.api_base_url,
                display_tz=display_tz,
                organizer_default=self.config.autojoin.organizer_default,
            )

        self.oauth = OAuthLifecycle(
            OAuthClientConfig.from_settings(self.config.oauth),
            self._http_client,
            clock=self._clock,
            expiry_margin=self.config.oauth.expiry_margin_seconds,
        )
        self.coordinator = CalendarCoordinator(self._store, self.vault, clock=self._clock)
        self.sync_engine = SyncEngine(
            coordinator=self.coordinator,
            vault=self.vault,
            store=self._store,
            oauth=self.oauth,
            provider=self._provider,
            clock=self._clock,
            past_window=timedelta(days=self.config.sync.past_days),
            future_window=timedelta(days=self.config.sync.future_days),
        )
        self.scheduler = AutoJoinScheduler(
            self.coordinator,
            self._opener,
            clock=self._clock,
            interval=timedelta(seconds=self.config.autojoin.poll_interval_seconds),
            window=timedelta(seconds=self.config.autojoin.window_seconds),
            lookahead=timedelta(minutes=self.config.autojoin.lookahead_minutes),
        )

        await self.coordinator.load()
        await self.vault.preload(credential_key(a.id) for a in self.coordinator.accounts())
        self._opened = True

    async def start(self) -> None:
        """Open, then run the sync poller and (if enabled) the auto-join scheduler."""
        await self.open()
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(
                self._run_sync_poller(), name="almanac-sync-poller"
            )
            logger.info(
                "Sync poller started (interval=%ss)",
                self.config.sync.interval_seconds,
            )
        if self.config.autojoin.enabled and self.scheduler is not None:
            self.scheduler.start()

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()

        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
        self._sync_task = None

        if self._provider is not None:
            await self._provider.shutdown()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._opened = False

    async def __aenter__(self) -> AlmanacDaemon:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def request_sync(self) -> None:
        """Wake the poller for an immediate pass."""
        self._force_sync_event.set()

    async def sync_now(self, account_id: str | None = None) -> list[SyncOutcome]:
        engine = self._require(self.sync_engine)
        if account_id is not None:
            return [await engine.refresh_account(account_id)]
        return await engine.refresh_all_accounts()

    async def _run_sync_poller(self) -> None:
        """Background task: sync all accounts at the configured interval.

        ``request_sync`` short-circuits the wait for an immediate pass.
        """
        engine = self._require(self.sync_engine)
        interval_seconds = self.config.sync.interval_seconds
        while True:
            try:
                outcomes = await engine.refresh_all_accounts()
                failed = [o.account_id for o in outcomes if o.status == "error"]
                if failed:
                    logger.warning("Sync pass finished with errors for: %s", ", ".join(failed))
            except Exception as exc:
                logger.error("Sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._force_sync_event.wait(), timeout=interval_seconds)
                self._force_sync_event.clear()
                logger.debug("Sync poller: immediate sync requested")
            except TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _open_storage(self) -> None:
        storage = self.config.storage
        if self._store is not None and self._secret_backend is not None:
            return

        if storage.backend == "memory":
            self._store = self._store or MemoryStateStore()
            self._secret_backend = self._secret_backend or MemorySecretBackend()
        elif storage.backend == "postgres":
            self._pool = await asyncpg.create_pool(dsn=storage.dsn, min_size=1, max_size=4)
            state_store = PostgresStateStore(self._pool)
            secret_backend = PostgresSecretBackend(self._pool)
            await state_store.ensure_schema()
            await secret_backend.ensure_schema()
            self._store = self._store or state_store
            self._secret_backend = self._secret_backend or secret_backend
            logger.info("Connected to PostgreSQL storage")
        else:
            data_dir = self.config.data_dir
            self._store = self._store or JsonFileStateStore(data_dir / SETTINGS_FILENAME)
            self._secret_backend = self._secret_backend or FileSecretBackend(
                data_dir / SECRETS_DIRNAME
            )

    @staticmethod
    def _require(component):
        if component is None:
            raise RuntimeError("AlmanacDaemon is not open; call open() first")
        return component
