"""Tests for almanac.daemon.AlmanacDaemon wiring and background tasks."""

from __future__ import annotations

import asyncio
import stat

import httpx
import pytest

from almanac.config import AlmanacConfig, AutoJoinSettings, StorageSettings, SyncSettings
from almanac.core.state import JsonFileStateStore, MemoryStateStore
from almanac.credential_store import MASTER_KEY_ENV, FileSecretBackend, MemorySecretBackend
from almanac.daemon import VAULT_KEY_FILENAME, AlmanacDaemon
from almanac.models import CalendarRef

pytestmark = pytest.mark.unit

_ME = "me@example.com"
_KEY = bytes(range(32))


@pytest.fixture(autouse=True)
def _no_master_key(monkeypatch):
    monkeypatch.delenv(MASTER_KEY_ENV, raising=False)


def _config(tmp_path, *, backend: str = "memory", **overrides) -> AlmanacConfig:
    return AlmanacConfig(
        config_dir=tmp_path,
        storage=StorageSettings(backend=backend),
        **overrides,
    )


def _unused_http_client() -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected HTTP request to {request.url}")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOpen:
    async def test_memory_backend_builds_components(self, tmp_path, provider, clock):
        daemon = AlmanacDaemon(
            _config(tmp_path),
            provider=provider,
            http_client=_unused_http_client(),
            vault_key=_KEY,
            clock=clock,
        )

        async with daemon:
            assert isinstance(daemon._store, MemoryStateStore)
            assert isinstance(daemon._secret_backend, MemorySecretBackend)
            assert daemon.coordinator.accounts() == ()
            assert daemon.oauth.configured is False

    async def test_file_backend_generates_key_and_paths(self, tmp_path, provider):
        daemon = AlmanacDaemon(
            _config(tmp_path, backend="file"),
            provider=provider,
            http_client=_unused_http_client(),
        )

        async with daemon:
            assert isinstance(daemon._store, JsonFileStateStore)
            assert isinstance(daemon._secret_backend, FileSecretBackend)

        key_file = tmp_path / VAULT_KEY_FILENAME
        assert key_file.exists()
        assert stat.S_IMODE(key_file.stat().st_mode) == 0o600

    async def test_state_survives_reopen_with_file_backend(
        self, tmp_path, provider, make_credential
    ):
        config = _config(tmp_path, backend="file")

        async with AlmanacDaemon(
            config, provider=provider, http_client=_unused_http_client()
        ) as daemon:
            await daemon.coordinator.add_account(_ME, make_credential(), "Me")

        async with AlmanacDaemon(
            config, provider=provider, http_client=_unused_http_client()
        ) as daemon:
            assert [a.display_name for a in daemon.coordinator.accounts()] == ["Me"]
            assert (await daemon.vault.get_credential(_ME)) == make_credential()

    async def test_sync_now_requires_open(self, tmp_path, provider):
        daemon = AlmanacDaemon(_config(tmp_path), provider=provider, vault_key=_KEY)
        with pytest.raises(RuntimeError, match="not open"):
            await daemon.sync_now()

    async def test_shared_http_client_left_open(self, tmp_path, provider):
        client = _unused_http_client()
        async with AlmanacDaemon(
            _config(tmp_path), provider=provider, http_client=client, vault_key=_KEY
        ):
            pass
        assert client.is_closed is False


class TestSync:
    async def test_sync_now_runs_engine(
        self, tmp_path, provider, clock, make_credential, make_event
    ):
        provider.calendars[_ME] = [CalendarRef(id="primary", summary="Me")]
        provider.events[(_ME, "primary")] = [make_event("e1")]

        async with AlmanacDaemon(
            _config(tmp_path),
            provider=provider,
            http_client=_unused_http_client(),
            vault_key=_KEY,
            clock=clock,
        ) as daemon:
            await daemon.coordinator.add_account(_ME, make_credential())

            (outcome,) = await daemon.sync_now(_ME)
            assert outcome.ok
            assert [e.provider_event_id for e in daemon.coordinator.events()] == ["e1"]

            assert [o.account_id for o in await daemon.sync_now()] == [_ME]

    async def test_poller_runs_and_request_sync_wakes_it(
        self, tmp_path, provider, clock, make_credential
    ):
        provider.calendars[_ME] = [CalendarRef(id="primary", summary="Me")]
        config = _config(
            tmp_path,
            sync=SyncSettings(interval_seconds=3600),
            autojoin=AutoJoinSettings(enabled=False),
        )
        daemon = AlmanacDaemon(
            config,
            provider=provider,
            http_client=_unused_http_client(),
            vault_key=_KEY,
            clock=clock,
        )
        await daemon.open()
        await daemon.coordinator.add_account(_ME, make_credential())

        await daemon.start()
        try:
            for _ in range(50):
                if provider.calls:
                    break
                await asyncio.sleep(0.01)
            first_pass = len(provider.calls)
            assert first_pass > 0
            assert daemon.scheduler.running is False

            daemon.request_sync()
            for _ in range(50):
                if len(provider.calls) > first_pass:
                    break
                await asyncio.sleep(0.01)
            assert len(provider.calls) > first_pass
        finally:
            await daemon.shutdown()

        assert daemon._sync_task is None

    async def test_start_launches_scheduler_when_enabled(self, tmp_path, provider, clock):
        daemon = AlmanacDaemon(
            _config(tmp_path, sync=SyncSettings(interval_seconds=3600)),
            provider=provider,
            http_client=_unused_http_client(),
            vault_key=_KEY,
            clock=clock,
        )
        await daemon.start()
        try:
            assert daemon.scheduler.running
        finally:
            await daemon.shutdown()
        assert not daemon.scheduler.running
