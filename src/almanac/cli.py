"""CLI for almanac: connect calendar accounts, sync, print agendas, run the daemon."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import click

from almanac.config import CONFIG_DIR_ENV, AlmanacConfig, ConfigError, load_config
from almanac.coordinator import UnknownAccountError, UnknownCalendarError
from almanac.core.logging import configure_logging
from almanac.daemon import AlmanacDaemon
from almanac.errors import AlmanacError, safe_error_message
from almanac.layout import all_day_events, day_bounds, layout_day
from almanac.models import SyncOutcome, ViewMode, local_timezone
from almanac.oauth import AuthorizationRequest, id_token_claims

logger = logging.getLogger(__name__)


class ConsoleAuthorizationPrompt:
    """Open the consent page and ask the user to paste back the code or redirect URL."""

    def __init__(self, *, open_browser: bool = True) -> None:
        self.open_browser = open_browser

    async def begin(self, request: AuthorizationRequest) -> str:
        click.echo("Open this URL to grant calendar access:\n")
        click.echo(f"  {request.url}\n")
        if self.open_browser:
            click.launch(request.url)
        return await asyncio.to_thread(
            click.prompt,
            "Paste the authorization code (or the full redirect URL)",
            type=str,
        )


def _build_daemon(config: AlmanacConfig) -> AlmanacDaemon:
    return AlmanacDaemon(config)


def _with_daemon(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Any]:
    """Run *fn(daemon, ...)* inside an opened daemon; map domain errors to exit code 1."""

    @functools.wraps(fn)
    @click.pass_obj
    def wrapper(config: AlmanacConfig, *args: Any, **kwargs: Any) -> Any:
        async def _run() -> Any:
            async with _build_daemon(config) as daemon:
                return await fn(daemon, *args, **kwargs)

        try:
            return asyncio.run(_run())
        except (AlmanacError, ConfigError, ValueError) as exc:
            raise click.ClickException(safe_error_message(exc)) from exc
        except UnknownAccountError as exc:
            raise click.ClickException(f"Unknown account: {exc.args[0]}") from exc
        except UnknownCalendarError as exc:
            raise click.ClickException(f"Unknown calendar: {exc.args[0]}") from exc

    return wrapper


def _echo_outcomes(outcomes: list[SyncOutcome]) -> bool:
    """Print one line per outcome; return True when every account synced."""
    all_ok = True
    for outcome in outcomes:
        if outcome.status == "ok":
            click.echo(
                f"{outcome.account_id}: {outcome.calendars} calendar(s), "
                f"{outcome.events} event(s)"
            )
        else:
            all_ok = all_ok and outcome.status != "error"
            click.echo(f"{outcome.account_id}: {outcome.status}: {outcome.error}", err=True)
    return all_ok


def _format_time(value: datetime, tz) -> str:
    return value.astimezone(tz).strftime("%H:%M")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar=CONFIG_DIR_ENV,
    default=None,
    help="Directory containing almanac.toml (default ~/.config/almanac)",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path | None) -> None:
    """almanac: multi-account calendar sync with meeting auto-join."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    ctx.obj = config


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@cli.command("sign-in")
@click.option("--no-browser", is_flag=True, help="Print the consent URL without opening it")
@_with_daemon
async def sign_in(daemon: AlmanacDaemon, no_browser: bool) -> None:
    """Connect a Google account and run its first sync."""
    prompt = ConsoleAuthorizationPrompt(open_browser=not no_browser)
    account_id, credential = await daemon.oauth.sign_in(prompt)

    display_name = None
    if credential.id_token:
        name = id_token_claims(credential.id_token).get("name")
        display_name = name if isinstance(name, str) and name.strip() else None

    account = await daemon.coordinator.add_account(account_id, credential, display_name)
    click.echo(f"Connected {account.id} ({account.color_hex})")
    _echo_outcomes(await daemon.sync_now(account.id))


@cli.command("accounts")
@_with_daemon
async def accounts(daemon: AlmanacDaemon) -> None:
    """List connected accounts."""
    connected = daemon.coordinator.accounts()
    if not connected:
        click.echo("No accounts connected. Run `almanac sign-in`.")
        return
    for account in connected:
        auto_join = "on" if account.auto_join_enabled else "off"
        click.echo(
            f"{account.id}  {account.display_name}  {account.color_hex}  auto-join={auto_join}"
        )


@cli.command("disconnect")
@click.argument("account_id")
@_with_daemon
async def disconnect(daemon: AlmanacDaemon, account_id: str) -> None:
    """Remove an account with its credential and calendar settings."""
    daemon.oauth.forget(account_id)
    if await daemon.coordinator.remove_account(account_id):
        click.echo(f"Disconnected {account_id}")
    else:
        click.echo(f"{account_id} was not connected; removed any leftover data")


@cli.command("auto-join")
@click.argument("account_id")
@click.argument("state", type=click.Choice(["on", "off"]))
@_with_daemon
async def auto_join(daemon: AlmanacDaemon, account_id: str, state: str) -> None:
    """Turn meeting auto-join on or off for an account."""
    account = await daemon.coordinator.set_auto_join(account_id, state == "on")
    click.echo(f"Auto-join for {account.id}: {'on' if account.auto_join_enabled else 'off'}")


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


@cli.command("calendars")
@click.argument("account_id")
@_with_daemon
async def calendars(daemon: AlmanacDaemon, account_id: str) -> None:
    """List an account's calendars with their overrides."""
    if daemon.coordinator.account(account_id) is None:
        raise UnknownAccountError(account_id)
    listed = daemon.coordinator.calendars(account_id)
    if not listed:
        click.echo("No calendars known yet. Run `almanac sync`.")
        return
    for calendar in listed:
        marker = "x" if calendar.is_visible else " "
        click.echo(f"[{marker}] {calendar.display_color}  {calendar.summary}  ({calendar.id})")


@cli.command("calendar-visibility")
@click.argument("account_id")
@click.argument("calendar_id")
@click.argument("state", type=click.Choice(["show", "hide"]))
@_with_daemon
async def calendar_visibility(
    daemon: AlmanacDaemon, account_id: str, calendar_id: str, state: str
) -> None:
    """Show or hide one calendar."""
    calendar = await daemon.coordinator.set_calendar_visibility(
        account_id, calendar_id, state == "show"
    )
    click.echo(f"{calendar.summary}: {'visible' if calendar.is_visible else 'hidden'}")
    if calendar.is_visible:
        _echo_outcomes(await daemon.sync_now(account_id))


@cli.command("calendar-color")
@click.argument("account_id")
@click.argument("calendar_id")
@click.argument("color")
@_with_daemon
async def calendar_color(
    daemon: AlmanacDaemon, account_id: str, calendar_id: str, color: str
) -> None:
    """Set a calendar's color as #RRGGBB, or `default` to use the provider's."""
    custom = None if color.lower() == "default" else color
    calendar = await daemon.coordinator.set_calendar_color(account_id, calendar_id, custom)
    click.echo(f"{calendar.summary}: {calendar.display_color}")


# ---------------------------------------------------------------------------
# Sync and views
# ---------------------------------------------------------------------------


@cli.command("sync")
@click.argument("account_id", required=False)
@_with_daemon
async def sync(daemon: AlmanacDaemon, account_id: str | None) -> None:
    """Sync one account, or all of them."""
    if account_id is not None and daemon.coordinator.account(account_id) is None:
        raise UnknownAccountError(account_id)
    if not _echo_outcomes(await daemon.sync_now(account_id)):
        raise click.exceptions.Exit(1)


@cli.command("agenda")
@click.option("--hours", type=click.IntRange(min=1), default=24, show_default=True)
@_with_daemon
async def agenda(daemon: AlmanacDaemon, hours: int) -> None:
    """Sync, then print upcoming events across all accounts."""
    _echo_outcomes(await daemon.sync_now())
    tz = daemon.config.zone or local_timezone()
    now = datetime.now(tz)
    events = daemon.coordinator.events_between(now, now + timedelta(hours=hours))
    if not events:
        click.echo("Nothing scheduled.")
        return
    for event in events:
        when = "all day" if event.is_all_day(tz) else _format_time(event.start, tz)
        link = f"  {event.meeting_url}" if event.meeting_url else ""
        click.echo(f"{event.start.astimezone(tz):%a %d %b} {when:>7}  {event.title}{link}")


@cli.command("day")
@click.argument("day", type=click.DateTime(formats=["%Y-%m-%d"]), required=False)
@_with_daemon
async def day(daemon: AlmanacDaemon, day: datetime | None) -> None:
    """Sync, then print one day's layout (column N of M per event)."""
    _echo_outcomes(await daemon.sync_now())
    tz = daemon.config.zone or local_timezone()
    selected: date = day.date() if day is not None else datetime.now(tz).date()

    view_state = daemon.coordinator.view_state().model_copy(
        update={"mode": ViewMode.day, "selected_date": selected}
    )
    await daemon.coordinator.set_view_state(view_state)

    start, end = day_bounds(selected, tz)
    events = list(daemon.coordinator.events_between(start, end))
    click.echo(f"{selected:%A %d %B %Y}")
    for event in all_day_events(events, selected, tz):
        click.echo(f"  all day  {event.title}")
    for slot in layout_day(events, selected, tz):
        click.echo(
            f"  {_format_time(slot.event.start, tz)}-{_format_time(slot.event.end, tz)}  "
            f"[{slot.column_index + 1}/{slot.columns_in_group}]  {slot.event.title}"
        )


@cli.command("run")
@click.pass_obj
def run(config: AlmanacConfig) -> None:
    """Run the sync poller and the auto-join scheduler until interrupted."""
    try:
        asyncio.run(_run_daemon(config))
    except (AlmanacError, ConfigError) as exc:
        raise click.ClickException(safe_error_message(exc)) from exc


async def _run_daemon(config: AlmanacConfig) -> None:
    """Serve until SIGINT or SIGTERM; SIGHUP triggers an immediate sync pass."""
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()
    daemon = _build_daemon(config)

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)
    loop.add_signal_handler(signal.SIGHUP, daemon.request_sync)

    try:
        await daemon.start()
        click.echo(f"almanac running with {len(daemon.coordinator.accounts())} account(s)")
        await shutdown_event.wait()
    finally:
        await daemon.shutdown()
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
            loop.remove_signal_handler(sig)
