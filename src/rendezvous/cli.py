"""CLI for rendezvous: run calendar syncs and compute availability."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from rendezvous.calendar.availability import (
    busy_periods_from_events,
    compute_availability,
    compute_free_windows,
    compute_mutual_availability,
    merge_slots,
)
from rendezvous.calendar.models import (
    AvailabilityPreferences,
    AvailabilitySlot,
    BusyPeriod,
    Event,
    TimeWindow,
)
from rendezvous.calendar.service import PeriodicSyncScheduler
from rendezvous.config import ConfigError, RendezvousConfig, load_config
from rendezvous.core.logging import configure_logging
from rendezvous.core.telemetry import init_telemetry

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing rendezvous.toml (or the file itself)",
)


def _load(config_path: Path) -> RendezvousConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        service_name=config.name,
    )
    init_telemetry(config.name)
    return config


def _parse_instant(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO-8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _slots_payload(slots: list[AvailabilitySlot]) -> list[dict[str, str]]:
    return [slot.model_dump(mode="json") for slot in slots]


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """rendezvous: calendar availability and synchronization for shared plans."""
    configure_logging(level="WARNING")


@cli.command()
@_config_option
@click.option("--user", "users", multiple=True, help="User to sync (default: sync.users)")
@click.option("--days", type=click.IntRange(min=1), default=None, help="Window length in days")
@click.option("--full", is_flag=True, help="Refetch the whole window for every provider")
def sync(config_path: Path, users: tuple[str, ...], days: int | None, full: bool) -> None:
    """Fetch, reconcile, and scan conflicts once for each user."""
    from rendezvous.runtime import open_runtime

    config = _load(config_path)
    targets = list(users) or config.sync.users
    if not targets:
        click.echo("No users to sync; pass --user or set sync.users", err=True)
        sys.exit(1)

    async def _run() -> list[dict[str, Any]]:
        async with open_runtime(config) as runtime:
            summaries = []
            for user_id in targets:
                window = None
                if days is not None:
                    window = TimeWindow.days_from(datetime.now(UTC), days)
                report = await runtime.service.sync_user(user_id, window=window, full=full)
                summaries.append(
                    {
                        "user_id": user_id,
                        "ok": report.ok,
                        "results": {
                            provider.value: result.model_dump(mode="json", exclude={"provider"})
                            for provider, result in report.results.items()
                        },
                        "errors": [error.model_dump(mode="json") for error in report.errors],
                        "events": len(report.events),
                        "new_conflicts": len(report.new_conflicts),
                    }
                )
            return summaries

    summaries = asyncio.run(_run())
    _echo_json(summaries)
    if not all(summary["ok"] for summary in summaries):
        sys.exit(2)


@cli.command()
@_config_option
def watch(config_path: Path) -> None:
    """Sync sync.users every sync.interval_hours until interrupted."""
    from rendezvous.runtime import open_runtime

    config = _load(config_path)
    if not config.sync.users:
        click.echo("No users to sync; set sync.users", err=True)
        sys.exit(1)

    async def _run() -> None:
        async with open_runtime(config) as runtime:
            scheduler = PeriodicSyncScheduler(
                runtime.service,
                config.sync.users,
                interval_seconds=config.sync.interval_hours * 3600,
            )
            scheduler.start()
            logger.info(
                "Calendar sync scheduler running (users=%d, interval_hours=%s)",
                len(config.sync.users),
                config.sync.interval_hours,
            )
            try:
                await asyncio.Event().wait()
            finally:
                await scheduler.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


@cli.command()
@_config_option
@click.option("--user", "user_id", required=True, help="User whose sync health to show")
def status(config_path: Path, user_id: str) -> None:
    """Show the sync cursor for each connected provider."""
    from rendezvous.runtime import open_runtime

    config = _load(config_path)

    async def _run() -> dict[str, Any]:
        async with open_runtime(config) as runtime:
            cursors = await runtime.service.sync_status(user_id)
        return {
            provider.value: (
                None
                if cursor is None
                else cursor.model_dump(mode="json") | {"healthy": cursor.healthy}
            )
            for provider, cursor in cursors.items()
        }

    _echo_json(asyncio.run(_run()))


@cli.command()
@_config_option
@click.option("--user", "user_id", required=True, help="User whose conflicts to list")
def conflicts(config_path: Path, user_id: str) -> None:
    """List unresolved cross-provider conflicts."""
    from rendezvous.runtime import open_runtime

    config = _load(config_path)

    async def _run() -> list[dict[str, Any]]:
        async with open_runtime(config) as runtime:
            records = await runtime.service.unresolved_conflicts(user_id)
        return [record.model_dump(mode="json") for record in records]

    _echo_json(asyncio.run(_run()))


def _read_slot_input(path: Path) -> dict[str, dict[str, Any]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not read {path}: {exc}") from exc
    users = payload.get("users") if isinstance(payload, dict) else None
    if not isinstance(users, dict) or not users:
        raise click.ClickException("Input must be an object with a non-empty 'users' object")
    return users


def _user_inputs(
    users: dict[str, dict[str, Any]],
) -> tuple[dict[str, AvailabilityPreferences], dict[str, list[BusyPeriod]]]:
    prefs_by_user: dict[str, AvailabilityPreferences] = {}
    busy_by_user: dict[str, list[BusyPeriod]] = {}
    try:
        for user_id, entry in users.items():
            entry = entry or {}
            prefs_by_user[user_id] = AvailabilityPreferences.model_validate(
                entry.get("preferences") or {}
            )
            busy = [BusyPeriod.model_validate(item) for item in entry.get("busy", [])]
            events = [Event.model_validate(item) for item in entry.get("events", [])]
            busy_by_user[user_id] = busy + busy_periods_from_events(events)
    except ValidationError as exc:
        raise click.ClickException(f"Invalid input: {exc}") from exc
    return prefs_by_user, busy_by_user


@cli.command()
@click.argument("input_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--start", "start_raw", required=True, help="Range start (ISO-8601)")
@click.option("--end", "end_raw", default=None, help="Range end (ISO-8601, default start+7d)")
@click.option(
    "--granularity",
    type=click.IntRange(min=1),
    default=None,
    help="Put every user on one slot grid (minutes) before intersecting",
)
@click.option("--merge", is_flag=True, help="Merge back-to-back slots into free windows")
def slots(
    input_path: Path,
    start_raw: str,
    end_raw: str | None,
    granularity: int | None,
    merge: bool,
) -> None:
    """Compute free slots from a JSON file of users, preferences, and busy periods.

    One user yields that user's availability; several users yield their
    mutual availability.
    """
    start = _parse_instant(start_raw)
    end = _parse_instant(end_raw) if end_raw else start + timedelta(days=7)
    if end <= start:
        raise click.BadParameter("--end must be after --start")

    prefs_by_user, busy_by_user = _user_inputs(_read_slot_input(input_path))
    user_ids = list(prefs_by_user)

    if len(user_ids) == 1:
        user_id = user_ids[0]
        prefs = prefs_by_user[user_id]
        if granularity is not None:
            prefs = prefs.model_copy(update={"slot_granularity_minutes": granularity})
        if merge:
            result = compute_free_windows(user_id, busy_by_user[user_id], prefs, start, end)
        else:
            result = compute_availability(user_id, busy_by_user[user_id], prefs, start, end)
    else:
        result = compute_mutual_availability(
            user_ids, prefs_by_user, busy_by_user, start, end, granularity_minutes=granularity
        )
        if merge:
            result = merge_slots(result)

    _echo_json(_slots_payload(result))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
