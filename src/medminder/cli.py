"""CLI for medminder: run the reminder loop and manage medications."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click

from medminder import __version__
from medminder.config import ConfigError, MedminderConfig, load_config

logger = logging.getLogger(__name__)

_config_option = click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to medminder.toml or the directory containing it",
)
_user_option = click.option("--user-id", required=True, help="UUID of the patient")
_medication_option = click.option("--medication-id", required=True, help="UUID of the medication")


def _load(config_path: Path) -> MedminderConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid config: {exc}", err=True)
        sys.exit(1)

    from medminder.core.logging import configure_logging

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    return config


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Medminder: medication reminders and adherence tracking."""


@cli.command()
@_config_option
@_user_option
@click.option("--no-api", is_flag=True, help="Run the reminder loop without the HTTP API")
def run(config_path: Path, user_id: str, no_api: bool) -> None:
    """Run the reminder loop for one user until interrupted."""
    config = _load(config_path)
    click.echo(f"Starting reminders for user {user_id}")
    asyncio.run(_run(config, user_id, serve_api=not no_api))


@cli.command("init-db")
@_config_option
def init_db(config_path: Path) -> None:
    """Create the database and the reminder tables if missing."""
    config = _load(config_path)
    asyncio.run(_init_db(config))
    click.echo(f"Database {config.database.name} ready")


@cli.command()
@_config_option
@_user_option
@click.option("--at", "at", default=None, help="Time of day as HH:MM (defaults to now)")
def due(config_path: Path, user_id: str, at: str | None) -> None:
    """Print the medications due at a time of day."""
    config = _load(config_path)
    try:
        reminders = asyncio.run(_due(config, user_id, at))
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _echo_json([r.to_dict() for r in reminders])


@cli.command("add-medication")
@_config_option
@_user_option
@click.option("--name", required=True)
@click.option("--dosage", required=True)
@click.option("--time", "times", multiple=True, help="Reminder time HH:MM (repeatable)")
@click.option("--instructions", default=None)
def add_medication(
    config_path: Path,
    user_id: str,
    name: str,
    dosage: str,
    times: tuple[str, ...],
    instructions: str | None,
) -> None:
    """Add a medication with its daily reminder times."""
    from medminder.reminders.medications import medication_add

    config = _load(config_path)
    try:
        result = asyncio.run(
            _with_pool(config, medication_add, user_id, name, dosage, list(times), instructions)
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _echo_json(result)


@cli.command()
@_config_option
@_user_option
@click.option("--all", "include_inactive", is_flag=True, help="Include deactivated medications")
def medications(config_path: Path, user_id: str, include_inactive: bool) -> None:
    """List medications with their reminder times."""
    from medminder.reminders.medications import medication_list

    config = _load(config_path)
    try:
        result = asyncio.run(
            _with_pool(config, medication_list, user_id, not include_inactive)
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _echo_json(result)


@cli.command("update-medication")
@_config_option
@_user_option
@_medication_option
@click.option("--name", default=None)
@click.option("--dosage", default=None)
@click.option("--instructions", default=None)
def update_medication(
    config_path: Path,
    user_id: str,
    medication_id: str,
    name: str | None,
    dosage: str | None,
    instructions: str | None,
) -> None:
    """Change the name, dosage or instructions of a medication."""
    from medminder.reminders.medications import medication_update

    fields = {
        key: value
        for key, value in (
            ("medication_name", name),
            ("dosage", dosage),
            ("instructions", instructions),
        )
        if value is not None
    }
    if not fields:
        raise click.UsageError("Give at least one of --name, --dosage or --instructions")

    config = _load(config_path)
    try:
        result = asyncio.run(
            _with_pool(
                config,
                functools.partial(medication_update, **fields),
                user_id,
                medication_id,
            )
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _echo_json(result)


@cli.command("set-times")
@_config_option
@_user_option
@_medication_option
@click.option("--time", "times", multiple=True, help="Reminder time HH:MM (repeatable)")
def set_times(
    config_path: Path, user_id: str, medication_id: str, times: tuple[str, ...]
) -> None:
    """Replace every reminder time of a medication. No --time clears them."""
    from medminder.reminders.medications import schedule_replace

    config = _load(config_path)
    try:
        result = asyncio.run(
            _with_pool(config, schedule_replace, user_id, medication_id, list(times))
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _echo_json(result)


@cli.command()
@_config_option
@_user_option
@_medication_option
def deactivate(config_path: Path, user_id: str, medication_id: str) -> None:
    """Stop reminders for a medication (soft delete)."""
    from medminder.reminders.medications import medication_deactivate

    config = _load(config_path)
    try:
        changed = asyncio.run(_with_pool(config, medication_deactivate, user_id, medication_id))
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    if not changed:
        click.echo(f"No active medication {medication_id}", err=True)
        sys.exit(1)
    click.echo(f"Medication {medication_id} deactivated")


@cli.command("add-contact")
@_config_option
@_user_option
@click.option("--name", required=True)
@click.option("--email", default=None, help="Receives missed-dose alerts")
@click.option("--relationship", default=None)
@click.option("--phone", "contact_number", default=None)
@click.option("--emergency", "is_emergency_contact", is_flag=True)
def add_contact(
    config_path: Path,
    user_id: str,
    name: str,
    email: str | None,
    relationship: str | None,
    contact_number: str | None,
    is_emergency_contact: bool,
) -> None:
    """Add a family contact for missed-dose alerts."""
    from medminder.reminders.medications import family_contact_add

    config = _load(config_path)
    try:
        result = asyncio.run(
            _with_pool(
                config,
                family_contact_add,
                user_id,
                name,
                email,
                relationship,
                contact_number,
                is_emergency_contact,
            )
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    if not email:
        click.echo("Contact has no email and will not receive alerts", err=True)
    _echo_json(result)


@cli.command()
@_config_option
@_user_option
@click.option("--medication-id", default=None, help="Limit to one medication")
def history(config_path: Path, user_id: str, medication_id: str | None) -> None:
    """Print adherence records and the adherence rate."""
    from medminder.reminders.medications import adherence_history

    config = _load(config_path)
    try:
        result = asyncio.run(_with_pool(config, adherence_history, user_id, medication_id))
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _echo_json(result)


async def _with_pool(config: MedminderConfig, func, *args: Any) -> Any:  # noqa: ANN001
    from medminder.db import Database

    db = Database.from_config(config.database)
    pool = await db.connect()
    try:
        return await func(pool, *args)
    finally:
        await db.close()


async def _init_db(config: MedminderConfig) -> None:
    from medminder.db import Database
    from medminder.reminders.store import ensure_schema

    db = Database.from_config(config.database)
    await db.provision()
    pool = await db.connect()
    try:
        await ensure_schema(pool)
    finally:
        await db.close()


async def _due(config: MedminderConfig, user_id: str, at: str | None) -> list:
    from medminder.core.clock import format_time_of_day, system_clock
    from medminder.reminders.resolver import DueReminderResolver
    from medminder.reminders.store import PostgresReminderStore

    time_of_day = at or format_time_of_day(system_clock(config.reminders.zone())())
    return await _with_pool(
        config,
        lambda pool: DueReminderResolver(PostgresReminderStore(pool)).resolve(
            user_id, time_of_day
        ),
    )


async def _run(config: MedminderConfig, user_id: str, *, serve_api: bool) -> None:
    """Run the reminder service (and optionally the API) until SIGINT/SIGTERM."""
    import uvicorn

    from medminder.alerts import build_alert_sender
    from medminder.core.metrics import init_metrics
    from medminder.core.telemetry import init_telemetry
    from medminder.db import Database
    from medminder.notifications import build_notifier
    from medminder.reminders.service import ReminderService
    from medminder.reminders.store import PostgresReminderStore

    init_telemetry("medminder")
    init_metrics("medminder")

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    db = Database.from_config(config.database)
    pool = await db.connect()
    service = ReminderService(
        PostgresReminderStore(pool),
        config.reminders,
        notifier=build_notifier(
            config.telegram, dismiss_after=config.reminders.notification_dismiss_seconds
        ),
        alert_sender=build_alert_sender(config.alerts),
    )

    server: uvicorn.Server | None = None
    server_task: asyncio.Task | None = None
    try:
        if serve_api:
            from medminder.api.app import create_app

            app = create_app(service, user_id, cors_origins=config.api.cors_origins)
            server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=config.api.host,
                    port=config.api.port,
                    log_level="info",
                    timeout_graceful_shutdown=0,
                )
            )
            server_task = asyncio.create_task(server.serve())
            # uvicorn captures SIGINT/SIGTERM while serving; its exit ends the run too
            server_task.add_done_callback(lambda _: shutdown_event.set())
            click.echo(f"API listening on http://{config.api.host}:{config.api.port}")

        await service.start(user_id)
        click.echo("Reminder service running")
        await shutdown_event.wait()
    finally:
        if server is not None:
            server.should_exit = True
        if server_task is not None:
            await server_task
        await service.close()
        await db.close()
