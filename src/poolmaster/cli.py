from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import click

from poolmaster.config import DEFAULT_CONFIG_FILE, PoolmasterConfig, load_config, save_config
from poolmaster.errors import PoolmasterError
from poolmaster.supervisor import Supervisor
from poolmaster.worker import main as worker_command


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load(config_value: str) -> PoolmasterConfig:
    try:
        return load_config(_resolve_config_path(config_value))
    except PoolmasterError as exc:
        raise click.ClickException(str(exc)) from exc


def _exit_reason(event: dict[str, Any]) -> str:
    if event["event"] == "worker_killed":
        return f"killed by signal: {event['signal']}"
    return f"exited with error code: {event['exit_code']}"


def format_event(event: dict[str, Any]) -> tuple[str, str | None] | None:
    """Render a supervisor event as a status line and a color."""
    name = event.get("event")
    worker_id = event.get("worker_id")
    if name == "supervisor_start":
        return (
            f"Supervisor {event['pid']}: environment {event['environment']}, "
            f"{event['workers']} workers",
            None,
        )
    if name == "supervisor_stop":
        return f"Supervisor {event['pid']}: stopped", None
    if name == "worker_listening":
        return (
            f"Worker {worker_id}: Environment: {event['environment']}. "
            f"Listening http://{event['host']}:{event['port']}. PID {event['pid']}",
            "green",
        )
    if name in {"worker_exited", "worker_killed"}:
        return f"Worker {worker_id}: {_exit_reason(event)}", "red"
    if name == "worker_fork_failed":
        return f"Worker {worker_id}: could not be started: {event['error']}", "red"
    if name == "worker_output":
        return f"Worker {worker_id}: {event['line']}", None
    if name == "shutdown_start":
        return "Shutting down all workers", "yellow"
    if name == "shutdown_refill":
        return f"All workers stopped, starting {event['workers']} new workers", "yellow"
    if name == "shutdown_complete":
        return "All workers stopped", "green"
    if name == "reload_worker":
        return f"Worker {worker_id}: reloading...", "yellow"
    if name == "reload_restarted":
        return "Reload requested again, restarting queue from the live workers", "yellow"
    if name == "reload_complete":
        return "Reload workers complete", "green"
    if name in {"pool_resized", "pool_reset"}:
        return f"Desired workers: {event['desired_count']}", None
    if name == "pool_at_minimum":
        return "No workers left to remove", "yellow"
    if name == "signal_received":
        return f"Received {event['signal']}: {event['action']}", None
    return None


def _echo_event(event: dict[str, Any]) -> None:
    rendered = format_event(event)
    if rendered is None:
        return
    message, color = rendered
    click.secho(message, fg=color)


@click.group()
def cli() -> None:
    """poolmaster CLI."""


@cli.command("init")
@click.option("--workers", type=click.IntRange(min=0), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(workers: int | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = _load(config_value)
    if workers is not None:
        config.pool.workers = workers
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Workers: {config.pool.resolved_workers()}")


@cli.command("run")
@click.option("--workers", type=click.IntRange(min=0), default=None, envvar="NUM_WORKERS")
@click.option("--env", "environment", default=None, envvar="POOLMASTER_ENV")
@click.option("--port", type=int, default=None, envvar="PORT")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(
    workers: int | None, environment: str | None, port: int | None, config_value: str
) -> None:
    config = _load(config_value)
    if workers is not None:
        config.pool.workers = workers
    if environment:
        config.runtime.environment = environment
    if port is not None:
        config.worker.port = port
    try:
        config.validate()
        supervisor = Supervisor(config, event_hook=_echo_event)
        asyncio.run(supervisor.run())
    except PoolmasterError as exc:
        raise click.ClickException(str(exc)) from exc


cli.add_command(worker_command, "worker")
