"""Burrow command-line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click
from pydantic import ValidationError

from ..config import SessionsConfig
from ..errors import SessionsError
from ..models import Task, TaskEvent, TaskStatus
from ..service import SessionsService
from ..telemetry import LoggingTelemetrySink


class JsonLinesSink:
    """Echoes every task event as one JSON line on stdout."""

    async def publish(self, task_id: str, event: TaskEvent) -> None:
        _ = task_id
        click.echo(json.dumps(event.model_dump(mode="json"), ensure_ascii=False))


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


def _load_config(**overrides: object) -> SessionsConfig:
    try:
        return SessionsConfig.from_env(**overrides)
    except ValidationError as exc:
        click.echo(f"✗ Invalid configuration: {exc}", err=True)
        sys.exit(2)


async def _run_once(config: SessionsConfig, instruction: str, owner_id: str) -> Task:
    service = SessionsService.from_config(config, sink=JsonLinesSink(), telemetry=LoggingTelemetrySink())
    try:
        task = await service.create_task(instruction, owner_id)
        final = await service.supervisor.join(task.id)
        return final or await service.get_task(task.id, owner_id)
    finally:
        await service.stop()


@click.group()
@click.version_option(package_name="burrow")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug).")
def app(verbose: int) -> None:
    """Burrow CLI - run coding agents in throwaway containers."""
    _configure_logging(verbose)


@app.command()
@click.argument("instruction")
@click.option("--owner", default="cli", show_default=True, help="Owner id the task is admitted under.")
@click.option("--image", default=None, help="Agent container image (overrides BURROW_IMAGE).")
@click.option("--timeout", "timeout_s", type=float, default=None, help="Task timeout in seconds.")
def run(instruction: str, owner: str, image: str | None, timeout_s: float | None) -> None:
    """Run one task against the local Docker engine and stream its events."""
    config = _load_config(image=image, task_timeout_s=timeout_s)
    try:
        task = asyncio.run(_run_once(config, instruction, owner))
    except SessionsError as e:
        click.echo(f"✗ {e.title}", err=True)
        if e.detail:
            click.echo(f"  {e.detail}", err=True)
        sys.exit(1)
    if task.status != TaskStatus.COMPLETED:
        click.echo(f"✗ Task {task.id} {task.status.value}: {task.error_detail or task.error or ''}", err=True)
        sys.exit(1)


@app.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
@click.option("--port", default=8000, show_default=True, type=int, help="Port to bind.")
def serve(host: str, port: int) -> None:
    """Serve the task API over HTTP."""
    try:
        import uvicorn

        from burrow_http import create_sessions_http_app
    except ModuleNotFoundError as exc:
        click.echo(f"✗ {exc.name} is not installed", err=True)
        click.echo("  Hint: pip install 'burrow[http]'", err=True)
        sys.exit(1)

    service = SessionsService.from_config(_load_config(), telemetry=LoggingTelemetrySink())
    uvicorn.run(create_sessions_http_app(service), host=host, port=port)


@app.command("config")
def show_config() -> None:
    """Print the configuration resolved from BURROW_* variables."""
    click.echo(_load_config().model_dump_json(indent=2))


if __name__ == "__main__":  # pragma: no cover
    app()
