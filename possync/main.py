from __future__ import annotations

import asyncio
import sys

import typer

from possync.config import Settings, get_settings
from possync.infrastructure.gateway import HttpRemoteGateway
from possync.infrastructure.postgres_store import PostgresSyncStore
from possync.orchestrator import build_orchestrator
from possync.reporter import print_status
from possync.utils.logging import configure_logging

app = typer.Typer(help="POS offline sync diagnostics.")


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"remote={settings.remote_base_url} branch={settings.branch_id} "
        f"device={settings.device_id} | "
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )
    typer.echo(
        f"queue: concurrency={settings.queue_max_concurrent} batch={settings.queue_batch_size} "
        f"max_attempts={settings.queue_max_attempts} timeout={settings.queue_timeout}s"
    )
    typer.echo(
        f"delta: interval={settings.sync_interval}s batch={settings.sync_batch_size} "
        f"conflicts={settings.conflict_resolution}"
    )


async def _init_db(settings: Settings) -> None:
    store = await PostgresSyncStore.open(settings, create_schema=True)
    await store.close()


@app.command("init-db")
def init_db() -> None:
    """
    Create the sync tables in the configured Postgres database.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    asyncio.run(_init_db(settings))
    typer.echo(f"Schema ready in {settings.db_name}.")


async def _status(settings: Settings) -> None:
    store = await PostgresSyncStore.open(settings, create_schema=False)
    gateway = HttpRemoteGateway(settings, key_store=store)
    try:
        orchestrator = build_orchestrator(settings, store=store, gateway=gateway)
        await gateway.restore_session()
        await orchestrator.queue.load()
        await orchestrator.delta.load()
        report = await orchestrator.health_check()
        print_status(await orchestrator.get_status(), report)
    finally:
        await gateway.aclose()
        await store.close()


@app.command()
def status() -> None:
    """
    Run a one-off health check and show queue statistics.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    asyncio.run(_status(settings))


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
