"""Orchestra CLI: Typer application root.

Entry point for the ``orchestra`` console script:

    orchestra serve   run the API (uvicorn) with its workers and sweeper
    orchestra sweep   run one retention sweep against the configured storage
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

import typer
import uvicorn

from orchestra.config import settings
from orchestra.services.artifacts import build_artifact_store
from orchestra.services.retention import RetentionSweeper, SweepReport

logger = logging.getLogger(__name__)

cli = typer.Typer(
    name="orchestra",
    help="MIDI Studio generation orchestrator.",
    no_args_is_help=True,
)


@cli.command("serve", help="Run the HTTP API with background workers.")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default from settings)."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port (default from settings)."),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes (dev only)."),
) -> None:
    uvicorn.run(
        "orchestra.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="debug" if settings.debug else "info",
    )


async def run_sweep(now: datetime | None = None) -> SweepReport:
    """One retention pass against the storage backend from settings."""
    sweeper = RetentionSweeper(build_artifact_store(settings))
    return await sweeper.sweep_once(now)


@cli.command("sweep", help="Delete expired artifacts and their metadata once.")
def sweep(
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON."),
) -> None:
    try:
        report = asyncio.run(run_sweep())
    except Exception as exc:
        typer.echo(f"❌ orchestra sweep failed: {exc}")
        logger.error("❌ orchestra sweep error: %s", exc, exc_info=True)
        raise typer.Exit(code=2)

    if as_json:
        typer.echo(json.dumps(report.as_dict()))
    else:
        typer.echo(
            f"Scanned {report.scanned} record(s): {report.expired} expired, "
            f"{report.deleted} deleted, {report.failed} failed"
        )
        for error in report.errors:
            typer.echo(f"  ⚠️ {error}")
    if report.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
