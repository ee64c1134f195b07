"""Command line interface for the earnings table pipeline."""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import date, datetime

import click
import uvicorn

from earningstable.core.config import settings
from earningstable.core.logging import get_logger, setup_logging
from earningstable.database.connection import close_database, init_database
from earningstable.domain.pipeline import RunContext, RunOutcome, RunResult
from earningstable.jobs import (
    DAILY_RESET_JOB,
    PIPELINE_JOB,
    PipelineOrchestrator,
    list_job_names,
    start_scheduler,
    stop_scheduler,
)


logger = get_logger("cli")


def _parse_date(ctx, param, value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.BadParameter("expected YYYY-MM-DD")


def _parse_symbols(ctx, param, value: str | None) -> tuple[str, ...] | None:
    if not value:
        return None
    return tuple(s.strip().upper() for s in value.split(",") if s.strip())


def _report(result: RunResult) -> None:
    click.echo(f"{result.job_name}: {result.outcome.value} {result.message}".rstrip())
    if result.outcome == RunOutcome.ERROR:
        sys.exit(1)


async def _trigger_once(name: str, ctx: RunContext) -> RunResult:
    await init_database(create_tables=True)
    try:
        return await PipelineOrchestrator().trigger(name, ctx)
    finally:
        await close_database()


async def _run_scheduler(run_now: bool, once: bool, ctx: RunContext) -> None:
    await init_database(create_tables=True)
    orchestrator = PipelineOrchestrator()
    try:
        if run_now or once:
            result = await orchestrator.trigger(PIPELINE_JOB, ctx)
            click.echo(f"{result.job_name}: {result.outcome.value} {result.message}".rstrip())
        if once:
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await start_scheduler(orchestrator)
        logger.info("Scheduler running, waiting for triggers")
        await stop.wait()
    finally:
        await stop_scheduler()
        await close_database()


@click.group()
def cli():
    """Earnings table pipeline CLI."""
    setup_logging()


@cli.command("run-job")
@click.argument("name", type=click.Choice(sorted(list_job_names())))
@click.option("--date", "target_date", callback=_parse_date, help="Trading day (YYYY-MM-DD)")
@click.option("--force", is_flag=True, help="Write rows even when nothing changed")
@click.option("--symbols", callback=_parse_symbols, help="Comma separated symbols (quote_feed)")
def run_job_cmd(name, target_date, force, symbols):
    """Run one job now and exit."""
    ctx = RunContext(
        target_date=target_date,
        force=force,
        symbols=symbols,
        allow_clear=settings.allow_clear,
        trigger="cli",
    )
    _report(asyncio.run(_trigger_once(name, ctx)))


@cli.command("scheduler")
@click.option("--run-now", is_flag=True, help="Run the pipeline once before arming the triggers")
@click.option("--once", is_flag=True, help="Run the pipeline once and exit")
@click.option("--date", "target_date", callback=_parse_date, help="Trading day (YYYY-MM-DD)")
@click.option("--force", is_flag=True, help="Write rows even when nothing changed")
def scheduler_cmd(run_now, once, target_date, force):
    """Run the interval and daily-reset triggers until interrupted."""
    ctx = RunContext(target_date=target_date, force=force, trigger="cli")
    asyncio.run(_run_scheduler(run_now, once, ctx))


@cli.command("reset")
@click.option("--allow-clear", is_flag=True, help="Required: confirm deleting all ingested rows")
def reset_cmd(allow_clear):
    """Clear earnings, quote and report tables."""
    if not allow_clear:
        raise click.UsageError("refusing to clear tables without --allow-clear")
    ctx = RunContext(allow_clear=True, trigger="cli")
    _report(asyncio.run(_trigger_once(DAILY_RESET_JOB, ctx)))


@cli.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve_cmd(host, port):
    """Serve the read API."""
    from earningstable.api import create_app

    uvicorn.run(create_app(), host=host, port=port, log_config=None)


if __name__ == "__main__":
    cli()
