"""CLI entrypoint for bulk-research."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from bulk_research import __version__
from bulk_research.runner.controllers import (
    BulkInspectJobCommand,
    BulkListJobsCommand,
    BulkResearchCliController,
    BulkRunCommand,
    BulkSubmitCommand,
)
from bulk_research.runner.errors import BulkResearchError

click.rich_click.USE_MARKDOWN = True
BULK_CONTROLLER = BulkResearchCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="bulk-research")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def bulk_research(log_level: str) -> None:
    """Bulk company research CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@bulk_research.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--company",
    "companies",
    multiple=True,
    required=True,
    help="Company to research. Can be repeated.",
)
@click.option(
    "--mode",
    "research_mode",
    type=click.Choice(["quick", "deep"], case_sensitive=False),
    default="quick",
    show_default=True,
    help="Research depth.",
)
@click.option(
    "--user-id",
    default=None,
    help="Owner of the job. Defaults to BULK_RESEARCH_USER_ID.",
)
def submit(
    db_path: Path | None,
    companies: tuple[str, ...],
    research_mode: str,
    user_id: str | None,
) -> None:
    """Create a bulk research job with one task per company."""

    _emit_lines(
        _invoke(
            BULK_CONTROLLER.submit,
            BulkSubmitCommand(
                db_path=db_path,
                companies=companies,
                research_mode=research_mode.lower(),
                user_id=user_id,
            ),
        ),
    )


@bulk_research.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--concurrency",
    type=int,
    default=None,
    help="Tasks per cycle; clamped to the configured bounds. Defaults by research mode.",
)
@click.option(
    "--once/--drain",
    default=True,
    show_default=True,
    help="Run one dispatch cycle or keep cycling until the job has no claimable work.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for cycles in drain mode.",
)
def run(
    db_path: Path | None,
    job_id: str,
    concurrency: int | None,
    once: bool,
    max_cycles: int | None,
) -> None:
    """Run dispatch cycles for one job."""

    _emit_lines(
        _invoke(
            BULK_CONTROLLER.run,
            BulkRunCommand(
                db_path=db_path,
                job_id=job_id,
                concurrency=concurrency,
                once=once,
                max_cycles=max_cycles,
            ),
        ),
    )


@bulk_research.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs(db_path: Path | None, user_id: str | None, limit: int) -> None:
    """List bulk research jobs, newest first."""

    _emit_lines(
        _invoke(
            BULK_CONTROLLER.list_jobs,
            BulkListJobsCommand(db_path=db_path, user_id=user_id, limit=limit),
        ),
    )


@bulk_research.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--show-results", is_flag=True, default=False, help="Print task result text.")
def inspect(db_path: Path | None, job_id: str, show_results: bool) -> None:
    """Inspect one job with its per-company tasks."""

    _emit_lines(
        _invoke(
            BULK_CONTROLLER.inspect,
            BulkInspectJobCommand(db_path=db_path, job_id=job_id, show_results=show_results),
        ),
    )


@bulk_research.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind host.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Serve the HTTP trigger endpoints."""

    import uvicorn  # noqa: PLC0415

    uvicorn.run("bulk_research.api:create_app", factory=True, host=host, port=port)


def _invoke(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (BulkResearchError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    bulk_research()
