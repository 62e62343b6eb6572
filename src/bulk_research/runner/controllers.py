"""Controllers for bulk research CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from bulk_research.config import Settings
from bulk_research.runner.continuation import NullContinuationTrigger
from bulk_research.runner.models import BulkJobView, CycleSummary
from bulk_research.runner.repository import BulkJobRepository
from bulk_research.runner.services import (
    BulkJobService,
    BulkResearchRuntime,
    SubmitBulkJob,
    open_repository,
)


@dataclass(slots=True)
class BulkSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    companies: tuple[str, ...]
    research_mode: str
    user_id: str | None


@dataclass(slots=True)
class BulkRunCommand:
    """CLI input for dispatch cycles."""

    db_path: Path | None
    job_id: str
    concurrency: int | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class BulkListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class BulkInspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    show_results: bool = False


class BulkResearchCliController:
    """Coordinates submission, dispatch and inspection CLI operations."""

    def submit(self, command: BulkSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings, init_schema=True) as repository:
            job = _service(settings, repository).submit(
                SubmitBulkJob(
                    companies=list(command.companies),
                    research_mode=command.research_mode,
                    user_id=command.user_id or settings.user_context.user_id,
                ),
            )
        return [
            "Job submitted: "
            f"job_id={job.job_id} mode={job.research_mode} companies={job.total_count} "
            f"status={job.status.value}",
            f"Run it with: bulk-research run --job-id {job.job_id} --drain",
        ]

    def run(self, command: BulkRunCommand) -> list[str]:
        """Run one cycle, or keep cycling until the job has nothing left to do."""

        settings = Settings.from_env(db_path=command.db_path)
        runtime = _runtime(settings)
        runtime.init_schema()

        lines: list[str] = []
        cycles = 0
        while True:
            summary = runtime.run_cycle(command.job_id, command.concurrency)
            cycles += 1
            lines.append(_summary_line(cycles, summary))
            if command.once or summary.finalized:
                break
            if summary.processed == 0:
                lines.append("No claimable tasks left; remaining tasks are running elsewhere.")
                break
            if command.max_cycles is not None and cycles >= command.max_cycles:
                break

        detail = runtime.describe(command.job_id)
        lines.append(
            f"Job {detail.job.job_id}: status={detail.job.status.value} "
            f"{detail.counts.describe()}",
        )
        return lines

    def list_jobs(self, command: BulkListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings, init_schema=True) as repository:
            jobs = repository.list_jobs(user_id=command.user_id, limit=command.limit)

        if not jobs:
            return ["No bulk research jobs found."]
        return [_job_line(job) for job in jobs]

    def inspect(self, command: BulkInspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings, init_schema=True) as repository:
            detail = _service(settings, repository).describe(command.job_id)

        job = detail.job
        lines = [
            f"Job: {job.job_id}",
            f"User: {job.user_id}",
            f"Mode: {job.research_mode}",
            f"Status: {job.status.value}",
            f"Progress: {job.completed_count}/{job.total_count} "
            f"({detail.counts.describe()})",
            f"Created: {job.created_at.isoformat()}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Completed: {job.completed_at.isoformat() if job.completed_at else '-'}",
            "Tasks:",
        ]
        for task in detail.tasks:
            lines.append(
                f"- {task.company}: status={task.status.value} attempts={task.attempt_count} "
                f"task_id={task.task_id}",
            )
            if task.error:
                lines.append(f"    error: {task.error}")
            if command.show_results and task.result:
                lines.append(f"    result: {task.result}")
        return lines


def _runtime(settings: Settings) -> BulkResearchRuntime:
    return BulkResearchRuntime(settings, continuation=NullContinuationTrigger())


def _service(settings: Settings, repository: BulkJobRepository) -> BulkJobService:
    # Submission never starts a cycle from the CLI; `run` does that.
    settings.validate_for_runner()
    return BulkJobService(
        repository=repository,
        mode_concurrency=settings.runner.mode_concurrency(),
    )


def _summary_line(cycle: int, summary: CycleSummary) -> str:
    return (
        f"Cycle {cycle}: concurrency={summary.concurrency} processed={summary.processed} "
        f"succeeded={summary.succeeded} failed={summary.failed} "
        f"retried={summary.retried} skipped={summary.skipped} "
        f"reclaimed={summary.reclaimed} remaining={summary.remaining}"
    )


def _job_line(job: BulkJobView) -> str:
    return (
        f"{job.job_id} status={job.status.value} mode={job.research_mode} "
        f"progress={job.completed_count}/{job.total_count} "
        f"created={job.created_at.isoformat()}"
    )
