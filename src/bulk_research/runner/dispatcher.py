"""Bounded batch dispatcher that drives a bulk research job one cycle at a time."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from bulk_research.runner.collaborators import Notifier, ResearchOutputSink
from bulk_research.runner.continuation import ContinuationTrigger
from bulk_research.runner.errors import JobNotFoundError
from bulk_research.runner.inference import InferenceBackend, InferenceRequest
from bulk_research.runner.models import (
    BulkJobStatus,
    BulkJobView,
    BulkTaskStatus,
    BulkTaskView,
    CycleSummary,
    JobCompletedNotification,
    JobProgress,
    ResearchMode,
    ResearchOutputWrite,
    TaskOutcome,
)
from bulk_research.runner.repository import BulkJobRepository

logger = logging.getLogger(__name__)

DEFAULT_MODE_CONCURRENCY: Mapping[str, int] = {
    ResearchMode.QUICK.value: 3,
    ResearchMode.DEEP.value: 2,
}


class BulkJobDispatcher:
    """Runs one bounded batch of a job per ``run_cycle`` call.

    A cycle reclaims stale tasks, claims up to ``concurrency`` pending tasks,
    runs them in parallel against the inference backend, recomputes progress,
    then either finalizes the job or fires a continuation for the next cycle.
    Overlapping cycles for the same job are safe: ownership of each task is
    decided by the repository's conditional claim.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: BulkJobRepository,
        backend: InferenceBackend,
        output_sink: ResearchOutputSink,
        notifier: Notifier,
        continuation: ContinuationTrigger,
        max_attempts: int = 3,
        stale_after_seconds: int = 900,
        min_concurrency: int = 1,
        max_concurrency: int = 3,
        mode_concurrency: Mapping[str, int] | None = None,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.output_sink = output_sink
        self.notifier = notifier
        self.continuation = continuation
        self.max_attempts = max_attempts
        self.stale_after_seconds = stale_after_seconds
        self.min_concurrency = min_concurrency
        self.max_concurrency = max_concurrency
        self.mode_concurrency = dict(mode_concurrency or DEFAULT_MODE_CONCURRENCY)

    def run_cycle(self, job_id: str, *, concurrency: int | None = None) -> CycleSummary:
        """Process one batch of ``job_id``; raises ``JobNotFoundError`` for unknown jobs."""

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status == BulkJobStatus.PENDING and self.repository.mark_job_running(job_id):
            logger.info("Job %s started (%d companies)", job_id, job.total_count)

        summary = CycleSummary(job_id=job_id)
        summary.reclaimed = self._reclaim_stale(job_id)
        summary.concurrency = self.effective_concurrency(job, concurrency)

        batch = self.repository.list_tasks(
            job_id,
            statuses=(BulkTaskStatus.PENDING,),
            limit=summary.concurrency,
        )
        if not batch:
            running = self.repository.count_tasks(job_id, statuses=(BulkTaskStatus.RUNNING,))
            progress = self._finalize(job)
            summary.remaining = progress.remaining
            summary.finalized = progress.is_complete
            if running:
                logger.info(
                    "Job %s has no pending tasks, %d still running in other cycles",
                    job_id,
                    running,
                )
            return summary

        summary.processed = len(batch)
        with ThreadPoolExecutor(
            max_workers=len(batch),
            thread_name_prefix="bulk-task",
        ) as executor:
            futures = {
                task.task_id: executor.submit(self._process_task, job, task) for task in batch
            }
            for task_id, future in futures.items():
                summary.record(task_id, future.result())

        progress = self._finalize(job)
        summary.remaining = progress.remaining
        summary.finalized = progress.is_complete
        if not progress.is_complete:
            self.continuation.trigger(job_id, summary.concurrency)
            summary.continued = True

        logger.info(
            "Job %s cycle: processed=%d succeeded=%d failed=%d retried=%d skipped=%d "
            "remaining=%d",
            job_id,
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.retried,
            summary.skipped,
            summary.remaining,
        )
        return summary

    def effective_concurrency(self, job: BulkJobView, requested: int | None) -> int:
        """Clamp the requested batch size; a missing or zero request uses the mode default."""

        default = self.mode_concurrency.get(job.research_mode, self.max_concurrency)
        value = requested or default
        return max(self.min_concurrency, min(self.max_concurrency, value))

    def finalize(self, job_id: str) -> JobProgress:
        """Refresh progress and complete the job if every task is terminal."""

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return self._finalize(job)

    def _reclaim_stale(self, job_id: str) -> int:
        if self.stale_after_seconds <= 0:
            return 0
        try:
            reclaimed = self.repository.reclaim_stale_tasks(
                job_id,
                stale_after=timedelta(seconds=self.stale_after_seconds),
            )
        except SQLAlchemyError:
            logger.exception("Reclaiming stale tasks for job %s failed", job_id)
            return 0
        return len(reclaimed)

    def _process_task(self, job: BulkJobView, task: BulkTaskView) -> TaskOutcome:
        claimed = self.repository.claim_task(task.task_id)
        if claimed is None:
            logger.info(
                "Task %s (%s) already claimed elsewhere, skipping",
                task.task_id,
                task.company,
            )
            return TaskOutcome.SKIPPED

        try:
            result = self.backend.run(
                InferenceRequest(
                    company=claimed.company,
                    research_mode=job.research_mode,
                    job_id=job.job_id,
                    task_id=claimed.task_id,
                    user_id=job.user_id,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Research call for %s (task %s, attempt %d) failed: %s",
                claimed.company,
                claimed.task_id,
                claimed.attempt_count,
                error,
            )
            return self._resolve_failure(claimed, str(error) or type(error).__name__)

        if not result.ok:
            logger.warning(
                "Research for %s (task %s, attempt %d) returned an error: %s",
                claimed.company,
                claimed.task_id,
                claimed.attempt_count,
                result.error,
            )
            return self._resolve_failure(claimed, result.error or "unknown error")

        text = result.text or ""
        self._save_output(job, claimed, text)
        if self.repository.complete_task(
            claimed.task_id,
            attempt_count=claimed.attempt_count,
            result=text,
        ):
            return TaskOutcome.COMPLETED
        logger.warning(
            "Task %s was taken over by another cycle before completion was recorded",
            claimed.task_id,
        )
        return TaskOutcome.LOST

    def _resolve_failure(self, task: BulkTaskView, diagnostic: str) -> TaskOutcome:
        if task.attempt_count < self.max_attempts:
            if self.repository.requeue_task(task.task_id, attempt_count=task.attempt_count):
                return TaskOutcome.REQUEUED
            return TaskOutcome.LOST

        if self.repository.fail_task(
            task.task_id,
            attempt_count=task.attempt_count,
            error=f"Research failed: {diagnostic}",
        ):
            logger.error(
                "Task %s (%s) failed after %d attempts",
                task.task_id,
                task.company,
                task.attempt_count,
            )
            return TaskOutcome.FAILED
        return TaskOutcome.LOST

    def _save_output(self, job: BulkJobView, task: BulkTaskView, text: str) -> None:
        try:
            self.output_sink.save(
                ResearchOutputWrite(
                    user_id=job.user_id,
                    subject=task.company,
                    markdown_report=text,
                    source_task_id=task.task_id,
                ),
            )
        except Exception:
            logger.exception("Saving research output for task %s failed", task.task_id)

    def _finalize(self, job: BulkJobView) -> JobProgress:
        progress = self.repository.refresh_progress(job.job_id)
        if not progress.is_complete:
            return progress
        if not self.repository.mark_job_completed(job.job_id):
            return progress

        logger.info(
            "Job %s completed: %d done, %d failed",
            job.job_id,
            progress.done_count,
            progress.failed_count,
        )
        try:
            self.notifier.notify(
                JobCompletedNotification(
                    job_id=job.job_id,
                    user_id=job.user_id,
                    companies=list(job.companies),
                    research_mode=job.research_mode,
                ),
            )
        except Exception:
            logger.exception("Completion notification for job %s failed", job.job_id)
        return progress
