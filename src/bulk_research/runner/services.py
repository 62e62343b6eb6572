"""Use-case services for bulk research jobs."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from bulk_research.config import Settings
from bulk_research.runner.collaborators import (
    HttpNotifier,
    Notifier,
    NullNotifier,
    RepositoryResearchOutputSink,
)
from bulk_research.runner.continuation import (
    ContinuationTrigger,
    CycleRunner,
    HttpContinuationTrigger,
    NullContinuationTrigger,
    ThreadContinuationTrigger,
)
from bulk_research.runner.dispatcher import BulkJobDispatcher
from bulk_research.runner.errors import BadRequestError, JobNotFoundError
from bulk_research.runner.inference import (
    ChatEndpointBackend,
    EchoInferenceBackend,
    InferenceBackend,
)
from bulk_research.runner.models import (
    BulkJobCreate,
    BulkJobView,
    BulkTaskView,
    CycleSummary,
    JobTaskCounts,
    ResearchMode,
)
from bulk_research.runner.repository import BulkJobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitBulkJob:
    """High-level command to create a bulk research job."""

    companies: list[str]
    research_mode: str
    user_id: str


@dataclass(slots=True)
class BulkJobDetail:
    """Job with its tasks and per-status counts."""

    job: BulkJobView
    tasks: list[BulkTaskView]
    counts: JobTaskCounts


class BulkJobService:
    """Validates submissions and reads job state."""

    def __init__(
        self,
        *,
        repository: BulkJobRepository,
        mode_concurrency: dict[str, int],
        continuation: ContinuationTrigger | None = None,
    ) -> None:
        self.repository = repository
        self.mode_concurrency = mode_concurrency
        self.continuation = continuation

    def submit(self, command: SubmitBulkJob) -> BulkJobView:
        """Create the job and all of its tasks, then kick off the first cycle."""

        companies = [company.strip() for company in command.companies if company.strip()]
        if not companies:
            raise BadRequestError("Companies list is required and must be non-empty.")
        try:
            mode = ResearchMode(command.research_mode.strip().lower())
        except ValueError as error:
            raise BadRequestError(
                f"Unsupported research type: {command.research_mode!r}. "
                "Expected 'quick' or 'deep'.",
            ) from error

        job = self.repository.create_job(
            BulkJobCreate(companies=companies, research_mode=mode, user_id=command.user_id),
        )
        logger.info(
            "Bulk job %s created: %d companies, mode=%s",
            job.job_id,
            job.total_count,
            job.research_mode,
        )
        if self.continuation is not None:
            self.continuation.trigger(job.job_id, self.mode_concurrency[mode.value])
        return job

    def list_jobs(self, *, user_id: str | None = None, limit: int = 50) -> list[BulkJobView]:
        return self.repository.list_jobs(user_id=user_id, limit=limit)

    def describe(self, job_id: str) -> BulkJobDetail:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        tasks = self.repository.list_tasks(job_id)
        return BulkJobDetail(job=job, tasks=tasks, counts=JobTaskCounts.from_tasks(tasks))


class BulkResearchRuntime:
    """Wires settings into repositories, dispatchers and collaborators.

    Every cycle opens its own repository so cycles started from continuation
    threads never share a SQLAlchemy engine with the caller.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        backend: InferenceBackend | None = None,
        notifier: Notifier | None = None,
        continuation: ContinuationTrigger | None = None,
    ) -> None:
        settings.validate_for_runner()
        self.settings = settings
        self._backend = backend
        self.notifier = notifier or build_notifier(settings)
        self.continuation = continuation or build_continuation(settings, self._continue)

    @property
    def backend(self) -> InferenceBackend:
        """Inference backend, built on first use so job bookkeeping needs no credentials."""

        if self._backend is None:
            self._backend = build_inference_backend(self.settings)
        return self._backend

    def init_schema(self) -> None:
        with open_repository(self.settings) as repository:
            repository.init_schema()

    def run_cycle(self, job_id: str, concurrency: int | None = None) -> CycleSummary:
        with open_repository(self.settings) as repository:
            dispatcher = self.dispatcher(repository)
            return dispatcher.run_cycle(job_id, concurrency=concurrency)

    def dispatcher(self, repository: BulkJobRepository) -> BulkJobDispatcher:
        runner = self.settings.runner
        return BulkJobDispatcher(
            repository=repository,
            backend=self.backend,
            output_sink=RepositoryResearchOutputSink(repository),
            notifier=self.notifier,
            continuation=self.continuation,
            max_attempts=runner.max_attempts,
            stale_after_seconds=runner.stale_after_seconds,
            min_concurrency=runner.min_concurrency,
            max_concurrency=runner.max_concurrency,
            mode_concurrency=runner.mode_concurrency(),
        )

    def submit(self, command: SubmitBulkJob) -> BulkJobView:
        with open_repository(self.settings) as repository:
            service = self.service(repository)
            return service.submit(command)

    def service(self, repository: BulkJobRepository) -> BulkJobService:
        return BulkJobService(
            repository=repository,
            mode_concurrency=self.settings.runner.mode_concurrency(),
            continuation=self.continuation,
        )

    def describe(self, job_id: str) -> BulkJobDetail:
        with open_repository(self.settings) as repository:
            return self.service(repository).describe(job_id)

    def _continue(self, job_id: str, concurrency: int) -> CycleSummary:
        return self.run_cycle(job_id, concurrency)


@contextmanager
def open_repository(
    settings: Settings,
    *,
    init_schema: bool = False,
) -> Iterator[BulkJobRepository]:
    repository = BulkJobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.runner.sqlite_busy_timeout_ms,
    )
    if init_schema:
        repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def build_inference_backend(settings: Settings) -> InferenceBackend:
    settings.validate_for_inference()
    if settings.inference.backend == "echo":
        return EchoInferenceBackend()
    return ChatEndpointBackend(
        endpoint=settings.inference.chat_endpoint(),
        service_key=settings.inference.service_key,
        timeout_seconds=settings.inference.timeout_seconds,
    )


def build_notifier(settings: Settings) -> Notifier:
    settings.validate_for_notification()
    if not settings.notification.enabled:
        return NullNotifier()
    return HttpNotifier(
        url=settings.notification.url,
        api_key=settings.notification.api_key,
        timeout_seconds=settings.notification.timeout_seconds,
    )


def build_continuation(
    settings: Settings,
    runner: CycleRunner | None,
) -> ContinuationTrigger:
    """HTTP self-trigger when a runner URL is configured, in-process thread otherwise."""

    if settings.continuation.runner_url:
        return HttpContinuationTrigger(
            url=settings.continuation.runner_url,
            api_key=settings.continuation.api_key,
            timeout_seconds=settings.continuation.timeout_seconds,
        )
    if runner is None:
        return NullContinuationTrigger()
    return ThreadContinuationTrigger(runner)
