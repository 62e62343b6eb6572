"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from bulk_research.runner.collaborators import RepositoryResearchOutputSink
from bulk_research.runner.dispatcher import BulkJobDispatcher
from bulk_research.runner.inference import InferenceRequest, InferenceResult
from bulk_research.runner.models import (
    BulkJobCreate,
    BulkJobView,
    JobCompletedNotification,
    ResearchMode,
)
from bulk_research.runner.repository import BulkJobRepository


class ScriptedBackend:
    """Returns canned results per company; records every call."""

    def __init__(
        self,
        *,
        failures: dict[str, str] | None = None,
        raises: dict[str, Exception] | None = None,
        hook: Callable[[InferenceRequest], None] | None = None,
    ) -> None:
        self.failures = failures or {}
        self.raises = raises or {}
        self.hook = hook
        self.calls: list[InferenceRequest] = []
        self._lock = threading.Lock()

    def run(self, request: InferenceRequest) -> InferenceResult:
        with self._lock:
            self.calls.append(request)
        if self.hook is not None:
            self.hook(request)
        if request.company in self.raises:
            raise self.raises[request.company]
        if request.company in self.failures:
            return InferenceResult(error=self.failures[request.company])
        return InferenceResult(text=f"Report for {request.company}")

    def companies(self) -> list[str]:
        return [call.company for call in self.calls]


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[JobCompletedNotification] = []

    def notify(self, notification: JobCompletedNotification) -> None:
        self.sent.append(notification)


class RecordingContinuation:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []

    def trigger(self, job_id: str, concurrency: int) -> None:
        self.calls.append((job_id, concurrency))


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[BulkJobRepository]:
    repo = BulkJobRepository(tmp_path / "bulk.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def make_job(repository: BulkJobRepository) -> Callable[..., BulkJobView]:
    def _make_job(
        companies: list[str],
        mode: ResearchMode = ResearchMode.QUICK,
        user_id: str = "user-1",
    ) -> BulkJobView:
        return repository.create_job(
            BulkJobCreate(companies=companies, research_mode=mode, user_id=user_id),
        )

    return _make_job


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def continuation() -> RecordingContinuation:
    return RecordingContinuation()


@pytest.fixture()
def make_dispatcher(
    repository: BulkJobRepository,
    notifier: RecordingNotifier,
    continuation: RecordingContinuation,
) -> Callable[..., BulkJobDispatcher]:
    def _make_dispatcher(backend: ScriptedBackend | None = None, **overrides) -> BulkJobDispatcher:
        options = {
            "repository": repository,
            "backend": backend or ScriptedBackend(),
            "output_sink": RepositoryResearchOutputSink(repository),
            "notifier": notifier,
            "continuation": continuation,
        }
        options.update(overrides)
        return BulkJobDispatcher(**options)

    return _make_dispatcher
