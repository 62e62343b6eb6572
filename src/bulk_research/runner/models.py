"""Domain models for bulk research jobs and their per-company tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BulkJobStatus(str, Enum):
    """Job lifecycle states. Transitions only move forward."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


class BulkTaskStatus(str, Enum):
    """Task lifecycle states.

    Valid edges: ``pending -> running -> {completed | failed | pending}``.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({BulkTaskStatus.COMPLETED, BulkTaskStatus.FAILED})


class ResearchMode(str, Enum):
    """Depth of research requested; forwarded verbatim to inference."""

    QUICK = "quick"
    DEEP = "deep"


class TaskOutcome(str, Enum):
    """What one claimed (or skipped) task ended up as within a cycle."""

    COMPLETED = "completed"
    FAILED = "failed"
    REQUEUED = "requeued"
    SKIPPED = "skipped"
    LOST = "lost"


@dataclass(slots=True)
class BulkJobCreate:
    """Input payload for creating a job together with its tasks."""

    companies: list[str]
    research_mode: ResearchMode
    user_id: str
    job_id: str | None = None


@dataclass(slots=True)
class BulkJobView:
    """Readable job view for dispatcher, API, and CLI."""

    job_id: str
    user_id: str
    research_mode: str
    companies: list[str]
    total_count: int
    status: BulkJobStatus
    completed_count: int
    results: list[dict[str, Any]]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "research_mode": self.research_mode,
            "companies": list(self.companies),
            "total_count": self.total_count,
            "status": self.status.value,
            "completed_count": self.completed_count,
            "results": list(self.results),
            "created_at": self.created_at.isoformat(),
            "started_at": _iso_or_none(self.started_at),
            "completed_at": _iso_or_none(self.completed_at),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class BulkTaskView:
    """Readable task view."""

    task_id: str
    job_id: str
    user_id: str
    company: str
    position: int
    status: BulkTaskStatus
    attempt_count: int
    result: str | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "company": self.company,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "result": self.result,
            "error": self.error,
            "started_at": _iso_or_none(self.started_at),
            "completed_at": _iso_or_none(self.completed_at),
        }


@dataclass(slots=True)
class JobProgress:
    """Recomputed terminal-task snapshot for one job."""

    job_id: str
    done_count: int
    total_count: int
    failed_count: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.total_count - self.done_count)

    @property
    def is_complete(self) -> bool:
        return self.done_count >= self.total_count


@dataclass(slots=True)
class JobTaskCounts:
    """Per-status task counts for rendering partial success."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @classmethod
    def from_tasks(cls, tasks: list[BulkTaskView]) -> JobTaskCounts:
        counts = cls(total=len(tasks))
        for task in tasks:
            if task.status == BulkTaskStatus.PENDING:
                counts.pending += 1
            elif task.status == BulkTaskStatus.RUNNING:
                counts.running += 1
            elif task.status == BulkTaskStatus.COMPLETED:
                counts.completed += 1
            else:
                counts.failed += 1
        return counts

    def describe(self) -> str:
        return f"{self.completed} of {self.total} researched, {self.failed} failed"


@dataclass(slots=True)
class CycleSummary:
    """Aggregate counters for one dispatch cycle."""

    job_id: str
    concurrency: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    lost: int = 0
    reclaimed: int = 0
    remaining: int = 0
    finalized: bool = False
    continued: bool = False
    outcomes: dict[str, str] = field(default_factory=dict)

    def record(self, task_id: str, outcome: TaskOutcome) -> None:
        self.outcomes[task_id] = outcome.value
        if outcome == TaskOutcome.COMPLETED:
            self.succeeded += 1
        elif outcome == TaskOutcome.FAILED:
            self.failed += 1
        elif outcome == TaskOutcome.REQUEUED:
            self.retried += 1
        elif outcome == TaskOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.lost += 1


@dataclass(slots=True)
class JobCompletedNotification:
    """Payload sent once when a job reaches ``completed``."""

    job_id: str
    user_id: str
    companies: list[str]
    research_mode: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "companies": list(self.companies),
            "research_type": self.research_mode,
        }


@dataclass(slots=True)
class ResearchOutputWrite:
    """Research report persisted for a successfully researched company."""

    user_id: str
    subject: str
    markdown_report: str
    source_task_id: str | None = None
    research_type: str = "company"


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
