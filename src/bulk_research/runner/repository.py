"""Persistent job/task store for the bulk research runner."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from bulk_research.runner.errors import JobNotFoundError
from bulk_research.runner.models import (
    TERMINAL_TASK_STATUSES,
    BulkJobCreate,
    BulkJobStatus,
    BulkJobView,
    BulkTaskStatus,
    BulkTaskView,
    JobProgress,
    ResearchOutputWrite,
)
from bulk_research.storage.alembic_runner import upgrade_head
from bulk_research.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from bulk_research.storage.sqlmodel_models import (
    BulkResearchJob,
    BulkResearchTask,
    ResearchOutput,
)

logger = logging.getLogger(__name__)


class BulkJobRepository:
    """Job/task persistence facade backed by SQLModel + SQLite.

    Every state transition is a single ``UPDATE`` in its own transaction.
    Transitions that require ownership are conditional on the expected prior
    state and report ``False``/``None`` when another cycle got there first.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- jobs ------------------------------------------------------------------

    def create_job(self, payload: BulkJobCreate) -> BulkJobView:
        """Create a job and one pending task per company in a single transaction."""

        companies = list(payload.companies)
        if not companies:
            raise ValueError("A bulk research job needs at least one company.")

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = BulkResearchJob(
                job_id=job_id,
                user_id=payload.user_id,
                research_mode=payload.research_mode.value,
                companies_json=json.dumps(companies, ensure_ascii=False),
                total_count=len(companies),
                status=BulkJobStatus.PENDING.value,
                completed_count=0,
                results_json=None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            for position, company in enumerate(companies):
                session.add(
                    BulkResearchTask(
                        task_id=str(uuid4()),
                        job_id=job_id,
                        user_id=payload.user_id,
                        company=company,
                        position=position,
                        status=BulkTaskStatus.PENDING.value,
                        attempt_count=0,
                        created_at=now,
                    ),
                )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> BulkJobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BulkResearchJob).where(BulkResearchJob.job_id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, user_id: str | None = None, limit: int = 50) -> list[BulkJobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(BulkResearchJob)
                .order_by(col(BulkResearchJob.created_at).desc())
                .limit(limit)
            )
            if user_id is not None:
                statement = statement.where(BulkResearchJob.user_id == user_id)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def update_job_fields(
        self,
        job_id: str,
        values: Mapping[str, Any],
        *,
        expected_status: BulkJobStatus | None = None,
    ) -> bool:
        """Update job columns; optionally only when the job is in ``expected_status``."""

        with Session(self.engine) as session:
            statement = sa_update(BulkResearchJob).where(col(BulkResearchJob.job_id) == job_id)
            if expected_status is not None:
                statement = statement.where(
                    col(BulkResearchJob.status) == expected_status.value,
                )
            result = session.exec(statement.values(**_db_values(values)))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_job_running(self, job_id: str) -> bool:
        """First-cycle ``pending -> running`` transition; no-op for any other status."""

        now = utc_now()
        return self.update_job_fields(
            job_id,
            {
                "status": BulkJobStatus.RUNNING,
                "started_at": now,
                "updated_at": now,
            },
            expected_status=BulkJobStatus.PENDING,
        )

    def mark_job_completed(self, job_id: str) -> bool:
        """Set ``completed`` once; only when the stored count covers every task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BulkResearchJob)
                .where(
                    col(BulkResearchJob.job_id) == job_id,
                    col(BulkResearchJob.status) != BulkJobStatus.COMPLETED.value,
                    col(BulkResearchJob.completed_count) >= col(BulkResearchJob.total_count),
                )
                .values(
                    status=BulkJobStatus.COMPLETED.value,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def refresh_progress(self, job_id: str) -> JobProgress:
        """Recompute ``completed_count`` and the ``results`` snapshot from task rows.

        The stored count never goes down: a cycle holding an older, smaller
        snapshot than one already written leaves the row alone.
        """

        with Session(self.engine) as session:
            job = session.exec(
                select(BulkResearchJob).where(BulkResearchJob.job_id == job_id),
            ).one_or_none()
            if job is None:
                raise JobNotFoundError(job_id)
            terminal = session.exec(
                select(BulkResearchTask)
                .where(
                    BulkResearchTask.job_id == job_id,
                    col(BulkResearchTask.status).in_(
                        [status.value for status in TERMINAL_TASK_STATUSES],
                    ),
                )
                .order_by(
                    col(BulkResearchTask.completed_at).asc(),
                    col(BulkResearchTask.position).asc(),
                ),
            ).all()
            results = [_task_result_entry(row) for row in terminal]
            done_count = len(results)
            failed_count = sum(
                1 for row in terminal if row.status == BulkTaskStatus.FAILED.value
            )
            session.exec(
                sa_update(BulkResearchJob)
                .where(
                    col(BulkResearchJob.job_id) == job_id,
                    col(BulkResearchJob.completed_count) <= done_count,
                )
                .values(
                    completed_count=done_count,
                    results_json=json.dumps(results, ensure_ascii=False),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return JobProgress(
                job_id=job_id,
                done_count=done_count,
                total_count=job.total_count,
                failed_count=failed_count,
            )

    # -- tasks -----------------------------------------------------------------

    def list_tasks(
        self,
        job_id: str,
        *,
        statuses: Iterable[BulkTaskStatus] | None = None,
        limit: int | None = None,
    ) -> list[BulkTaskView]:
        """List tasks of a job in creation order (oldest first)."""

        with Session(self.engine) as session:
            statement = (
                select(BulkResearchTask)
                .where(BulkResearchTask.job_id == job_id)
                .order_by(
                    col(BulkResearchTask.created_at).asc(),
                    col(BulkResearchTask.position).asc(),
                )
            )
            if statuses is not None:
                statement = statement.where(
                    col(BulkResearchTask.status).in_([status.value for status in statuses]),
                )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count_tasks(self, job_id: str, *, statuses: Iterable[BulkTaskStatus]) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(BulkResearchTask)
                .where(
                    BulkResearchTask.job_id == job_id,
                    col(BulkResearchTask.status).in_([status.value for status in statuses]),
                ),
            ).one()

    def get_task(self, task_id: str) -> BulkTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BulkResearchTask).where(BulkResearchTask.task_id == task_id),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def update_task_fields(
        self,
        task_id: str,
        values: Mapping[str, Any],
        *,
        expected_status: BulkTaskStatus | None = None,
        expected_attempt: int | None = None,
    ) -> bool:
        """Update task columns, optionally conditional on current status/attempt."""

        with Session(self.engine) as session:
            statement = sa_update(BulkResearchTask).where(
                col(BulkResearchTask.task_id) == task_id,
            )
            if expected_status is not None:
                statement = statement.where(
                    col(BulkResearchTask.status) == expected_status.value,
                )
            if expected_attempt is not None:
                statement = statement.where(
                    col(BulkResearchTask.attempt_count) == expected_attempt,
                )
            result = session.exec(statement.values(**_db_values(values)))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def claim_task(self, task_id: str) -> BulkTaskView | None:
        """Atomically move one task ``pending -> running``.

        Returns the claimed task, or ``None`` when the row was not pending
        (another cycle claimed it first).
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BulkResearchTask)
                .where(
                    col(BulkResearchTask.task_id) == task_id,
                    col(BulkResearchTask.status) == BulkTaskStatus.PENDING.value,
                )
                .values(
                    status=BulkTaskStatus.RUNNING.value,
                    started_at=now,
                    attempt_count=col(BulkResearchTask.attempt_count) + 1,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            claimed = session.exec(
                select(BulkResearchTask).where(BulkResearchTask.task_id == task_id),
            ).one()
            view = _to_task_view(claimed)
            session.commit()
            return view

    def reclaim_stale_tasks(self, job_id: str, *, stale_after: timedelta) -> list[str]:
        """Return tasks stuck in ``running`` past ``stale_after`` to ``pending``.

        ``attempt_count`` is left as is, so a task that keeps timing out still
        exhausts its attempts.
        """

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            stale_ids = list(
                session.exec(
                    select(BulkResearchTask.task_id).where(
                        BulkResearchTask.job_id == job_id,
                        BulkResearchTask.status == BulkTaskStatus.RUNNING.value,
                        col(BulkResearchTask.started_at) < cutoff,
                    ),
                ).all(),
            )
            if not stale_ids:
                return []
            session.exec(
                sa_update(BulkResearchTask)
                .where(
                    col(BulkResearchTask.task_id).in_(stale_ids),
                    col(BulkResearchTask.status) == BulkTaskStatus.RUNNING.value,
                )
                .values(status=BulkTaskStatus.PENDING.value, started_at=None),
            )
            session.commit()
        logger.warning("Reclaimed %d stale running task(s) for job %s", len(stale_ids), job_id)
        return stale_ids

    def requeue_task(self, task_id: str, *, attempt_count: int) -> bool:
        """Give a failed attempt back to the queue (``running -> pending``)."""

        return self.update_task_fields(
            task_id,
            {"status": BulkTaskStatus.PENDING, "started_at": None},
            expected_status=BulkTaskStatus.RUNNING,
            expected_attempt=attempt_count,
        )

    def fail_task(self, task_id: str, *, attempt_count: int, error: str) -> bool:
        return self.update_task_fields(
            task_id,
            {
                "status": BulkTaskStatus.FAILED,
                "error": error,
                "completed_at": utc_now(),
            },
            expected_status=BulkTaskStatus.RUNNING,
            expected_attempt=attempt_count,
        )

    def complete_task(self, task_id: str, *, attempt_count: int, result: str) -> bool:
        return self.update_task_fields(
            task_id,
            {
                "status": BulkTaskStatus.COMPLETED,
                "result": result,
                "error": None,
                "completed_at": utc_now(),
            },
            expected_status=BulkTaskStatus.RUNNING,
            expected_attempt=attempt_count,
        )

    # -- research outputs ------------------------------------------------------

    def save_research_output(self, output: ResearchOutputWrite) -> bool:
        """Insert a research report; ``False`` if this task's report already exists."""

        with Session(self.engine) as session:
            session.add(
                ResearchOutput(
                    user_id=output.user_id,
                    subject=output.subject,
                    research_type=output.research_type,
                    markdown_report=output.markdown_report,
                    source_task_id=output.source_task_id,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def list_research_outputs(self, *, user_id: str) -> list[ResearchOutput]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(ResearchOutput)
                    .where(ResearchOutput.user_id == user_id)
                    .order_by(col(ResearchOutput.output_id).asc()),
                ).all(),
            )


def _db_values(values: Mapping[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            converted[key] = value.value
        elif isinstance(value, datetime):
            converted[key] = to_db_datetime(value)
        else:
            converted[key] = value
    return converted


def _task_result_entry(row: BulkResearchTask) -> dict[str, Any]:
    completed_at = optional_utc(row.completed_at)
    return {
        "task_id": row.task_id,
        "company": row.company,
        "status": row.status,
        "result": row.result,
        "error": row.error,
        "completed_at": completed_at.isoformat() if completed_at is not None else None,
    }


def _to_job_view(row: BulkResearchJob) -> BulkJobView:
    companies = json.loads(row.companies_json)
    results = json.loads(row.results_json) if row.results_json else []
    return BulkJobView(
        job_id=row.job_id,
        user_id=row.user_id,
        research_mode=row.research_mode,
        companies=[str(company) for company in companies],
        total_count=row.total_count,
        status=BulkJobStatus(row.status),
        completed_count=row.completed_count,
        results=results if isinstance(results, list) else [],
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: BulkResearchTask) -> BulkTaskView:
    return BulkTaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        user_id=row.user_id,
        company=row.company,
        position=row.position,
        status=BulkTaskStatus(row.status),
        attempt_count=row.attempt_count,
        result=row.result,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )
