from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from bulk_research.runner.errors import JobNotFoundError
from bulk_research.runner.models import (
    BulkJobCreate,
    BulkJobStatus,
    BulkTaskStatus,
    ResearchMode,
    ResearchOutputWrite,
)
from bulk_research.runner.repository import BulkJobRepository
from bulk_research.storage.common import utc_now

pytestmark = [
    allure.epic("Bulk Research Runner"),
    allure.feature("Job/Task Store"),
]


def test_create_job_creates_one_pending_task_per_company(repository, make_job) -> None:
    job = make_job(["Acme", "Globex", "Initech"], mode=ResearchMode.DEEP)

    assert job.status == BulkJobStatus.PENDING
    assert job.total_count == 3
    assert job.completed_count == 0
    assert job.research_mode == "deep"
    assert job.companies == ["Acme", "Globex", "Initech"]

    tasks = repository.list_tasks(job.job_id)
    assert [task.company for task in tasks] == ["Acme", "Globex", "Initech"]
    assert {task.status for task in tasks} == {BulkTaskStatus.PENDING}
    assert all(task.attempt_count == 0 for task in tasks)
    assert all(task.started_at is None for task in tasks)


def test_create_job_rejects_empty_company_list(repository) -> None:
    with pytest.raises(ValueError, match="at least one company"):
        repository.create_job(
            BulkJobCreate(companies=[], research_mode=ResearchMode.QUICK, user_id="user-1"),
        )


def test_list_tasks_respects_status_filter_and_limit(repository, make_job) -> None:
    job = make_job(["A", "B", "C", "D"])
    first = repository.list_tasks(job.job_id)[0]
    assert repository.claim_task(first.task_id) is not None

    pending = repository.list_tasks(job.job_id, statuses=(BulkTaskStatus.PENDING,), limit=2)

    assert [task.company for task in pending] == ["B", "C"]
    assert repository.count_tasks(job.job_id, statuses=(BulkTaskStatus.RUNNING,)) == 1


def test_claim_task_moves_pending_to_running_and_counts_attempt(repository, make_job) -> None:
    job = make_job(["Acme"])
    task = repository.list_tasks(job.job_id)[0]

    claimed = repository.claim_task(task.task_id)

    assert claimed is not None
    assert claimed.status == BulkTaskStatus.RUNNING
    assert claimed.attempt_count == 1
    assert claimed.started_at is not None
    assert repository.claim_task(task.task_id) is None
    assert repository.get_task(task.task_id).attempt_count == 1


def test_claim_task_is_exclusive_across_concurrent_claimers(tmp_path: Path) -> None:
    db_path = tmp_path / "claims.db"
    setup = BulkJobRepository(db_path)
    setup.init_schema()
    job = setup.create_job(
        BulkJobCreate(companies=["Acme"], research_mode=ResearchMode.QUICK, user_id="user-1"),
    )
    task_id = setup.list_tasks(job.job_id)[0].task_id

    start = threading.Event()
    results: list[bool] = []
    lock = threading.Lock()

    def _claim() -> None:
        repo = BulkJobRepository(db_path)
        try:
            start.wait(timeout=5)
            claimed = repo.claim_task(task_id)
            with lock:
                results.append(claimed is not None)
        finally:
            repo.close()

    threads = [threading.Thread(target=_claim) for _ in range(6)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    assert len(results) == 6
    assert results.count(True) == 1
    task = setup.get_task(task_id)
    assert task.status == BulkTaskStatus.RUNNING
    assert task.attempt_count == 1
    setup.close()


def test_reclaim_stale_tasks_keeps_attempt_count(repository, make_job) -> None:
    job = make_job(["Slow", "Fresh"])
    slow, fresh = repository.list_tasks(job.job_id)
    repository.claim_task(slow.task_id)
    repository.claim_task(fresh.task_id)
    repository.update_task_fields(
        slow.task_id,
        {"started_at": utc_now() - timedelta(minutes=16)},
    )

    reclaimed = repository.reclaim_stale_tasks(job.job_id, stale_after=timedelta(minutes=15))

    assert reclaimed == [slow.task_id]
    slow_after = repository.get_task(slow.task_id)
    assert slow_after.status == BulkTaskStatus.PENDING
    assert slow_after.started_at is None
    assert slow_after.attempt_count == 1
    assert repository.get_task(fresh.task_id).status == BulkTaskStatus.RUNNING


def test_terminal_writes_require_current_ownership(repository, make_job) -> None:
    job = make_job(["Acme"])
    task = repository.list_tasks(job.job_id)[0]
    first = repository.claim_task(task.task_id)
    repository.requeue_task(task.task_id, attempt_count=first.attempt_count)
    second = repository.claim_task(task.task_id)

    assert not repository.complete_task(
        task.task_id,
        attempt_count=first.attempt_count,
        result="stale owner",
    )
    assert not repository.fail_task(task.task_id, attempt_count=first.attempt_count, error="x")
    assert repository.complete_task(
        task.task_id,
        attempt_count=second.attempt_count,
        result="current owner",
    )
    stored = repository.get_task(task.task_id)
    assert stored.status == BulkTaskStatus.COMPLETED
    assert stored.result == "current owner"
    assert stored.completed_at is not None


def test_refresh_progress_recomputes_results_in_completion_order(repository, make_job) -> None:
    job = make_job(["A", "B", "C"])
    tasks = {task.company: task for task in repository.list_tasks(job.job_id)}
    for company in ("C", "A"):
        claimed = repository.claim_task(tasks[company].task_id)
        repository.complete_task(
            claimed.task_id,
            attempt_count=claimed.attempt_count,
            result=f"report {company}",
        )

    progress = repository.refresh_progress(job.job_id)

    assert progress.done_count == 2
    assert progress.remaining == 1
    assert not progress.is_complete
    stored = repository.get_job(job.job_id)
    assert stored.completed_count == 2
    assert [entry["company"] for entry in stored.results] == ["C", "A"]
    assert stored.results[0]["result"] == "report C"
    assert stored.results[0]["status"] == "completed"


def test_refresh_progress_never_lowers_stored_count(repository, make_job) -> None:
    job = make_job(["A", "B"])
    repository.update_job_fields(job.job_id, {"completed_count": 2})

    progress = repository.refresh_progress(job.job_id)

    assert progress.done_count == 0
    assert repository.get_job(job.job_id).completed_count == 2


def test_refresh_progress_unknown_job_raises(repository) -> None:
    with pytest.raises(JobNotFoundError):
        repository.refresh_progress("missing")


def test_mark_job_completed_only_once_and_only_when_all_done(repository, make_job) -> None:
    job = make_job(["A"])
    assert repository.mark_job_running(job.job_id)
    assert not repository.mark_job_running(job.job_id)
    assert not repository.mark_job_completed(job.job_id)

    task = repository.claim_task(repository.list_tasks(job.job_id)[0].task_id)
    repository.fail_task(task.task_id, attempt_count=task.attempt_count, error="boom")
    repository.refresh_progress(job.job_id)

    assert repository.mark_job_completed(job.job_id)
    completed_at = repository.get_job(job.job_id).completed_at
    assert completed_at is not None
    assert not repository.mark_job_completed(job.job_id)
    assert repository.get_job(job.job_id).completed_at == completed_at


def test_save_research_output_is_idempotent_per_task(repository) -> None:
    output = ResearchOutputWrite(
        user_id="user-1",
        subject="Acme",
        markdown_report="# Acme",
        source_task_id="task-1",
    )

    assert repository.save_research_output(output)
    assert not repository.save_research_output(output)

    saved = repository.list_research_outputs(user_id="user-1")
    assert len(saved) == 1
    assert saved[0].subject == "Acme"
    assert saved[0].research_type == "company"


def test_list_jobs_filters_by_user(repository, make_job) -> None:
    make_job(["A"], user_id="alice")
    make_job(["B"], user_id="bob")

    assert [job.user_id for job in repository.list_jobs(user_id="alice")] == ["alice"]
    assert len(repository.list_jobs()) == 2
