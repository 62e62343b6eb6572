from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from bulk_research import __version__
from bulk_research.main import bulk_research

pytestmark = [
    allure.epic("Bulk Research Runner"),
    allure.feature("Operator CLI"),
]


@pytest.fixture(autouse=True)
def _echo_backend(monkeypatch) -> None:
    monkeypatch.setenv("BULK_RESEARCH_INFERENCE_BACKEND", "echo")
    monkeypatch.delenv("BULK_RESEARCH_NOTIFY_ENABLED", raising=False)
    monkeypatch.delenv("BULK_RESEARCH_RUNNER_URL", raising=False)


def _submit(runner: CliRunner, db_path: Path, *companies: str, mode: str = "quick") -> str:
    args = ["submit", "--db-path", str(db_path), "--mode", mode]
    for company in companies:
        args.extend(["--company", company])
    result = runner.invoke(bulk_research, args)
    assert result.exit_code == 0, result.output
    match = re.search(r"job_id=([0-9a-f-]+)", result.output)
    assert match is not None
    return match.group(1)


def test_version_option() -> None:
    result = CliRunner().invoke(bulk_research, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_submit_drain_and_inspect(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job_id = _submit(runner, db_path, "Acme", "Globex", "Initech", mode="deep")

    drained = runner.invoke(
        bulk_research,
        ["run", "--db-path", str(db_path), "--job-id", job_id, "--drain"],
    )

    assert drained.exit_code == 0, drained.output
    assert "Cycle 1: concurrency=2 processed=2" in drained.output
    assert "Cycle 2: concurrency=2 processed=1" in drained.output
    assert "status=completed 3 of 3 researched, 0 failed" in drained.output

    inspected = runner.invoke(
        bulk_research,
        ["inspect", "--db-path", str(db_path), "--job-id", job_id, "--show-results"],
    )

    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert "Progress: 3/3" in inspected.output
    assert "- Globex: status=completed attempts=1" in inspected.output
    assert "result: # Globex" in inspected.output


def test_run_once_processes_single_batch(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job_id = _submit(runner, db_path, "A", "B", "C")

    result = runner.invoke(
        bulk_research,
        ["run", "--db-path", str(db_path), "--job-id", job_id, "--concurrency", "1"],
    )

    assert result.exit_code == 0, result.output
    assert "Cycle 1: concurrency=1 processed=1" in result.output
    assert "Cycle 2" not in result.output
    assert "status=running 1 of 3 researched, 0 failed" in result.output


def test_jobs_lists_submitted_jobs(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    empty = runner.invoke(bulk_research, ["jobs", "--db-path", str(db_path)])
    job_id = _submit(runner, db_path, "Acme")
    listed = runner.invoke(bulk_research, ["jobs", "--db-path", str(db_path)])

    assert "No bulk research jobs found." in empty.output
    assert listed.exit_code == 0
    assert f"{job_id} status=pending mode=quick progress=0/1" in listed.output


def test_run_unknown_job_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        bulk_research,
        ["run", "--db-path", str(tmp_path / "cli.db"), "--job-id", "missing"],
    )

    assert result.exit_code != 0
    assert "Bulk research job not found: missing" in result.output


def test_submit_rejects_blank_companies(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        bulk_research,
        ["submit", "--db-path", str(tmp_path / "cli.db"), "--company", "  "],
    )

    assert result.exit_code != 0
    assert "non-empty" in result.output


def test_submit_and_inspect_need_no_inference_settings(tmp_path: Path, monkeypatch) -> None:
    for name in (
        "BULK_RESEARCH_INFERENCE_BACKEND",
        "BULK_RESEARCH_CHAT_API_URL",
        "BULK_RESEARCH_API_BASE_URL",
        "BULK_RESEARCH_SERVICE_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job_id = _submit(runner, db_path, "Acme", "Globex")

    inspected = runner.invoke(
        bulk_research,
        ["inspect", "--db-path", str(db_path), "--job-id", job_id],
    )
    drained = runner.invoke(
        bulk_research,
        ["run", "--db-path", str(db_path), "--job-id", job_id],
    )

    assert inspected.exit_code == 0, inspected.output
    assert "Status: pending" in inspected.output
    assert "- Acme: status=pending attempts=0" in inspected.output
    assert drained.exit_code != 0
    assert "Chat endpoint is not configured" in drained.output
