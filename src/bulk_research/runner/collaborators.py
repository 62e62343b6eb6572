"""Research-output persistence and completion notification collaborators."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from bulk_research.runner.models import JobCompletedNotification, ResearchOutputWrite
from bulk_research.runner.repository import BulkJobRepository

logger = logging.getLogger(__name__)


class ResearchOutputSink(Protocol):
    """Stores the report of a successfully researched company."""

    def save(self, output: ResearchOutputWrite) -> None:
        """Persist one report."""


class Notifier(Protocol):
    """Announces that a job has completed."""

    def notify(self, notification: JobCompletedNotification) -> None:
        """Send one completion notification."""


class RepositoryResearchOutputSink:
    """Writes reports to the ``research_outputs`` table, once per task."""

    def __init__(self, repository: BulkJobRepository) -> None:
        self.repository = repository

    def save(self, output: ResearchOutputWrite) -> None:
        if not self.repository.save_research_output(output):
            logger.info(
                "Research output for task %s already saved, skipping duplicate",
                output.source_task_id,
            )


class HttpNotifier:
    """Posts the completion payload to the notification function."""

    def __init__(
        self,
        *,
        url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["apikey"] = api_key
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    def notify(self, notification: JobCompletedNotification) -> None:
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            response = client.post(self.url, headers=self._headers, json=notification.to_payload())
        response.raise_for_status()
        logger.info("Completion notification sent for job %s", notification.job_id)


class NullNotifier:
    def notify(self, notification: JobCompletedNotification) -> None:
        logger.debug("No notifier configured for job %s", notification.job_id)
