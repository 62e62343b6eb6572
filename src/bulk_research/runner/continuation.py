"""Fire-and-forget continuation of a job's dispatch cycles."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

CycleRunner = Callable[[str, int], object]


class ContinuationTrigger(Protocol):
    """Schedules the next cycle for a job without waiting for it."""

    def trigger(self, job_id: str, concurrency: int) -> None:
        """Start the next cycle asynchronously."""


class HttpContinuationTrigger:
    """Re-invokes the runner endpoint over HTTP from a daemon thread."""

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

    def trigger(self, job_id: str, concurrency: int) -> None:
        thread = threading.Thread(
            target=self._post,
            args=(job_id, concurrency),
            daemon=True,
            name=f"bulk-continuation-{job_id[:8]}",
        )
        thread.start()

    def _post(self, job_id: str, concurrency: int) -> None:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    self.url,
                    headers=self._headers,
                    json={"job_id": job_id, "concurrency": concurrency},
                )
            response.raise_for_status()
        except httpx.ReadTimeout:
            # The request was delivered; the runner replies only after its batch finishes.
            logger.debug("Continuation for job %s dispatched; runner still working", job_id)
        except httpx.HTTPError as error:
            # The next external trigger picks the job up again.
            logger.warning("Continuation call for job %s failed: %s", job_id, error)


class ThreadContinuationTrigger:
    """Runs the next cycle in a daemon thread of the current process."""

    def __init__(self, runner: CycleRunner) -> None:
        self._runner = runner

    def trigger(self, job_id: str, concurrency: int) -> None:
        thread = threading.Thread(
            target=self._run,
            args=(job_id, concurrency),
            daemon=True,
            name=f"bulk-continuation-{job_id[:8]}",
        )
        thread.start()

    def _run(self, job_id: str, concurrency: int) -> None:
        try:
            self._runner(job_id, concurrency)
        except Exception:
            logger.exception("Continuation cycle for job %s failed", job_id)


class NullContinuationTrigger:
    """For externally driven cycles (CLI drain, cron)."""

    def trigger(self, job_id: str, concurrency: int) -> None:
        logger.debug("Continuation for job %s left to the external trigger", job_id)
