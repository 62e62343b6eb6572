"""Inference backends: run one company's research and return text or an error."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import httpx

from bulk_research.runner.errors import InferenceError

logger = logging.getLogger(__name__)

CHAT_ENDPOINT_PATH = "/api/ai/chat"
RUNNER_ORIGIN_HEADER = "bulk-runner"


@dataclass(slots=True)
class InferenceRequest:
    """Inputs for one company's research call."""

    company: str
    research_mode: str
    job_id: str
    task_id: str
    user_id: str


@dataclass(slots=True)
class InferenceResult:
    """Either ``text`` on success or ``error`` with a diagnostic."""

    text: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class InferenceBackend(Protocol):
    """Protocol implemented by inference backends."""

    def run(self, request: InferenceRequest) -> InferenceResult:
        """Run one research call; raise ``InferenceError`` if it cannot complete."""


class ChatEndpointBackend:
    """Calls the hosted chat endpoint and aggregates its event stream."""

    def __init__(
        self,
        *,
        endpoint: str,
        service_key: str,
        timeout_seconds: float = 600.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {service_key}",
            "X-Rebar-Origin": RUNNER_ORIGIN_HEADER,
        }
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._transport = transport

    def run(self, request: InferenceRequest) -> InferenceResult:
        payload = {
            "messages": [{"role": "user", "content": f"Research {request.company}"}],
            "stream": True,
            "system_run": True,
            "impersonate_user_id": request.user_id,
            "user_id": request.user_id,
            "bulk_research_job_id": request.job_id,
            "bulk_task_id": request.task_id,
            "bulk_subject": request.company,
            "active_subject": request.company,
            "research_type": request.research_mode,
        }
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                with client.stream(
                    "POST",
                    self.endpoint,
                    headers=self._headers,
                    json=payload,
                ) as response:
                    if not response.is_success:
                        body = response.read().decode("utf-8", errors="replace")
                        return InferenceResult(
                            error=f"Chat endpoint error {response.status_code}: {body}".strip(),
                        )
                    return collect_streamed_content(
                        response.iter_lines(),
                        subject=request.company,
                    )
        except httpx.TimeoutException as error:
            raise InferenceError(f"Chat endpoint timed out for {request.company}") from error
        except httpx.HTTPError as error:
            raise InferenceError(f"Chat endpoint request failed: {error}") from error


class EchoInferenceBackend:
    """Deterministic local backend for demos and integration tests."""

    def run(self, request: InferenceRequest) -> InferenceResult:
        return InferenceResult(
            text=(
                f"# {request.company}\n\n"
                f"Research mode: {request.research_mode}\n"
                f"Job: {request.job_id}\n"
            ),
        )


def collect_streamed_content(lines: Iterable[str], *, subject: str) -> InferenceResult:
    """Aggregate ``data:`` events of type ``content`` until ``[DONE]``.

    An ``error`` event turns the whole call into an error result; lines that
    are not parseable JSON are logged and skipped.
    """

    parts: list[str] = []
    for raw_line in lines:
        line = raw_line.strip()
        if not line:
            continue
        if line == "[DONE]":
            break
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            break
        if not data:
            continue
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Failed to parse chat stream payload for %s: %r", subject, data[:200])
            continue
        if not isinstance(event, dict):
            continue
        event_type = event.get("type")
        if event_type == "content" and isinstance(event.get("content"), str):
            parts.append(event["content"])
        elif event_type == "error":
            return InferenceResult(
                error=str(event.get("error") or f"Chat endpoint returned an error for {subject}"),
            )
    return InferenceResult(text="".join(parts).strip())
