"""Runtime configuration for the bulk research runner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from bulk_research.runner.inference import CHAT_ENDPOINT_PATH

INFERENCE_BACKENDS = ("chat", "echo")


@dataclass(slots=True)
class RunnerSettings:
    """Dispatch cycle settings."""

    max_attempts: int = 3
    stale_after_seconds: int = 900
    min_concurrency: int = 1
    max_concurrency: int = 3
    quick_concurrency: int = 3
    deep_concurrency: int = 2
    sqlite_busy_timeout_ms: int = 5_000

    def mode_concurrency(self) -> dict[str, int]:
        return {"quick": self.quick_concurrency, "deep": self.deep_concurrency}


@dataclass(slots=True)
class InferenceSettings:
    """Research inference backend settings."""

    backend: str = "chat"
    chat_api_url: str = ""
    api_base_url: str = ""
    service_key: str = ""
    timeout_seconds: float = 600.0

    def chat_endpoint(self) -> str:
        """Explicit chat URL wins; otherwise the chat path under the API base URL."""

        if self.chat_api_url:
            return self.chat_api_url
        if self.api_base_url:
            return self.api_base_url.rstrip("/") + CHAT_ENDPOINT_PATH
        return ""


@dataclass(slots=True)
class NotificationSettings:
    """Completion notification settings."""

    enabled: bool = False
    url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class ContinuationSettings:
    """Where the next cycle of a job is triggered."""

    runner_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".bulk_research.db")
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    notification: NotificationSettings = field(default_factory=NotificationSettings)
    continuation: ContinuationSettings = field(default_factory=ContinuationSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        service_key = os.getenv("BULK_RESEARCH_SERVICE_KEY", "")
        return cls(
            db_path=db_path or Path(os.getenv("BULK_RESEARCH_DB_PATH", ".bulk_research.db")),
            runner=RunnerSettings(
                max_attempts=int(os.getenv("BULK_RESEARCH_MAX_ATTEMPTS", "3")),
                stale_after_seconds=int(
                    os.getenv("BULK_RESEARCH_STALE_AFTER_SECONDS", "900"),
                ),
                min_concurrency=int(os.getenv("BULK_RESEARCH_MIN_CONCURRENCY", "1")),
                max_concurrency=int(os.getenv("BULK_RESEARCH_MAX_CONCURRENCY", "3")),
                quick_concurrency=int(os.getenv("BULK_RESEARCH_QUICK_CONCURRENCY", "3")),
                deep_concurrency=int(os.getenv("BULK_RESEARCH_DEEP_CONCURRENCY", "2")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("BULK_RESEARCH_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            inference=InferenceSettings(
                backend=os.getenv("BULK_RESEARCH_INFERENCE_BACKEND", "chat").strip().lower(),
                chat_api_url=os.getenv("BULK_RESEARCH_CHAT_API_URL", "").strip(),
                api_base_url=os.getenv("BULK_RESEARCH_API_BASE_URL", "").strip(),
                service_key=service_key,
                timeout_seconds=float(
                    os.getenv("BULK_RESEARCH_INFERENCE_TIMEOUT_SECONDS", "600"),
                ),
            ),
            notification=NotificationSettings(
                enabled=_env_bool("BULK_RESEARCH_NOTIFY_ENABLED", default=False),
                url=os.getenv("BULK_RESEARCH_NOTIFY_URL", "").strip(),
                api_key=os.getenv("BULK_RESEARCH_NOTIFY_API_KEY", service_key),
            ),
            continuation=ContinuationSettings(
                runner_url=os.getenv("BULK_RESEARCH_RUNNER_URL", "").strip(),
                api_key=os.getenv("BULK_RESEARCH_RUNNER_API_KEY", service_key),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("BULK_RESEARCH_USER_ID", "default_user"),
            ),
        )

    def validate_for_runner(self) -> None:
        """Raise configuration error if dispatch limits are inconsistent."""

        runner = self.runner
        if runner.max_attempts <= 0:
            raise ValueError("BULK_RESEARCH_MAX_ATTEMPTS must be > 0.")
        if runner.stale_after_seconds < 0:
            raise ValueError("BULK_RESEARCH_STALE_AFTER_SECONDS must be >= 0.")
        if runner.min_concurrency <= 0:
            raise ValueError("BULK_RESEARCH_MIN_CONCURRENCY must be > 0.")
        if runner.max_concurrency < runner.min_concurrency:
            raise ValueError(
                "BULK_RESEARCH_MAX_CONCURRENCY must be >= BULK_RESEARCH_MIN_CONCURRENCY.",
            )
        for name, value in (
            ("BULK_RESEARCH_QUICK_CONCURRENCY", runner.quick_concurrency),
            ("BULK_RESEARCH_DEEP_CONCURRENCY", runner.deep_concurrency),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")

    def validate_for_inference(self) -> None:
        """Raise configuration error if the selected inference backend is unusable."""

        backend = self.inference.backend
        if backend not in INFERENCE_BACKENDS:
            raise ValueError(
                f"Unsupported BULK_RESEARCH_INFERENCE_BACKEND: {backend!r}. "
                f"Expected one of: {', '.join(INFERENCE_BACKENDS)}.",
            )
        if backend == "echo":
            return
        endpoint = self.inference.chat_endpoint()
        if not endpoint:
            raise ValueError(
                "Chat endpoint is not configured. "
                "Set BULK_RESEARCH_CHAT_API_URL or BULK_RESEARCH_API_BASE_URL.",
            )
        _validate_http_url(endpoint, name="chat endpoint")
        if not self.inference.service_key:
            raise ValueError("BULK_RESEARCH_SERVICE_KEY is required for the chat backend.")
        if self.inference.timeout_seconds <= 0:
            raise ValueError("BULK_RESEARCH_INFERENCE_TIMEOUT_SECONDS must be > 0.")

    def validate_for_notification(self) -> None:
        if self.notification.enabled and not self.notification.url:
            raise ValueError(
                "BULK_RESEARCH_NOTIFY_URL is required when BULK_RESEARCH_NOTIFY_ENABLED is on.",
            )
        if self.notification.url:
            _validate_http_url(self.notification.url, name="notification URL")
        if self.continuation.runner_url:
            _validate_http_url(self.continuation.runner_url, name="runner URL")


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
