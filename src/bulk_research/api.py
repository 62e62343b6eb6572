"""HTTP trigger surface for the bulk research runner."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from bulk_research.config import Settings
from bulk_research.runner.errors import BadRequestError, BulkResearchError, JobNotFoundError
from bulk_research.runner.services import BulkResearchRuntime, SubmitBulkJob

logger = logging.getLogger(__name__)


class BulkRunnerRequest(BaseModel):
    job_id: str = Field(min_length=1)
    concurrency: int | None = None


class BulkSubmitRequest(BaseModel):
    companies: list[str]
    research_type: str = "quick"
    user_id: str | None = None


def create_app(runtime: BulkResearchRuntime | None = None) -> FastAPI:
    """Build the app; without an explicit runtime one is built from the environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = runtime or BulkResearchRuntime(Settings.from_env())
        active.init_schema()
        app.state.runtime = active
        yield

    app = FastAPI(title="Bulk research runner", lifespan=lifespan)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_: Request, error: StarletteHTTPException) -> JSONResponse:
        if error.status_code == 405:  # noqa: PLR2004
            return JSONResponse({"error": "method_not_allowed"}, status_code=405)
        if error.status_code == 404:  # noqa: PLR2004
            return JSONResponse({"error": "not_found"}, status_code=404)
        return JSONResponse({"error": str(error.detail)}, status_code=error.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(_: Request, error: RequestValidationError) -> JSONResponse:
        logger.info("Rejected malformed request: %s", error.errors())
        return JSONResponse({"error": BadRequestError.code}, status_code=400)

    @app.exception_handler(BulkResearchError)
    async def domain_error(_: Request, error: BulkResearchError) -> JSONResponse:
        if isinstance(error, JobNotFoundError):
            return JSONResponse({"error": error.code}, status_code=404)
        if isinstance(error, BadRequestError):
            return JSONResponse({"error": error.code, "message": str(error)}, status_code=400)
        logger.error("Bulk research request failed: %s", error)
        return JSONResponse({"error": error.code}, status_code=500)

    @app.post("/research/bulk-runner")
    def trigger_cycle(payload: BulkRunnerRequest, request: Request) -> dict[str, int]:
        summary = _runtime(request).run_cycle(payload.job_id, payload.concurrency)
        return {"processed": summary.processed, "remaining": summary.remaining}

    @app.post("/research/bulk")
    def submit_job(payload: BulkSubmitRequest, request: Request) -> dict[str, object]:
        active = _runtime(request)
        job = active.submit(
            SubmitBulkJob(
                companies=payload.companies,
                research_mode=payload.research_type,
                user_id=payload.user_id or active.settings.user_context.user_id,
            ),
        )
        return {
            "job_id": job.job_id,
            "status": job.status.value,
            "total_count": job.total_count,
            "research_type": job.research_mode,
        }

    @app.get("/research/bulk/{job_id}")
    def get_job(job_id: str, request: Request) -> dict[str, object]:
        detail = _runtime(request).describe(job_id)
        return {
            **detail.job.to_payload(),
            "summary": detail.counts.describe(),
            "tasks": [task.to_payload() for task in detail.tasks],
        }

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def _runtime(request: Request) -> BulkResearchRuntime:
    return request.app.state.runtime
