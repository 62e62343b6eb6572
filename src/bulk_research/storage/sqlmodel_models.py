"""SQLModel ORM tables for bulk research storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class BulkResearchJob(SQLModel, table=True):
    __tablename__ = "bulk_research_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_bulk_research_jobs_user_created", "user_id", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    user_id: str = Field(default=DEFAULT_USER_ID, index=True)
    research_mode: str
    companies_json: str = Field(sa_column=Column(Text, nullable=False))
    total_count: int
    status: str = Field(index=True)
    completed_count: int = 0
    results_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BulkResearchTask(SQLModel, table=True):
    __tablename__ = "bulk_research_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_bulk_research_tasks_job_status_order",
            "job_id",
            "status",
            "created_at",
            "position",
        ),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("bulk_research_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(default=DEFAULT_USER_ID, index=True)
    company: str
    position: int = 0
    status: str = Field(index=True)
    attempt_count: int = 0
    result: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class ResearchOutput(SQLModel, table=True):
    __tablename__ = "research_outputs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("uq_research_outputs_source_task_id", "source_task_id", unique=True),
    )

    output_id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    subject: str
    research_type: str = "company"
    markdown_report: str = Field(sa_column=Column(Text, nullable=False))
    source_task_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
