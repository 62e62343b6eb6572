"""Create bulk research jobs, tasks, and research outputs."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "bulk_research_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("research_mode", sa.String(), nullable=False),
        sa.Column("companies_json", sa.Text(), nullable=False),
        sa.Column("total_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("completed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("results_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_bulk_research_jobs_user_id", "bulk_research_jobs", ["user_id"])
    op.create_index("ix_bulk_research_jobs_status", "bulk_research_jobs", ["status"])
    op.create_index(
        "idx_bulk_research_jobs_user_created",
        "bulk_research_jobs",
        ["user_id", "created_at"],
    )

    op.create_table(
        "bulk_research_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("company", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["job_id"],
            ["bulk_research_jobs.job_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_bulk_research_tasks_job_id", "bulk_research_tasks", ["job_id"])
    op.create_index("ix_bulk_research_tasks_user_id", "bulk_research_tasks", ["user_id"])
    op.create_index("ix_bulk_research_tasks_status", "bulk_research_tasks", ["status"])
    op.create_index(
        "idx_bulk_research_tasks_job_status_order",
        "bulk_research_tasks",
        ["job_id", "status", "created_at", "position"],
    )

    op.create_table(
        "research_outputs",
        sa.Column("output_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("research_type", sa.String(), server_default="company", nullable=False),
        sa.Column("markdown_report", sa.Text(), nullable=False),
        sa.Column("source_task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("output_id"),
    )
    op.create_index("ix_research_outputs_user_id", "research_outputs", ["user_id"])
    op.create_index(
        "uq_research_outputs_source_task_id",
        "research_outputs",
        ["source_task_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_research_outputs_source_task_id", table_name="research_outputs")
    op.drop_index("ix_research_outputs_user_id", table_name="research_outputs")
    op.drop_table("research_outputs")
    op.drop_index("idx_bulk_research_tasks_job_status_order", table_name="bulk_research_tasks")
    op.drop_index("ix_bulk_research_tasks_status", table_name="bulk_research_tasks")
    op.drop_index("ix_bulk_research_tasks_user_id", table_name="bulk_research_tasks")
    op.drop_index("ix_bulk_research_tasks_job_id", table_name="bulk_research_tasks")
    op.drop_table("bulk_research_tasks")
    op.drop_index("idx_bulk_research_jobs_user_created", table_name="bulk_research_jobs")
    op.drop_index("ix_bulk_research_jobs_status", table_name="bulk_research_jobs")
    op.drop_index("ix_bulk_research_jobs_user_id", table_name="bulk_research_jobs")
    op.drop_table("bulk_research_jobs")
