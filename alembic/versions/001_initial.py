"""Initial schema: metric buckets, incidents, incident events, AI jobs and outputs

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

The partial unique index on open incidents makes concurrent creation for one
fingerprint fail on insert; the engine then updates the winner's row instead.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TS = sa.DateTime(timezone=True)


def upgrade() -> None:
    # ==========================================================================
    # metrics_buckets - one-minute counters
    # ==========================================================================
    op.create_table(
        "metrics_buckets",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("org_id", sa.String(128), nullable=False),
        sa.Column("project_id", sa.String(128), nullable=False),
        sa.Column("environment", sa.String(32), nullable=False),
        sa.Column("metric_name", sa.String(64), nullable=False),
        sa.Column("fingerprint", sa.String(512), nullable=False),
        sa.Column("bucket_start", TS, nullable=False),
        sa.Column("bucket_seconds", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "project_id", "environment", "metric_name", "fingerprint",
            "bucket_start", "bucket_seconds",
            name="unique_bucket",
        ),
    )
    op.create_index(
        "idx_buckets_range", "metrics_buckets",
        ["project_id", "environment", "metric_name", "fingerprint", "bucket_start"],
    )

    # ==========================================================================
    # incidents
    # ==========================================================================
    op.create_table(
        "incidents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("org_id", sa.String(128), nullable=False),
        sa.Column("project_id", sa.String(128), nullable=False),
        sa.Column("environment", sa.String(32), nullable=False),
        sa.Column("fingerprint", sa.String(512), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("severity", sa.String(16), nullable=False, server_default="warn"),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("opened_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("last_seen_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", TS, nullable=True),
    )
    op.create_index(
        "idx_incidents_lookup", "incidents",
        ["project_id", "environment", "fingerprint", "status"],
    )
    op.create_index("idx_incidents_last_seen", "incidents", ["status", "last_seen_at"])
    op.create_index(
        "uq_incidents_open_fingerprint", "incidents",
        ["project_id", "environment", "fingerprint"],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
    )

    # ==========================================================================
    # incident_events - append-only event links
    # ==========================================================================
    op.create_table(
        "incident_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("incident_id", sa.String(36), sa.ForeignKey("incidents.id"), nullable=False),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("occurred_at", TS, nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("attributes", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_incident_events_incident_id", "incident_events", ["incident_id"])

    # ==========================================================================
    # ai_jobs - leased work queue
    # ==========================================================================
    op.create_table(
        "ai_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("incident_id", sa.String(36), sa.ForeignKey("incidents.id"), nullable=False),
        sa.Column("job_type", sa.String(64), nullable=False, server_default="incident_summary"),
        sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_after", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("leased_until", TS, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_ai_jobs_incident_id", "ai_jobs", ["incident_id"])
    op.create_index("idx_ai_jobs_pending", "ai_jobs", ["status", "run_after", "leased_until"])

    # ==========================================================================
    # ai_outputs - stored summaries
    # ==========================================================================
    op.create_table(
        "ai_outputs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("incident_id", sa.String(36), sa.ForeignKey("incidents.id"), nullable=False),
        sa.Column("output_type", sa.String(32), nullable=False, server_default="summary"),
        sa.Column("model", sa.String(256), nullable=False),
        sa.Column("content", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_ai_outputs_incident_id", "ai_outputs", ["incident_id"])


def downgrade() -> None:
    op.drop_table("ai_outputs")
    op.drop_table("ai_jobs")
    op.drop_table("incident_events")
    op.drop_index("uq_incidents_open_fingerprint", table_name="incidents")
    op.drop_table("incidents")
    op.drop_table("metrics_buckets")
