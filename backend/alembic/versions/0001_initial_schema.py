"""initial schema

Revision ID: 0001
Revises:
Create Date: 2024-03-01 12:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "servers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("connection_ref", sa.String(length=500), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("favorite", sa.Boolean(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_servers")),
        sa.UniqueConstraint("name", name=op.f("uq_servers_name")),
    )

    op.create_table(
        "schedule_state",
        sa.Column("server_id", sa.Integer(), nullable=False),
        sa.Column("collector", sa.String(length=100), nullable=False),
        sa.Column("last_run_at", sa.DateTime(), nullable=True),
        sa.Column("last_status", sa.String(length=20), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_due_at", sa.DateTime(), nullable=True),
        sa.Column("running_since", sa.DateTime(), nullable=True),
        sa.Column("total_runs", sa.Integer(), nullable=False),
        sa.Column("failed_runs", sa.Integer(), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(), nullable=True),
        sa.Column("last_duration_ms", sa.Integer(), nullable=True),
        sa.Column("disabled_reason", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(
            ["server_id"],
            ["servers.id"],
            name=op.f("fk_schedule_state_server_id_servers"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("server_id", "collector", name=op.f("pk_schedule_state")),
    )

    op.create_table(
        "raw_samples",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("server_id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("collection_time", sa.DateTime(), nullable=False),
        sa.Column("counters", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_raw_samples")),
    )
    op.create_index("ix_raw_samples_server_time", "raw_samples", ["server_id", "collection_time"])
    op.create_index(
        "ix_raw_samples_server_category_time", "raw_samples", ["server_id", "category", "collection_time"]
    )

    op.create_table(
        "metric_deltas",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("server_id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("counter_name", sa.String(length=255), nullable=False),
        sa.Column("interval_start", sa.DateTime(), nullable=True),
        sa.Column("interval_end", sa.DateTime(), nullable=False),
        sa.Column("delta_value", sa.Float(), nullable=False),
        sa.Column("is_valid", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_metric_deltas")),
    )
    op.create_index("ix_metric_deltas_server_time", "metric_deltas", ["server_id", "interval_end"])

    op.create_table(
        "collection_runs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("server_id", sa.Integer(), nullable=False),
        sa.Column("collector", sa.String(length=100), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("ended_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_collection_runs")),
    )
    op.create_index("ix_collection_runs_server_time", "collection_runs", ["server_id", "started_at"])
    op.create_index(
        "ix_collection_runs_server_collector_time", "collection_runs", ["server_id", "collector", "started_at"]
    )
    op.create_index("ix_collection_runs_status", "collection_runs", ["status"])

    op.create_table(
        "alert_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("server_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("triggered_at", sa.DateTime(), nullable=False),
        sa.Column("dedup_key", sa.String(length=500), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("notification_status", sa.String(length=20), nullable=False),
        sa.Column("notification_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_alert_events")),
    )
    op.create_index("ix_alert_events_server_time", "alert_events", ["server_id", "triggered_at"])
    op.create_index("ix_alert_events_dedup_key", "alert_events", ["dedup_key"])

    op.create_table(
        "alert_dedup_state",
        sa.Column("dedup_key", sa.String(length=500), nullable=False),
        sa.Column("server_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(), nullable=False),
        sa.Column("cleared_at", sa.DateTime(), nullable=True),
        sa.Column("last_event_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("dedup_key", name=op.f("pk_alert_dedup_state")),
    )
    op.create_index("ix_alert_dedup_state_server_active", "alert_dedup_state", ["server_id", "active"])

    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key", name=op.f("pk_settings")),
    )


def downgrade() -> None:
    op.drop_table("settings")
    op.drop_index("ix_alert_dedup_state_server_active", table_name="alert_dedup_state")
    op.drop_table("alert_dedup_state")
    op.drop_index("ix_alert_events_dedup_key", table_name="alert_events")
    op.drop_index("ix_alert_events_server_time", table_name="alert_events")
    op.drop_table("alert_events")
    op.drop_index("ix_collection_runs_status", table_name="collection_runs")
    op.drop_index("ix_collection_runs_server_collector_time", table_name="collection_runs")
    op.drop_index("ix_collection_runs_server_time", table_name="collection_runs")
    op.drop_table("collection_runs")
    op.drop_index("ix_metric_deltas_server_time", table_name="metric_deltas")
    op.drop_table("metric_deltas")
    op.drop_index("ix_raw_samples_server_category_time", table_name="raw_samples")
    op.drop_index("ix_raw_samples_server_time", table_name="raw_samples")
    op.drop_table("raw_samples")
    op.drop_table("schedule_state")
    op.drop_table("servers")
