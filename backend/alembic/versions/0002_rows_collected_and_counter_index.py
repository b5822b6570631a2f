"""collection_runs.rows_collected and per-counter delta index

Revision ID: 0002
Revises: 0001
Create Date: 2024-04-15 09:30:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: str | None = "0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "collection_runs",
        sa.Column("rows_collected", sa.Integer(), server_default="0", nullable=False),
    )
    op.create_index(
        "ix_metric_deltas_server_category_counter_time",
        "metric_deltas",
        ["server_id", "category", "counter_name", "interval_end"],
    )


def downgrade() -> None:
    op.drop_index("ix_metric_deltas_server_category_counter_time", table_name="metric_deltas")
    with op.batch_alter_table("collection_runs") as batch_op:
        batch_op.drop_column("rows_collected")
