"""Result cache table keyed by job identity and content fingerprint."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "test_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_identity", sa.String(), nullable=False),
        sa.Column("job_fingerprint", sa.String(), nullable=False),
        sa.Column("passed", sa.Boolean(), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("diagnostic", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "job_identity",
            "job_fingerprint",
            name="uq_test_results_identity_fingerprint",
        ),
    )
    op.create_index("idx_test_results_identity", "test_results", ["job_identity"])
    op.create_index("idx_test_results_timestamp", "test_results", ["timestamp"])


def downgrade() -> None:
    op.drop_index("idx_test_results_timestamp", table_name="test_results")
    op.drop_index("idx_test_results_identity", table_name="test_results")
    op.drop_table("test_results")
