"""Add last_polled_at to bitcoin_payments.

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19

Polling order key, advanced on every chain query attempt including
unavailable ones. last_checked_at keeps meaning "last successful
observation".
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_000002"
down_revision = "20261019_000001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add last_polled_at column and its index."""
    op.add_column(
        "bitcoin_payments",
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute(
        "UPDATE bitcoin_payments SET last_polled_at = last_checked_at "
        "WHERE last_checked_at IS NOT NULL"
    )
    op.create_index(
        "idx_bitcoin_payments_last_polled", "bitcoin_payments", ["last_polled_at"]
    )


def downgrade() -> None:
    """Drop last_polled_at column."""
    op.drop_index("idx_bitcoin_payments_last_polled", table_name="bitcoin_payments")
    op.drop_column("bitcoin_payments", "last_polled_at")
