"""Create Bitcoin payment tables.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

Payment records, watched deposit addresses and the payment event log.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create bitcoin_payments, bitcoin_addresses and payment_events."""
    op.create_table(
        "bitcoin_payments",
        sa.Column("payment_id", sa.String(length=128), nullable=False),
        sa.Column("merchant_id", sa.String(length=128), nullable=False),
        sa.Column("requested_amount", sa.BigInteger(), nullable=False),  # satoshis
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default="awaiting_deposit",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deposit_address", sa.String(length=128), nullable=False),
        # Chain observations
        sa.Column("observed_received", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("confirmed_received", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("max_confirmations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("confirmed_tx_ids", sa.JSON(), nullable=False),
        # Mint bookkeeping
        sa.Column("mint_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("mint_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_mint_error", sa.Text(), nullable=True),
        sa.Column("mint_reference", sa.String(length=255), nullable=True),
        # Timestamps
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_detected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deposit_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("mint_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("payment_id"),
        sa.UniqueConstraint("deposit_address", name="uq_bitcoin_payments_deposit_address"),
        sa.CheckConstraint(
            "requested_amount > 0", name="check_payment_requested_amount_positive"
        ),
        sa.CheckConstraint(
            "observed_received >= 0", name="check_payment_observed_non_negative"
        ),
        sa.CheckConstraint(
            "max_confirmations >= 0", name="check_payment_confirmations_non_negative"
        ),
        sa.CheckConstraint(
            "mint_attempts >= 0", name="check_payment_mint_attempts_non_negative"
        ),
    )
    op.create_index(
        "ix_bitcoin_payments_merchant_id", "bitcoin_payments", ["merchant_id"]
    )
    op.create_index("ix_bitcoin_payments_status", "bitcoin_payments", ["status"])
    op.create_index(
        "idx_bitcoin_payments_status_expires",
        "bitcoin_payments",
        ["status", "expires_at"],
    )
    op.create_index(
        "idx_bitcoin_payments_last_checked", "bitcoin_payments", ["last_checked_at"]
    )

    op.create_table(
        "bitcoin_addresses",
        sa.Column("payment_id", sa.String(length=128), nullable=False),
        sa.Column("address", sa.String(length=128), nullable=False),
        sa.Column(
            "address_type", sa.String(length=20), nullable=False, server_default="p2wpkh"
        ),
        sa.Column("network", sa.String(length=10), nullable=False),  # mainnet, testnet
        sa.Column("is_monitored", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["payment_id"], ["bitcoin_payments.payment_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("payment_id"),
    )
    op.create_index(
        "ix_bitcoin_addresses_address", "bitcoin_addresses", ["address"], unique=True
    )
    op.create_index("ix_bitcoin_addresses_network", "bitcoin_addresses", ["network"])
    op.create_index(
        "idx_bitcoin_addresses_monitored_created",
        "bitcoin_addresses",
        ["is_monitored", "created_at"],
    )

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("payment_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=True),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(
            ["payment_id"], ["bitcoin_payments.payment_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_events_payment_id", "payment_events", ["payment_id"])
    op.create_index("ix_payment_events_event_type", "payment_events", ["event_type"])


def downgrade() -> None:
    """Drop Bitcoin payment tables."""
    op.drop_index("ix_payment_events_event_type", table_name="payment_events")
    op.drop_index("ix_payment_events_payment_id", table_name="payment_events")
    op.drop_table("payment_events")

    op.drop_index("idx_bitcoin_addresses_monitored_created", table_name="bitcoin_addresses")
    op.drop_index("ix_bitcoin_addresses_network", table_name="bitcoin_addresses")
    op.drop_index("ix_bitcoin_addresses_address", table_name="bitcoin_addresses")
    op.drop_table("bitcoin_addresses")

    op.drop_index("idx_bitcoin_payments_last_checked", table_name="bitcoin_payments")
    op.drop_index("idx_bitcoin_payments_status_expires", table_name="bitcoin_payments")
    op.drop_index("ix_bitcoin_payments_status", table_name="bitcoin_payments")
    op.drop_index("ix_bitcoin_payments_merchant_id", table_name="bitcoin_payments")
    op.drop_table("bitcoin_payments")
