"""Initial payment orchestration schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=18, scale=4)
RATE = sa.Numeric(precision=7, scale=6)


def upgrade() -> None:
    """Upgrade database schema."""
    # Create payment_transactions table
    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("order_id", sa.String(length=128), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=255), nullable=True),
        sa.Column("payment_type", sa.String(length=20), nullable=False),
        sa.Column("method", sa.String(length=50), nullable=True),
        sa.Column("gross_amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("commission_rate", RATE, nullable=False),
        sa.Column("commission_amount", MONEY, nullable=False),
        sa.Column("net_amount", MONEY, nullable=False),
        sa.Column("refunded_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failure_code", sa.String(length=100), nullable=True),
        sa.Column("customer_id", sa.String(length=128), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("contract_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("gross_amount >= 0", name="non_negative_amount"),
        sa.CheckConstraint("refunded_amount >= 0", name="non_negative_refunded"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', "
            "'partial_refund', 'refunded')",
            name="valid_transaction_status",
        ),
        sa.CheckConstraint(
            "payment_type IN ('onclick', 'moto', 'recurrent')", name="valid_payment_type"
        ),
        sa.CheckConstraint("length(currency) = 3", name="valid_currency"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id", "idempotency_key", name="uq_transactions_tenant_idempotency"
        ),
    )
    op.create_index(
        op.f("ix_payment_transactions_tenant_id"),
        "payment_transactions",
        ["tenant_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_transactions_order_id"),
        "payment_transactions",
        ["order_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_transactions_provider_payment_id"),
        "payment_transactions",
        ["provider_payment_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_transactions_status"),
        "payment_transactions",
        ["status"],
        unique=False,
    )
    op.create_index(
        "idx_transactions_status_updated",
        "payment_transactions",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index(
        "idx_transactions_tenant_order",
        "payment_transactions",
        ["tenant_id", "order_id"],
        unique=False,
    )

    # Create payment_events table (append-only)
    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("provider_event_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["payment_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_payment_events_transaction_id"),
        "payment_events",
        ["transaction_id"],
        unique=False,
    )
    op.create_index("idx_payment_events_type", "payment_events", ["event_type"], unique=False)
    op.create_index(
        "idx_payment_events_provider_event",
        "payment_events",
        ["provider_event_id"],
        unique=False,
    )

    # Create recurring_contracts table
    op.create_table(
        "recurring_contracts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("provider_contract_id", sa.String(length=255), nullable=False),
        sa.Column("contract_type", sa.String(length=20), nullable=False),
        sa.Column("token_id", sa.String(length=255), nullable=True),
        sa.Column("card_last_four", sa.String(length=4), nullable=True),
        sa.Column("card_brand", sa.String(length=30), nullable=True),
        sa.Column("card_expiry", sa.String(length=7), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("frequency_days", sa.Integer(), nullable=True),
        sa.Column("max_amount", MONEY, nullable=True),
        sa.Column("next_charge_date", sa.Date(), nullable=True),
        sa.Column("expires_at", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("total_charges", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount_charged", MONEY, nullable=False, server_default="0"),
        sa.Column("last_charge_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_charge_amount", MONEY, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'paused', 'cancelled', 'expired')",
            name="valid_contract_status",
        ),
        sa.CheckConstraint(
            "contract_type IN ('scheduled', 'unscheduled')", name="valid_contract_type"
        ),
        sa.CheckConstraint("total_charges >= 0", name="non_negative_charges"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_recurring_contracts_tenant_id"),
        "recurring_contracts",
        ["tenant_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_recurring_contracts_status"),
        "recurring_contracts",
        ["status"],
        unique=False,
    )
    op.create_index(
        "idx_contracts_tenant_customer",
        "recurring_contracts",
        ["tenant_id", "customer_id"],
        unique=False,
    )
    op.create_index(
        "idx_contracts_status_next_charge",
        "recurring_contracts",
        ["status", "next_charge_date"],
        unique=False,
    )

    # Create tenant_payment_configs table
    op.create_table(
        "tenant_payment_configs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("config", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "provider", name="uq_tenant_provider_config"),
    )

    # Create tenant_commission_rates table
    op.create_table(
        "tenant_commission_rates",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("commission_rate", RATE, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 1", name="valid_commission_rate"
        ),
        sa.PrimaryKeyConstraint("tenant_id"),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("tenant_commission_rates")
    op.drop_table("tenant_payment_configs")

    op.drop_index("idx_contracts_status_next_charge", table_name="recurring_contracts")
    op.drop_index("idx_contracts_tenant_customer", table_name="recurring_contracts")
    op.drop_index(op.f("ix_recurring_contracts_status"), table_name="recurring_contracts")
    op.drop_index(op.f("ix_recurring_contracts_tenant_id"), table_name="recurring_contracts")
    op.drop_table("recurring_contracts")

    op.drop_index("idx_payment_events_provider_event", table_name="payment_events")
    op.drop_index("idx_payment_events_type", table_name="payment_events")
    op.drop_index(op.f("ix_payment_events_transaction_id"), table_name="payment_events")
    op.drop_table("payment_events")

    op.drop_index("idx_transactions_tenant_order", table_name="payment_transactions")
    op.drop_index("idx_transactions_status_updated", table_name="payment_transactions")
    op.drop_index(op.f("ix_payment_transactions_status"), table_name="payment_transactions")
    op.drop_index(
        op.f("ix_payment_transactions_provider_payment_id"), table_name="payment_transactions"
    )
    op.drop_index(op.f("ix_payment_transactions_order_id"), table_name="payment_transactions")
    op.drop_index(op.f("ix_payment_transactions_tenant_id"), table_name="payment_transactions")
    op.drop_table("payment_transactions")
