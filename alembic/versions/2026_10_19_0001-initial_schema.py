"""initial schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create clients, wallet ledger, invoices and idempotency tables."""

    # ========================================================================
    # clients
    # ========================================================================
    op.create_table(
        "clients",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("wallet_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("monthly_rate", sa.Numeric(12, 2), nullable=False),
        sa.Column("service_package_name", sa.String(255), nullable=False, server_default="Unknown Package"),
        sa.Column("subscription_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("service_activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("wallet_balance >= 0", name="ck_wallet_balance_non_negative"),
        sa.CheckConstraint("monthly_rate >= 0", name="ck_monthly_rate_non_negative"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'suspended', 'disconnected')", name="ck_client_status"
        ),
    )
    op.create_index("idx_clients_status_end_date", "clients", ["status", "subscription_end_date"])

    # ========================================================================
    # wallet_transactions (append-only ledger)
    # ========================================================================
    op.create_table(
        "wallet_transactions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("external_reference", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("amount > 0", name="ck_wallet_transaction_amount_positive"),
        sa.CheckConstraint("balance_after >= 0", name="ck_wallet_transaction_balance_non_negative"),
        sa.CheckConstraint("transaction_type IN ('credit', 'debit')", name="ck_wallet_transaction_type"),
        sa.ForeignKeyConstraint(
            ["client_id"], ["clients.id"], name="fk_wallet_transactions_client", ondelete="RESTRICT"
        ),
    )
    op.create_index("ix_wallet_transactions_client_id", "wallet_transactions", ["client_id"])
    op.create_index("idx_wallet_transactions_created_at", "wallet_transactions", ["created_at"])
    op.create_index(
        "idx_wallet_transactions_external_reference",
        "wallet_transactions",
        ["external_reference"],
        postgresql_where=sa.text("external_reference IS NOT NULL"),
    )

    # ========================================================================
    # installation_invoices
    # ========================================================================
    op.create_table(
        "installation_invoices",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("invoice_number", sa.String(100), nullable=False, unique=True),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.ForeignKeyConstraint(
            ["client_id"], ["clients.id"], name="fk_installation_invoices_client", ondelete="RESTRICT"
        ),
    )
    op.create_index("ix_installation_invoices_client_id", "installation_invoices", ["client_id"])
    op.create_index(
        "idx_installation_invoices_client_status", "installation_invoices", ["client_id", "status"]
    )

    # ========================================================================
    # processed_payments (payment idempotency)
    # ========================================================================
    op.create_table(
        "processed_payments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("external_reference", sa.String(255), nullable=False),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_method", sa.String(50), nullable=False),
        sa.Column("intent", sa.String(20), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.UniqueConstraint("external_reference", name="uq_processed_payments_reference"),
    )
    op.create_index("ix_processed_payments_client_id", "processed_payments", ["client_id"])

    # ========================================================================
    # checkpoint_firings (at-most-once checkpoint markers)
    # ========================================================================
    op.create_table(
        "checkpoint_firings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("client_id", UUID(as_uuid=True), nullable=False),
        sa.Column("checkpoint", sa.String(20), nullable=False),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.UniqueConstraint(
            "client_id", "checkpoint", "subscription_end_date", name="uq_checkpoint_firings_natural_key"
        ),
    )


def downgrade() -> None:
    """Drop all engine tables."""
    op.drop_table("checkpoint_firings")
    op.drop_index("ix_processed_payments_client_id", table_name="processed_payments")
    op.drop_table("processed_payments")
    op.drop_index("idx_installation_invoices_client_status", table_name="installation_invoices")
    op.drop_index("ix_installation_invoices_client_id", table_name="installation_invoices")
    op.drop_table("installation_invoices")
    op.drop_index("idx_wallet_transactions_external_reference", table_name="wallet_transactions")
    op.drop_index("idx_wallet_transactions_created_at", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_client_id", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")
    op.drop_index("idx_clients_status_end_date", table_name="clients")
    op.drop_table("clients")
