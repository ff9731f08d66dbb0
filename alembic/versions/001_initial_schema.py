"""Initial schema: currencies, transactions, refunds, audit logs, outbox

Revision ID: 001
Revises:
Create Date: 2026-01-01

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TRANSACTION_STATUSES = ("pending", "processing", "completed", "failed", "refunded", "partially_refunded", "cancelled")
REFUND_STATUSES = ("pending", "processing", "completed", "failed")
PAYMENT_METHODS = ("card", "bank_transfer", "e_wallet", "crypto")
PAYMENT_PROVIDERS = ("stripe", "paypal", "adyen", "manual")


def _in(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def upgrade() -> None:
    currencies = op.create_table(
        "currencies",
        sa.Column("code", sa.String(3), primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("minor_unit", sa.SmallInteger, nullable=False, server_default="2"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.bulk_insert(
        currencies,
        [
            {"code": "USD", "name": "US Dollar", "minor_unit": 2, "is_active": True},
            {"code": "EUR", "name": "Euro", "minor_unit": 2, "is_active": True},
            {"code": "GBP", "name": "British Pound", "minor_unit": 2, "is_active": True},
            {"code": "JPY", "name": "Japanese Yen", "minor_unit": 0, "is_active": True},
            {"code": "THB", "name": "Thai Baht", "minor_unit": 2, "is_active": True},
        ],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("partner_id", sa.String(26), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("amount_minor_units", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), sa.ForeignKey("currencies.code"), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("provider_transaction_id", sa.String(255), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("refunded_amount_minor_units", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("version", sa.BigInteger, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount_minor_units BETWEEN 1 AND 10000000", name="ck_transactions_amount"),
        sa.CheckConstraint(
            "refunded_amount_minor_units BETWEEN 0 AND amount_minor_units",
            name="ck_transactions_refunded_amount",
        ),
        sa.CheckConstraint(_in("status", TRANSACTION_STATUSES), name="ck_transactions_status"),
        sa.CheckConstraint(_in("payment_method", PAYMENT_METHODS), name="ck_transactions_payment_method"),
        sa.CheckConstraint(_in("provider", PAYMENT_PROVIDERS), name="ck_transactions_provider"),
        sa.CheckConstraint("retry_count BETWEEN 0 AND 3", name="ck_transactions_retry_count"),
    )
    # Target of INSERT ... ON CONFLICT (partner_id, idempotency_key) WHERE deleted_at IS NULL
    op.create_index(
        "uq_transactions_partner_idempotency_key",
        "transactions",
        ["partner_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index("ix_transactions_partner_id", "transactions", ["partner_id", "created_at"])
    op.create_index(
        "ix_transactions_processing",
        "transactions",
        ["updated_at"],
        postgresql_where=sa.text("status = 'processing'"),
    )

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("transaction_id", sa.String(26), sa.ForeignKey("transactions.id"), nullable=False),
        sa.Column("amount_minor_units", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), sa.ForeignKey("currencies.code"), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("provider_refund_id", sa.String(255), nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount_minor_units > 0", name="ck_refunds_amount"),
        sa.CheckConstraint(_in("status", REFUND_STATUSES), name="ck_refunds_status"),
    )
    op.create_index("ix_refunds_transaction_id", "refunds", ["transaction_id", "status"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("partner_id", sa.String(26), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.String(26), nullable=False),
        sa.Column("changes", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"])
    op.create_index("ix_audit_logs_partner_id", "audit_logs", ["partner_id", "created_at"])

    op.create_table(
        "outbox",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("aggregate_type", sa.String(100), nullable=False),
        sa.Column("aggregate_id", sa.String(26), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index(
        "ix_outbox_unpublished",
        "outbox",
        ["created_at"],
        postgresql_where=sa.text("published_at IS NULL"),
    )
    op.create_index("ix_outbox_aggregate", "outbox", ["aggregate_type", "aggregate_id"])


def downgrade() -> None:
    op.drop_table("outbox")
    op.drop_table("audit_logs")
    op.drop_table("refunds")
    op.drop_table("transactions")
    op.drop_table("currencies")
