"""Create escrow_transactions and escrow_logs.

Revision ID: 0001_initial
Revises:
Create Date: 2025-01-15 00:00:00
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "escrow_transactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("escrow_reference", sa.String(64), nullable=False, unique=True),
        sa.Column("buyer_id", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("consensus_proof_id", sa.String(128), nullable=True),
        sa.Column("contract_proof_id", sa.String(128), nullable=True),
        sa.Column("funding_method", sa.String(20), nullable=True),
        sa.Column("released_by", sa.String(64), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'funded', 'released', 'disputed', 'cancelled')",
            name="ck_escrow_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
    )
    op.create_index("idx_escrow_status", "escrow_transactions", ["status"])
    op.create_index("idx_escrow_buyer", "escrow_transactions", ["buyer_id"])
    op.create_index("idx_escrow_seller", "escrow_transactions", ["seller_id"])
    op.create_index("idx_escrow_created_at", "escrow_transactions", ["created_at"])

    op.create_table(
        "escrow_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.String(64),
            sa.ForeignKey("escrow_transactions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("topic_reference", sa.String(64), nullable=True),
        sa.Column(
            "message_payload",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("consensus_proof_id", sa.String(128), nullable=True),
        sa.Column("contract_proof_id", sa.String(128), nullable=True),
        sa.Column("proven_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_log_transaction", "escrow_logs", ["transaction_id"])
    op.create_index("idx_log_event_type", "escrow_logs", ["event_type"])
    op.create_index("idx_log_created_at", "escrow_logs", ["created_at"])
    op.create_index("idx_log_unproven", "escrow_logs", ["consensus_proof_id", "created_at"])


def downgrade() -> None:
    op.drop_table("escrow_logs")
    op.drop_table("escrow_transactions")
