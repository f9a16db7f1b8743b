"""SQLAlchemy 2.0 ORM models for the Tag Chain escrow bridge.

Two tables:
    1. escrow_transactions  one row per trade, holding the current status.
    2. escrow_logs          one row per committed lifecycle attempt, with the
                            exact consensus message derived for it.

Design decisions:
    - Caller-supplied string ids for transactions (the marketplace owns them).
    - Decimal for amounts (no floating point rounding errors).
    - consensus_proof_id on a transaction belongs to its CURRENT status only.
      Every status change clears it in the same conditional write.
    - escrow_logs rows are append-only except for backfilling null proof ids.
      Transactions are never deleted, so the log foreign key is RESTRICT.
    - Portable column types (Uuid, JSON with a JSONB variant) so the same
      models run on PostgreSQL and on SQLite in tests and the simulation.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

_JSONPayload = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. escrow_transactions
# ---------------------------------------------------------------------------
class EscrowTransaction(Base):
    """An escrow trade between a buyer and a seller."""

    __tablename__ = "escrow_transactions"

    # --- Primary Key ---
    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Caller-supplied opaque transaction id",
    )
    escrow_reference: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="escrow-<uuid4>, carried in the create message as escrow_id",
    )

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Financials (never written after insert) ---
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)

    # --- Status (guarded by EscrowStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
    )

    # --- Proofs ---
    consensus_proof_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        default=None,
        comment="Ledger proof for the current status only",
    )
    contract_proof_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        default=None,
        comment="Latest successful escrow contract call id",
    )

    # --- Transition details ---
    funding_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # --- Relationships ---
    logs: Mapped[list[EscrowLogEntry]] = relationship(
        "EscrowLogEntry",
        back_populates="transaction",
        cascade="save-update, merge",
        passive_deletes="all",
        order_by="EscrowLogEntry.created_at.asc()",
        lazy="selectin",
    )

    # --- Table Constraints & Indexes ---
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'funded', 'released', 'disputed', 'cancelled')",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_buyer", "buyer_id"),
        Index("idx_escrow_seller", "seller_id"),
        Index("idx_escrow_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowTransaction id={self.id} status={self.status} "
            f"amount={self.amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 2. escrow_logs
# ---------------------------------------------------------------------------
class EscrowLogEntry(Base):
    """Durable record of one lifecycle attempt and its derived message.

    Exactly one row per attempt that committed, including attempts whose
    ledger submission later failed. The stored payload is what the
    reconciliation job resubmits.
    """

    __tablename__ = "escrow_logs"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # --- Foreign Key ---
    transaction_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("escrow_transactions.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # --- Event Details ---
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    old_status: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="Status before this attempt (null for create)",
    )
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="Party that triggered the attempt, or SYSTEM",
    )
    topic_reference: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Consensus topic the message targets",
    )
    message_payload: Mapped[dict] = mapped_column(
        _JSONPayload,
        nullable=False,
        comment="Exact consensus message derived for this attempt",
    )

    # --- Proofs (backfilled only while null) ---
    consensus_proof_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    contract_proof_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    proven_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # --- Timestamp ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # --- Relationships ---
    transaction: Mapped[EscrowTransaction] = relationship(
        "EscrowTransaction",
        back_populates="logs",
    )

    # --- Indexes ---
    __table_args__ = (
        Index("idx_log_transaction", "transaction_id"),
        Index("idx_log_event_type", "event_type"),
        Index("idx_log_created_at", "created_at"),
        Index("idx_log_unproven", "consensus_proof_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowLogEntry id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status} proof={self.consensus_proof_id}>"
        )
