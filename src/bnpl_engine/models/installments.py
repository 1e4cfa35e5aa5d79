"""Installment engine tables.

Covers the authoritative state owned by the payment ledger:
- Transactions (aggregate roots)
- Payments (installments, never deleted)
- Processed gateway events (webhook idempotency)
- Pending retry timers (one per payment)
- Early settlement quotes (short-lived)

Every mutable row carries a `version` column used for optimistic
concurrency: writers update `WHERE version = :expected`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    CHAR,
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from bnpl_engine.models.base import Base, TimestampMixin, VersionedMixin


class TransactionRow(TimestampMixin, VersionedMixin, Base):
    """Financed purchase and its derived repayment status."""

    __tablename__ = "bnpl_transaction"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    principal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(CHAR(3), nullable=False)
    installment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    outstanding_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    items_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    final_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    __table_args__ = (
        CheckConstraint("principal > 0", name="bnpl_transaction_principal_ck"),
        CheckConstraint("outstanding_amount >= 0", name="bnpl_transaction_outstanding_ck"),
        CheckConstraint(
            "status IN ('pending_approval', 'approved', 'rejected', "
            "'partially_paid', 'completed', 'cancelled')",
            name="bnpl_transaction_status_ck",
        ),
        Index("bnpl_transaction_by_user", "user_id"),
    )


class PaymentRow(VersionedMixin, Base):
    """Single installment of a transaction."""

    __tablename__ = "bnpl_payment"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("bnpl_transaction.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gateway_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    settlement_quote_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    action_required_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    __table_args__ = (
        CheckConstraint("amount > 0", name="bnpl_payment_amount_ck"),
        CheckConstraint("retry_count >= 0", name="bnpl_payment_retry_count_ck"),
        CheckConstraint(
            "status IN ('scheduled', 'processing', 'completed', 'failed', 'cancelled')",
            name="bnpl_payment_status_ck",
        ),
        UniqueConstraint("transaction_id", "sequence", name="bnpl_payment_sequence_uq"),
        Index("bnpl_payment_by_status_due", "status", "due_at"),
        Index("bnpl_payment_by_gateway_reference", "gateway_reference"),
    )


class GatewayEventRow(Base):
    """Processed gateway event ids and the result returned for them."""

    __tablename__ = "bnpl_gateway_event"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RetryTimerRow(Base):
    """Pending retry keyed by payment id."""

    __tablename__ = "bnpl_retry_timer"

    payment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("bnpl_payment.id"), primary_key=True
    )
    eligible_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("bnpl_retry_timer_by_eligible_at", "eligible_at"),)


class SettlementQuoteRow(Base):
    """Early settlement quote, kept until it is settled or expires."""

    __tablename__ = "bnpl_settlement_quote"

    quote_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("bnpl_transaction.id"), nullable=False
    )
    lines_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    gross_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("net_amount <= gross_amount", name="bnpl_settlement_quote_net_ck"),
    )
