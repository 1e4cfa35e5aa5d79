"""Domain models - plain dataclasses for the installment engine's entities.

Amounts are integer minor currency units. Datetimes are timezone-aware UTC.
Entities are immutable snapshots: a transition produces a new snapshot via
`dataclasses.replace` and the store persists it under the version the caller
read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class LineItem:
    """Purchased item. Informational only."""

    name: str
    unit_price: int
    quantity: int = 1


@dataclass(frozen=True)
class PurchaseRequest:
    """A purchase submitted for installment financing."""

    user_id: str
    merchant_id: str
    principal: int
    currency: str
    installment_count: int
    items: tuple[LineItem, ...] = ()


@dataclass(frozen=True)
class CreditDecision:
    """Outcome of the external credit/fraud decision."""

    approved: bool
    score: float | None = None
    reason: str | None = None


@dataclass(frozen=True)
class PaymentSpec:
    """One installment produced by the planner."""

    sequence: int
    amount: int
    due_at: datetime


@dataclass(frozen=True)
class Transaction:
    """Aggregate root owning an ordered set of installment payments."""

    id: str
    user_id: str
    merchant_id: str
    principal: int
    currency: str
    installment_count: int
    status: TransactionStatus
    outstanding_amount: int
    items: tuple[LineItem, ...] = ()
    final_due_at: datetime | None = None
    decision_reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0


@dataclass(frozen=True)
class Payment:
    """A single installment and its lifecycle state."""

    id: str
    transaction_id: str
    sequence: int
    amount: int
    due_at: datetime
    status: PaymentStatus = PaymentStatus.SCHEDULED
    retry_count: int = 0
    gateway_reference: str | None = None
    failure_reason: str | None = None
    paid_at: datetime | None = None
    paid_amount: int | None = None
    discount_amount: int = 0
    settlement_quote_id: str | None = None
    action_required_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (PaymentStatus.COMPLETED, PaymentStatus.CANCELLED)


class GatewayOutcome(str, Enum):
    """Outcome reported by the payment gateway."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"


@dataclass(frozen=True)
class GatewayEvent:
    """A confirmation delivered by the gateway (webhook or synchronous leg)."""

    event_id: str
    intent_reference: str
    outcome: GatewayOutcome
    amount: int
    occurred_at: datetime
    failure_reason: str | None = None
    payment_id: str | None = None  # from intent metadata, when the gateway echoes it
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QuoteLine:
    """Per-payment breakdown inside an early settlement quote."""

    payment_id: str
    amount: int
    days_early: float
    discount: int
    net_amount: int
    quoted_version: int


@dataclass(frozen=True)
class EarlySettlementQuote:
    """Priced offer to settle future installments early."""

    quote_id: str
    transaction_id: str
    lines: tuple[QuoteLine, ...]
    created_at: datetime
    expires_at: datetime

    @property
    def payment_ids(self) -> tuple[str, ...]:
        return tuple(line.payment_id for line in self.lines)

    @property
    def gross_amount(self) -> int:
        return sum(line.amount for line in self.lines)

    @property
    def discount_amount(self) -> int:
        return sum(line.discount for line in self.lines)

    @property
    def net_amount(self) -> int:
        return sum(line.net_amount for line in self.lines)

    def is_expired(self, as_of: datetime) -> bool:
        return as_of > self.expires_at


class ReconciliationStatus(str, Enum):
    """Result of reconciling one gateway event."""

    APPLIED = "applied"  # Ledger transition performed
    ALREADY_APPLIED = "already_applied"  # Payment already in the reported state
    PENDING_ACTION = "pending_action"  # requires_action recorded, no transition
    STALE = "stale"  # Unknown or cancelled payment, acknowledged and ignored


@dataclass(frozen=True)
class ReconciliationResult:
    """Acknowledgement returned to the webhook ingress."""

    event_id: str
    status: ReconciliationStatus
    payment_id: str | None = None
    payment_status: PaymentStatus | None = None
    message: str = ""
    duplicate: bool = False

    @property
    def acknowledged(self) -> bool:
        """Webhooks are never refused for business-state reasons."""
        return True
