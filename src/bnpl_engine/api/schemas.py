"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from bnpl_engine.domain import ReconciliationStatus
from bnpl_engine.engine import ApprovalStatus, ConfirmStatus
from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus


# ============================================================================
# Transaction schemas
# ============================================================================


class LineItemSchema(BaseModel):
    """Purchased item (informational)."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    unit_price: int = Field(ge=0)
    quantity: int = Field(default=1, ge=1)


class TransactionCreate(BaseModel):
    """Schema for submitting a purchase for financing."""

    user_id: str = Field(min_length=1, max_length=64)
    merchant_id: str = Field(min_length=1, max_length=64)
    principal: int = Field(gt=0, description="Amount in minor currency units")
    currency: str = Field(min_length=3, max_length=3)
    installment_count: int
    items: list[LineItemSchema] = []


class TransactionResponse(BaseModel):
    """Schema for transaction response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    merchant_id: str
    principal: int
    currency: str
    installment_count: int
    status: TransactionStatus
    outstanding_amount: int
    items: list[LineItemSchema] = []
    final_due_at: datetime | None = None
    decision_reason: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int


class DecisionRequest(BaseModel):
    """Credit decision for a pending transaction."""

    approved: bool
    score: float | None = None
    reason: str | None = None
    first_due_at: datetime


class CancelRequest(BaseModel):
    """Optional reason for a cancellation."""

    reason: str | None = None


# ============================================================================
# Payment schemas
# ============================================================================


class PaymentResponse(BaseModel):
    """Schema for installment payment response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    transaction_id: str
    sequence: int
    amount: int
    due_at: datetime
    status: PaymentStatus
    retry_count: int
    gateway_reference: str | None = None
    failure_reason: str | None = None
    paid_at: datetime | None = None
    paid_amount: int | None = None
    discount_amount: int = 0
    settlement_quote_id: str | None = None
    action_required_at: datetime | None = None
    version: int


class ApprovalResponse(BaseModel):
    """Schema for credit decision result."""

    status: ApprovalStatus
    transaction: TransactionResponse
    payments: list[PaymentResponse]


class TransactionSummaryResponse(BaseModel):
    """Transaction with repayment progress."""

    model_config = ConfigDict(from_attributes=True)

    transaction: TransactionResponse
    payments: list[PaymentResponse]
    amount_paid: int
    discount_total: int
    outstanding_amount: int
    next_payment: PaymentResponse | None = None


class ConfirmRequest(BaseModel):
    """Collect a payment against a stored payment method."""

    payment_method_ref: str = Field(min_length=1)


class ConfirmResponse(BaseModel):
    """Schema for synchronous collection result."""

    model_config = ConfigDict(from_attributes=True)

    status: ConfirmStatus
    payment: PaymentResponse
    intent_reference: str | None = None
    message: str = ""


class RefundRequest(BaseModel):
    """Refund of a completed payment. Omit amount for a full refund."""

    amount: int | None = Field(default=None, gt=0)


class RefundResponse(BaseModel):
    """Schema for refund result."""

    model_config = ConfigDict(from_attributes=True)

    refund_reference: str
    intent_reference: str
    amount: int
    success: bool
    message: str = ""


# ============================================================================
# Early payment schemas
# ============================================================================


class QuoteRequest(BaseModel):
    """Payments to quote; omit to quote every remaining future payment."""

    payment_ids: list[str] | None = None


class QuoteLineResponse(BaseModel):
    """Per-payment quote breakdown."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    amount: int
    days_early: float
    discount: int
    net_amount: int


class QuoteResponse(BaseModel):
    """Schema for early settlement quote."""

    model_config = ConfigDict(from_attributes=True)

    quote_id: str
    transaction_id: str
    lines: list[QuoteLineResponse]
    gross_amount: int
    discount_amount: int
    net_amount: int
    created_at: datetime
    expires_at: datetime


class SettleRequest(BaseModel):
    """Settle a quote by charging a stored payment method."""

    payment_method_ref: str = Field(min_length=1)


class SettlementResponse(BaseModel):
    """Schema for early settlement result."""

    quote_id: str
    transaction: TransactionResponse
    payments: list[PaymentResponse]
    net_amount: int
    was_duplicate: bool
    gateway_reference: str | None = None


# ============================================================================
# Webhook schemas
# ============================================================================


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    model_config = ConfigDict(from_attributes=True)

    event_id: str
    status: ReconciliationStatus
    payment_id: str | None = None
    payment_status: PaymentStatus | None = None
    duplicate: bool = False
    message: str = ""


# ============================================================================
# Common schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
