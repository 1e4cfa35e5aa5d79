"""Transaction API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, status

from bnpl_engine.api.dependencies import Engine
from bnpl_engine.api.schemas import (
    ApprovalResponse,
    CancelRequest,
    DecisionRequest,
    ErrorResponse,
    PaymentResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionSummaryResponse,
)
from bnpl_engine.domain import CreditDecision, LineItem, PurchaseRequest

router = APIRouter(prefix="/transactions", tags=["transactions"])

TransactionId = Annotated[str, Path(min_length=1)]


# ============================================================================
# Transaction lifecycle
# ============================================================================


@router.post(
    "",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
def create_transaction(engine: Engine, payload: TransactionCreate) -> TransactionResponse:
    """Submit a purchase for financing. The transaction awaits a credit decision."""
    purchase = PurchaseRequest(
        user_id=payload.user_id,
        merchant_id=payload.merchant_id,
        principal=payload.principal,
        currency=payload.currency.upper(),
        installment_count=payload.installment_count,
        items=tuple(
            LineItem(name=item.name, unit_price=item.unit_price, quantity=item.quantity)
            for item in payload.items
        ),
    )
    transaction = engine.create_transaction(purchase)
    return TransactionResponse.model_validate(transaction)


@router.post(
    "/{transaction_id}/decision",
    response_model=ApprovalResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def apply_decision(
    engine: Engine,
    transaction_id: TransactionId,
    payload: DecisionRequest,
) -> ApprovalResponse:
    """Apply the credit decision. Approval schedules the installments."""
    decision = CreditDecision(approved=payload.approved, score=payload.score, reason=payload.reason)
    result = engine.approve_transaction(transaction_id, decision, payload.first_due_at)
    return ApprovalResponse(
        status=result.status,
        transaction=TransactionResponse.model_validate(result.transaction),
        payments=[PaymentResponse.model_validate(p) for p in result.payments],
    )


@router.post(
    "/{transaction_id}/cancel",
    response_model=TransactionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def cancel_transaction(
    engine: Engine,
    transaction_id: TransactionId,
    payload: CancelRequest | None = None,
) -> TransactionResponse:
    """Cancel a transaction before any collection was attempted."""
    reason = payload.reason if payload else None
    transaction = engine.cancel_transaction(transaction_id, reason)
    return TransactionResponse.model_validate(transaction)


# ============================================================================
# Reads
# ============================================================================


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_transaction(engine: Engine, transaction_id: TransactionId) -> TransactionResponse:
    """Get a transaction by ID."""
    return TransactionResponse.model_validate(engine.get_transaction(transaction_id))


@router.get(
    "/{transaction_id}/payments",
    response_model=list[PaymentResponse],
    responses={404: {"model": ErrorResponse}},
)
def list_payments(engine: Engine, transaction_id: TransactionId) -> list[PaymentResponse]:
    """List the installments of a transaction in sequence order."""
    engine.get_transaction(transaction_id)
    return [PaymentResponse.model_validate(p) for p in engine.list_payments(transaction_id)]


@router.get(
    "/{transaction_id}/summary",
    response_model=TransactionSummaryResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_transaction_summary(engine: Engine, transaction_id: TransactionId) -> TransactionSummaryResponse:
    """Transaction with amounts paid, outstanding and the next installment."""
    summary = engine.get_transaction_summary(transaction_id)
    return TransactionSummaryResponse.model_validate(summary)
