"""Installment payment API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path

from bnpl_engine.api.dependencies import Engine
from bnpl_engine.api.schemas import (
    CancelRequest,
    ConfirmRequest,
    ConfirmResponse,
    ErrorResponse,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
)

router = APIRouter(prefix="/payments", tags=["payments"])

PaymentId = Annotated[str, Path(min_length=1)]


@router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_payment(engine: Engine, payment_id: PaymentId) -> PaymentResponse:
    """Get an installment payment by ID."""
    return PaymentResponse.model_validate(engine.get_payment(payment_id))


@router.post(
    "/{payment_id}/confirm",
    response_model=ConfirmResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def confirm_payment(engine: Engine, payment_id: PaymentId, payload: ConfirmRequest) -> ConfirmResponse:
    """Collect a scheduled installment now.

    A failed attempt is not an HTTP error: the response reports FAILED and
    the payment carries its retry state.
    """
    result = engine.confirm_payment(payment_id, payload.payment_method_ref)
    return ConfirmResponse(
        status=result.status,
        payment=PaymentResponse.model_validate(result.payment),
        intent_reference=result.intent_reference,
        message=result.message,
    )


@router.post(
    "/{payment_id}/cancel",
    response_model=PaymentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def cancel_payment(
    engine: Engine,
    payment_id: PaymentId,
    payload: CancelRequest | None = None,
) -> PaymentResponse:
    """Cancel a scheduled or failed installment."""
    reason = payload.reason if payload else None
    return PaymentResponse.model_validate(engine.cancel_payment(payment_id, reason))


@router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def refund_payment(
    engine: Engine,
    payment_id: PaymentId,
    payload: RefundRequest | None = None,
) -> RefundResponse:
    """Refund a completed installment, in full unless an amount is given."""
    amount = payload.amount if payload else None
    return RefundResponse.model_validate(engine.refund_payment(payment_id, amount))
