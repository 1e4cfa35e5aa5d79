"""Early payment API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, status

from bnpl_engine.api.dependencies import Engine
from bnpl_engine.api.schemas import (
    ErrorResponse,
    PaymentResponse,
    QuoteRequest,
    QuoteResponse,
    SettleRequest,
    SettlementResponse,
    TransactionResponse,
)

router = APIRouter(tags=["early-payment"])


@router.post(
    "/transactions/{transaction_id}/early-payment/quotes",
    response_model=QuoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def create_quote(
    engine: Engine,
    transaction_id: Annotated[str, Path(min_length=1)],
    payload: QuoteRequest | None = None,
) -> QuoteResponse:
    """Quote early settlement of some or all remaining installments."""
    payment_ids = payload.payment_ids if payload else None
    quote = engine.quote_early_payment(transaction_id, payment_ids)
    return QuoteResponse.model_validate(quote)


@router.post(
    "/early-payment/quotes/{quote_id}/settle",
    response_model=SettlementResponse,
    responses={
        402: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        410: {"model": ErrorResponse},
    },
)
def settle_quote(
    engine: Engine,
    quote_id: Annotated[str, Path(min_length=1)],
    payload: SettleRequest,
) -> SettlementResponse:
    """Charge the quoted net amount and settle the quoted installments.

    Settling the same quote again returns the original outcome without a
    second charge.
    """
    result = engine.settle_early_payment(quote_id, payload.payment_method_ref)
    return SettlementResponse(
        quote_id=result.quote.quote_id,
        transaction=TransactionResponse.model_validate(result.transaction),
        payments=[PaymentResponse.model_validate(p) for p in result.payments],
        net_amount=result.net_amount,
        was_duplicate=result.was_duplicate,
        gateway_reference=result.gateway_reference,
    )
