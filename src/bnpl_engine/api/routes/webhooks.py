"""Gateway webhook endpoint."""

from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from bnpl_engine.api.dependencies import Engine
from bnpl_engine.api.schemas import ErrorResponse, WebhookAck

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/gateway",
    response_model=WebhookAck,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def gateway_webhook(
    request: Request,
    engine: Engine,
    x_gateway_signature: Annotated[str | None, Header()] = None,
) -> WebhookAck:
    """Receive a signed gateway event.

    The signature covers the raw body, so the body is read before any
    parsing. Redeliveries of an already processed event are acknowledged
    with `duplicate=true` and change nothing.
    """
    if not engine.webhooks_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret is not configured",
        )

    body = await request.body()
    result = await run_in_threadpool(engine.reconcile_webhook, body, x_gateway_signature)
    return WebhookAck.model_validate(result)
