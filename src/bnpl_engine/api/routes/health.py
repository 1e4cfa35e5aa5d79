"""Probes and metrics for the installment engine service."""

import logging

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from bnpl_engine.api.dependencies import Engine
from bnpl_engine.domain import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    database: str
    webhooks: str
    retry_timers_due: int | None = None


@router.get("/health", response_model=HealthResponse)
def health_check(engine: Engine) -> HealthResponse:
    """Report store reachability and whether webhook ingress can verify deliveries.

    A store that cannot list due retry timers makes the service ``degraded``;
    a missing webhook secret is reported but does not fail the probe.
    """
    now = utcnow()
    due: int | None = None
    try:
        due = len(engine.store.list_due_retry_timers(now))
    except Exception:
        logger.exception("Store probe failed")

    return HealthResponse(
        status="healthy" if due is not None else "degraded",
        timestamp=now.isoformat(),
        database="healthy" if due is not None else "unhealthy",
        webhooks="enabled" if engine.webhooks_enabled else "disabled",
        retry_timers_due=due,
    )


@router.get("/ready")
def readiness_check() -> dict[str, str]:
    return {"status": "ready"}


@router.get("/live")
def liveness_check() -> dict[str, str]:
    return {"status": "alive"}


@router.get("/metrics", response_class=PlainTextResponse)
def metrics(engine: Engine) -> str:
    """Domain event counters and open payment gauges, Prometheus text format."""
    return engine.metrics_snapshot().to_prometheus()
