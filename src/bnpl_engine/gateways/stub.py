"""Stub gateway for local development and testing.

Replace with a real processor adapter for production.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Any

from bnpl_engine.domain import GatewayEvent, GatewayOutcome, utcnow
from bnpl_engine.errors import GatewayTimeoutError
from bnpl_engine.gateways.base import ConfirmResult, IntentResult, RefundResult
from bnpl_engine.gateways.signature import WebhookSigner

TIMEOUT = "timeout"


class StubGateway:
    """Scriptable in-memory gateway.

    Confirm outcomes are taken from a script queue, falling back to
    `default_outcome` when the queue is empty:

        gateway = StubGateway()
        gateway.script(GatewayOutcome.FAILED, GatewayOutcome.FAILED)
        # next two confirms fail, later ones succeed

    The literal "timeout" in the script makes confirm raise
    GatewayTimeoutError while the intent stays open on the gateway side.
    """

    gateway_name = "stub"

    def __init__(
        self,
        default_outcome: GatewayOutcome = GatewayOutcome.SUCCEEDED,
        webhook_secret: str | None = None,
    ):
        self.default_outcome = default_outcome
        self.signer = WebhookSigner(webhook_secret) if webhook_secret else None
        self._lock = threading.Lock()
        self._script: deque[GatewayOutcome | str] = deque()
        # In-memory tracking for stub
        self.intents: dict[str, dict[str, Any]] = {}
        self.refunds: list[RefundResult] = []
        self.confirm_calls: list[tuple[str, str]] = []

    def script(self, *outcomes: GatewayOutcome | str) -> None:
        """Queue outcomes for the next confirm calls."""
        with self._lock:
            self._script.extend(outcomes)

    def create_intent(self, amount: int, currency: str, metadata: dict[str, Any]) -> IntentResult:
        intent_reference = f"pi_stub_{uuid.uuid4().hex[:16]}"
        with self._lock:
            self.intents[intent_reference] = {
                "amount": amount,
                "currency": currency,
                "metadata": dict(metadata),
                "status": "requires_confirmation",
            }
        return IntentResult(
            intent_reference=intent_reference,
            amount=amount,
            currency=currency,
            metadata=dict(metadata),
        )

    def confirm_intent(
        self,
        intent_reference: str,
        payment_method_ref: str,
        timeout: timedelta,
    ) -> ConfirmResult:
        with self._lock:
            self.confirm_calls.append((intent_reference, payment_method_ref))
            outcome = self._script.popleft() if self._script else self.default_outcome
            intent = self.intents.get(intent_reference)

        if intent is None:
            return ConfirmResult(
                intent_reference=intent_reference,
                outcome=GatewayOutcome.FAILED,
                failure_reason="unknown intent",
            )

        if outcome == TIMEOUT:
            intent["status"] = "processing"
            raise GatewayTimeoutError(
                f"Confirm of {intent_reference} exceeded {timeout.total_seconds():.0f}s"
            )

        outcome = GatewayOutcome(outcome)
        intent["status"] = outcome.value
        return ConfirmResult(
            intent_reference=intent_reference,
            outcome=outcome,
            failure_reason="card_declined" if outcome == GatewayOutcome.FAILED else None,
        )

    def cancel_intent(self, intent_reference: str) -> bool:
        with self._lock:
            intent = self.intents.get(intent_reference)
            if intent is None or intent["status"] != "requires_confirmation":
                return False
            intent["status"] = "canceled"
        return True

    def refund(self, intent_reference: str, amount: int) -> RefundResult:
        intent = self.intents.get(intent_reference)
        if intent is None:
            result = RefundResult(
                refund_reference="",
                intent_reference=intent_reference,
                amount=amount,
                success=False,
                message=f"Intent {intent_reference} not found",
            )
        elif amount <= 0 or amount > intent["amount"]:
            result = RefundResult(
                refund_reference="",
                intent_reference=intent_reference,
                amount=amount,
                success=False,
                message="Refund amount out of range",
            )
        else:
            intent["status"] = "refunded"
            result = RefundResult(
                refund_reference=f"re_stub_{uuid.uuid4().hex[:16]}",
                intent_reference=intent_reference,
                amount=amount,
                success=True,
                message="Stub refund accepted",
            )
        with self._lock:
            self.refunds.append(result)
        return result

    def simulate_webhook(
        self,
        intent_reference: str,
        outcome: GatewayOutcome,
        event_id: str | None = None,
        amount: int | None = None,
        failure_reason: str | None = None,
        at: datetime | None = None,
    ) -> GatewayEvent:
        """Build the event the gateway would deliver for an intent (for testing)."""
        intent = self.intents.get(intent_reference, {})
        metadata = intent.get("metadata", {})
        raw = self.webhook_payload(intent_reference, outcome, event_id, amount, failure_reason, at)
        return GatewayEvent(
            event_id=raw["id"],
            intent_reference=intent_reference,
            outcome=outcome,
            amount=raw["amount"],
            occurred_at=at or utcnow(),
            failure_reason=failure_reason,
            payment_id=metadata.get("payment_id"),
            raw=raw,
        )

    def webhook_payload(
        self,
        intent_reference: str,
        outcome: GatewayOutcome,
        event_id: str | None = None,
        amount: int | None = None,
        failure_reason: str | None = None,
        at: datetime | None = None,
    ) -> dict[str, Any]:
        """JSON body of a webhook delivery for an intent."""
        intent = self.intents.get(intent_reference, {})
        return {
            "id": event_id or f"evt_stub_{uuid.uuid4().hex[:16]}",
            "type": f"payment.{outcome.value}",
            "intent_reference": intent_reference,
            "amount": amount if amount is not None else intent.get("amount", 0),
            "created": (at or utcnow()).isoformat(),
            "failure_reason": failure_reason,
            "metadata": intent.get("metadata", {}),
        }

    def signed_webhook(
        self,
        intent_reference: str,
        outcome: GatewayOutcome,
        event_id: str | None = None,
        at: datetime | None = None,
    ) -> tuple[bytes, str]:
        """Raw body and signature header, as delivered over HTTP."""
        if self.signer is None:
            raise ValueError("StubGateway was created without a webhook secret")
        body = json.dumps(
            self.webhook_payload(intent_reference, outcome, event_id, at=at)
        ).encode()
        return body, self.signer.sign(body, at)
