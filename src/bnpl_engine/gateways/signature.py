"""Webhook signing and verification.

Signed header format:

    X-Gateway-Signature: t=<unix seconds>,v1=<hex hmac-sha256>

The MAC covers ``"<t>." + raw_body`` with the shared webhook secret.
Deliveries older than the tolerance are refused to limit replay.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from bnpl_engine.domain import GatewayEvent, GatewayOutcome, utcnow
from bnpl_engine.errors import GatewayPayloadError, GatewaySignatureError

SIGNATURE_HEADER = "X-Gateway-Signature"


def _mac(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


class WebhookSigner:
    """Produces signature headers (stub gateway and tests)."""

    def __init__(self, secret: str):
        self.secret = secret

    def sign(self, payload: bytes, at: datetime | None = None) -> str:
        timestamp = int((at or utcnow()).timestamp())
        return f"t={timestamp},v1={_mac(self.secret, timestamp, payload)}"


class GatewayEventPayload(BaseModel):
    """Wire shape of a gateway webhook delivery."""

    id: str
    type: Literal["payment.succeeded", "payment.failed", "payment.requires_action"]
    intent_reference: str
    amount: int
    created: datetime
    failure_reason: str | None = None
    metadata: dict[str, Any] = {}

    def to_event(self, raw: dict[str, Any]) -> GatewayEvent:
        outcome = GatewayOutcome(self.type.split(".", 1)[1])
        payment_id = self.metadata.get("payment_id")
        return GatewayEvent(
            event_id=self.id,
            intent_reference=self.intent_reference,
            outcome=outcome,
            amount=self.amount,
            occurred_at=self.created,
            failure_reason=self.failure_reason,
            payment_id=str(payment_id) if payment_id is not None else None,
            raw=raw,
        )


class WebhookVerifier:
    """Checks webhook signatures and parses verified payloads."""

    def __init__(self, secret: str, tolerance: timedelta = timedelta(minutes=5)):
        if not secret:
            raise ValueError("webhook secret must not be empty")
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: bytes, header: str | None, now: datetime | None = None) -> None:
        """Raise GatewaySignatureError unless the header signs the payload."""
        if not header:
            raise GatewaySignatureError("Missing signature header")

        parts: dict[str, list[str]] = {}
        for item in header.split(","):
            key, sep, value = item.strip().partition("=")
            if sep:
                parts.setdefault(key, []).append(value)

        try:
            timestamp = int(parts["t"][0])
        except (KeyError, ValueError):
            raise GatewaySignatureError("Malformed signature header") from None

        candidates = parts.get("v1", [])
        if not candidates:
            raise GatewaySignatureError("No v1 signature in header")

        now = now or utcnow()
        age = abs(now.timestamp() - timestamp)
        if age > self.tolerance.total_seconds():
            raise GatewaySignatureError("Signature timestamp outside tolerance")

        expected = _mac(self.secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise GatewaySignatureError("Signature mismatch")

    def parse(self, payload: bytes, header: str | None, now: datetime | None = None) -> GatewayEvent:
        """Verify, then decode the payload into a GatewayEvent."""
        self.verify(payload, header, now)

        try:
            raw = json.loads(payload)
        except ValueError as e:
            raise GatewayPayloadError(f"Payload is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise GatewayPayloadError("Payload must be a JSON object")

        try:
            parsed = GatewayEventPayload.model_validate(raw)
        except ValidationError as e:
            raise GatewayPayloadError(f"Invalid gateway event: {e.error_count()} error(s)") from e
        if parsed.created.tzinfo is None:
            raise GatewayPayloadError("Event timestamp must include a timezone")

        return parsed.to_event(raw)
