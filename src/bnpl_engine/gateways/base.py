"""Base protocol and types for payment gateway clients.

All gateway adapters must implement the GatewayClient protocol. The engine
uses them without knowing processor-specific details.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from bnpl_engine.domain import GatewayOutcome


@dataclass(frozen=True)
class IntentResult:
    """Result of creating a payment intent."""

    intent_reference: str
    amount: int
    currency: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfirmResult:
    """Result of the synchronous confirm leg."""

    intent_reference: str
    outcome: GatewayOutcome
    failure_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == GatewayOutcome.SUCCEEDED


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund request."""

    refund_reference: str
    intent_reference: str
    amount: int
    success: bool
    message: str = ""


class GatewayClient(Protocol):
    """Protocol for payment gateway adapters.

    Confirmation outcomes may also arrive later through signed webhooks; the
    synchronous result and the webhook converge in the payment ledger.
    """

    gateway_name: str

    def create_intent(self, amount: int, currency: str, metadata: dict[str, Any]) -> IntentResult:
        """Create a payment intent.

        Args:
            amount: Amount in minor units
            currency: ISO 4217 code
            metadata: Echoed back on webhooks. The engine sets
                `payment_id` (or `quote_id`) and `transaction_id`.

        Returns:
            IntentResult with the gateway's intent reference.
        """
        ...

    def confirm_intent(
        self,
        intent_reference: str,
        payment_method_ref: str,
        timeout: timedelta,
    ) -> ConfirmResult:
        """Confirm an intent against a stored payment method.

        Raises:
            GatewayTimeoutError: if no answer arrived within `timeout`.
        """
        ...

    def refund(self, intent_reference: str, amount: int) -> RefundResult:
        """Refund (part of) a confirmed intent."""
        ...

    def cancel_intent(self, intent_reference: str) -> bool:
        """Void an intent that was never confirmed.

        Returns False when the gateway no longer allows cancelling it.
        """
        ...
