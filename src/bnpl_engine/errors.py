"""Error taxonomy for the installment engine.

Errors fall into three groups:
- Admission errors (InvalidPlanError) are raised before any state exists.
- Race/programming errors (InvalidTransitionError, ConcurrentModificationError)
  come from the ledger's guarded transition function.
- User-facing rejections (NotEligibleForEarlyPaymentError, QuoteExpiredError,
  EarlyPaymentDeclinedError) are surfaced as rejected requests.

Webhook boundary errors (GatewaySignatureError, GatewayPayloadError) are the
only reasons a gateway delivery is ever refused.
"""

from __future__ import annotations


class BnplEngineError(Exception):
    """Base class for all engine errors."""


class NotFoundError(BnplEngineError):
    """Raised when a transaction, payment or quote does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")


class InvalidPlanError(BnplEngineError):
    """Raised when an installment request cannot be planned."""


class InvalidTransitionError(BnplEngineError):
    """Raised when a payment or transaction transition is not allowed."""

    def __init__(self, from_status: str, event: str, reason: str | None = None):
        self.from_status = from_status
        self.event = event
        self.reason = reason
        msg = f"Invalid transition '{event}' from '{from_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConcurrentModificationError(BnplEngineError):
    """Raised when the stored version differs from the version the caller read."""

    def __init__(self, entity: str, entity_id: str, expected_version: int, actual_version: int | None):
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{entity} '{entity_id}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class NotEligibleForEarlyPaymentError(BnplEngineError):
    """Raised when a payment cannot be settled early."""

    def __init__(self, payment_id: str, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Payment '{payment_id}' is not eligible for early payment: {reason}")


class QuoteExpiredError(BnplEngineError):
    """Raised when settling a quote after its validity window."""

    def __init__(self, quote_id: str):
        self.quote_id = quote_id
        super().__init__(f"Quote '{quote_id}' has expired, request a new quote")


class EarlyPaymentDeclinedError(BnplEngineError):
    """Raised when the gateway declines the charge for an early settlement."""

    def __init__(self, quote_id: str, outcome: str):
        self.quote_id = quote_id
        self.outcome = outcome
        super().__init__(f"Early payment for quote '{quote_id}' was not collected ({outcome})")


class GatewaySignatureError(BnplEngineError):
    """Raised when a webhook payload fails signature verification."""


class GatewayPayloadError(BnplEngineError):
    """Raised when a webhook payload is not a well-formed gateway event."""


class GatewayTimeoutError(BnplEngineError):
    """Raised by gateway clients when a synchronous call exceeds its timeout."""


class RetryExhaustedError(BnplEngineError):
    """Retry budget exhausted.

    Never raised by the engine; exhaustion is a normal business outcome
    reported through the CANCELLED state and a PaymentRetryExhausted event.
    Callers that want exception-style handling may raise it themselves.
    """

    def __init__(self, payment_id: str, attempts: int):
        self.payment_id = payment_id
        self.attempts = attempts
        super().__init__(f"Payment '{payment_id}' exhausted its retry budget after {attempts} attempts")
