"""Payment gateway adapters."""

from bnpl_engine.gateways.base import (
    ConfirmResult,
    GatewayClient,
    IntentResult,
    RefundResult,
)
from bnpl_engine.gateways.signature import (
    SIGNATURE_HEADER,
    GatewayEventPayload,
    WebhookSigner,
    WebhookVerifier,
)
from bnpl_engine.gateways.stub import StubGateway

__all__ = [
    "GatewayClient",
    "IntentResult",
    "ConfirmResult",
    "RefundResult",
    "StubGateway",
    "WebhookSigner",
    "WebhookVerifier",
    "GatewayEventPayload",
    "SIGNATURE_HEADER",
]
