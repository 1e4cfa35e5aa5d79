"""SQLAlchemy ORM models for the SQL store."""

from bnpl_engine.models.base import Base, TimestampMixin, VersionedMixin
from bnpl_engine.models.installments import (
    GatewayEventRow,
    PaymentRow,
    RetryTimerRow,
    SettlementQuoteRow,
    TransactionRow,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "VersionedMixin",
    "GatewayEventRow",
    "PaymentRow",
    "RetryTimerRow",
    "SettlementQuoteRow",
    "TransactionRow",
]
