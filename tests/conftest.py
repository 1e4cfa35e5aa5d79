"""Pytest fixtures for installment engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from bnpl_engine.collaborators import InMemoryCreditLedger
from bnpl_engine.domain import CreditDecision, PurchaseRequest
from bnpl_engine.engine import ApprovalResult, InstallmentEngine
from bnpl_engine.events.emitter import EventEmitter
from bnpl_engine.events.types import DomainEvent
from bnpl_engine.gateways.signature import WebhookVerifier
from bnpl_engine.gateways.stub import StubGateway
from bnpl_engine.policies import EngineConfig
from bnpl_engine.services.ledger import PaymentLedger
from bnpl_engine.store.memory import InMemoryStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec_test_secret"


class RecordingNotifier:
    """Notifier that keeps every event it is given."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def notify(self, event: DomainEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


class EventLog:
    """Catch-all handler recording published events."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[DomainEvent]) -> list[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


def make_purchase(
    principal: int = 20000,
    installment_count: int = 4,
    user_id: str = "user_1",
    currency: str = "USD",
) -> PurchaseRequest:
    return PurchaseRequest(
        user_id=user_id,
        merchant_id="merchant_1",
        principal=principal,
        currency=currency,
        installment_count=installment_count,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def credit() -> InMemoryCreditLedger:
    return InMemoryCreditLedger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture
def emitter(event_log: EventLog) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(event_log)
    return emitter


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def ledger(store: InMemoryStore, config: EngineConfig) -> PaymentLedger:
    return PaymentLedger(store, config.retry)


@pytest.fixture
def engine(
    store: InMemoryStore,
    gateway: StubGateway,
    config: EngineConfig,
    emitter: EventEmitter,
    credit: InMemoryCreditLedger,
    notifier: RecordingNotifier,
) -> InstallmentEngine:
    return InstallmentEngine(
        store,
        gateway,
        config,
        event_emitter=emitter,
        credit=credit,
        notifier=notifier,
        verifier=WebhookVerifier(WEBHOOK_SECRET),
        clock=lambda: NOW,
    )


@pytest.fixture
def approved(engine: InstallmentEngine) -> ApprovalResult:
    """20000 USD over 4 installments, first due one day from NOW."""
    transaction = engine.create_transaction(make_purchase(), now=NOW)
    return engine.approve_transaction(
        transaction.id,
        CreditDecision(approved=True, score=0.9),
        first_due_at=NOW + timedelta(days=1),
        now=NOW,
    )
