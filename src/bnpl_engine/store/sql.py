"""SQLAlchemy-backed store.

Optimistic versioning is enforced with conditional updates:

    UPDATE bnpl_payment SET ..., version = :expected + 1
    WHERE id = :id AND version = :expected

A zero rowcount means another writer got there first.

Outside `atomic()` every call runs in its own short session and commits.
Inside `atomic()` calls on the same thread share one session that commits
when the block exits cleanly and rolls back otherwise.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from bnpl_engine.domain import (
    EarlySettlementQuote,
    LineItem,
    Payment,
    QuoteLine,
    ReconciliationResult,
    ReconciliationStatus,
    Transaction,
    utcnow,
)
from bnpl_engine.errors import ConcurrentModificationError, NotFoundError
from bnpl_engine.models import (
    GatewayEventRow,
    PaymentRow,
    RetryTimerRow,
    SettlementQuoteRow,
    TransactionRow,
)
from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus
from bnpl_engine.store.base import RetryTimer


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlAlchemyStore:
    """Store implementation over the bnpl_* tables."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self._local = threading.local()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        current: Session | None = getattr(self._local, "session", None)
        if current is not None:
            # Nested block joins the outer unit of work
            yield
            return

        session = self._session_factory()
        self._local.session = session
        try:
            yield
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        current: Session | None = getattr(self._local, "session", None)
        if current is not None:
            yield current
            return

        with self._session_factory() as session:
            try:
                yield session
                session.commit()
            except BaseException:
                session.rollback()
                raise

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def load_transaction(self, transaction_id: str) -> Transaction:
        with self._session() as session:
            row = session.get(TransactionRow, transaction_id)
            if row is None:
                raise NotFoundError("Transaction", transaction_id)
            return self._to_transaction(row)

    def save_transaction(self, transaction: Transaction, expected_version: int | None) -> Transaction:
        values = {
            "user_id": transaction.user_id,
            "merchant_id": transaction.merchant_id,
            "principal": transaction.principal,
            "currency": transaction.currency,
            "installment_count": transaction.installment_count,
            "status": transaction.status.value,
            "outstanding_amount": transaction.outstanding_amount,
            "items_json": [asdict(item) for item in transaction.items],
            "final_due_at": transaction.final_due_at,
            "decision_reason": transaction.decision_reason,
            "created_at": transaction.created_at,
            "updated_at": transaction.updated_at,
        }

        with self._session() as session:
            if expected_version is None:
                if session.get(TransactionRow, transaction.id) is not None:
                    raise ConcurrentModificationError("Transaction", transaction.id, 0, None)
                row = TransactionRow(id=transaction.id, version=1, **values)
                session.add(row)
                session.flush()
                return self._to_transaction(row)

            result = session.execute(
                update(TransactionRow)
                .where(
                    TransactionRow.id == transaction.id,
                    TransactionRow.version == expected_version,
                )
                .values(version=expected_version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = session.scalar(
                    select(TransactionRow.version).where(TransactionRow.id == transaction.id)
                )
                raise ConcurrentModificationError("Transaction", transaction.id, expected_version, actual)

            session.expire_all()
            return self._to_transaction(session.get(TransactionRow, transaction.id))

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def load_payment(self, payment_id: str) -> Payment:
        with self._session() as session:
            row = session.get(PaymentRow, payment_id)
            if row is None:
                raise NotFoundError("Payment", payment_id)
            return self._to_payment(row)

    def save_payment(self, payment: Payment, expected_version: int | None) -> Payment:
        values = {
            "transaction_id": payment.transaction_id,
            "sequence": payment.sequence,
            "amount": payment.amount,
            "due_at": payment.due_at,
            "status": payment.status.value,
            "retry_count": payment.retry_count,
            "gateway_reference": payment.gateway_reference,
            "failure_reason": payment.failure_reason,
            "paid_at": payment.paid_at,
            "paid_amount": payment.paid_amount,
            "discount_amount": payment.discount_amount,
            "settlement_quote_id": payment.settlement_quote_id,
            "action_required_at": payment.action_required_at,
        }

        with self._session() as session:
            if expected_version is None:
                if session.get(PaymentRow, payment.id) is not None:
                    raise ConcurrentModificationError("Payment", payment.id, 0, None)
                row = PaymentRow(id=payment.id, version=1, **values)
                session.add(row)
                session.flush()
                return self._to_payment(row)

            result = session.execute(
                update(PaymentRow)
                .where(PaymentRow.id == payment.id, PaymentRow.version == expected_version)
                .values(version=expected_version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = session.scalar(select(PaymentRow.version).where(PaymentRow.id == payment.id))
                raise ConcurrentModificationError("Payment", payment.id, expected_version, actual)

            session.expire_all()
            return self._to_payment(session.get(PaymentRow, payment.id))

    def list_payments(self, transaction_id: str) -> list[Payment]:
        with self._session() as session:
            rows = session.scalars(
                select(PaymentRow)
                .where(PaymentRow.transaction_id == transaction_id)
                .order_by(PaymentRow.sequence)
            ).all()
            return [self._to_payment(row) for row in rows]

    def list_payments_by_status(
        self,
        status: PaymentStatus,
        due_before: datetime | None = None,
    ) -> list[Payment]:
        stmt = select(PaymentRow).where(PaymentRow.status == status.value)
        if due_before is not None:
            stmt = stmt.where(PaymentRow.due_at <= due_before)
        stmt = stmt.order_by(PaymentRow.due_at, PaymentRow.sequence)

        with self._session() as session:
            return [self._to_payment(row) for row in session.scalars(stmt).all()]

    def find_payment_by_intent(self, intent_reference: str) -> Payment | None:
        with self._session() as session:
            row = session.scalars(
                select(PaymentRow).where(PaymentRow.gateway_reference == intent_reference)
            ).first()
            return self._to_payment(row) if row else None

    # -------------------------------------------------------------------------
    # Gateway events
    # -------------------------------------------------------------------------

    def get_gateway_event(self, event_id: str) -> ReconciliationResult | None:
        with self._session() as session:
            row = session.get(GatewayEventRow, event_id)
            if row is None:
                return None
            return ReconciliationResult(
                event_id=row.event_id,
                status=ReconciliationStatus(row.status),
                payment_id=row.payment_id,
                payment_status=PaymentStatus(row.payment_status) if row.payment_status else None,
                message=row.message,
            )

    def record_gateway_event(self, result: ReconciliationResult) -> bool:
        with self._session() as session:
            if session.get(GatewayEventRow, result.event_id) is not None:
                return False
            session.add(
                GatewayEventRow(
                    event_id=result.event_id,
                    status=result.status.value,
                    payment_id=result.payment_id,
                    payment_status=result.payment_status.value if result.payment_status else None,
                    message=result.message,
                    processed_at=utcnow(),
                )
            )
            session.flush()
            return True

    # -------------------------------------------------------------------------
    # Retry timers
    # -------------------------------------------------------------------------

    def upsert_retry_timer(self, timer: RetryTimer) -> None:
        with self._session() as session:
            row = session.get(RetryTimerRow, timer.payment_id)
            if row is None:
                session.add(RetryTimerRow(payment_id=timer.payment_id, eligible_at=timer.eligible_at))
            else:
                row.eligible_at = timer.eligible_at
            session.flush()

    def get_retry_timer(self, payment_id: str) -> RetryTimer | None:
        with self._session() as session:
            row = session.get(RetryTimerRow, payment_id)
            if row is None:
                return None
            return RetryTimer(payment_id=row.payment_id, eligible_at=_as_utc(row.eligible_at))

    def delete_retry_timer(self, payment_id: str) -> None:
        with self._session() as session:
            session.execute(delete(RetryTimerRow).where(RetryTimerRow.payment_id == payment_id))

    def list_due_retry_timers(self, now: datetime) -> list[RetryTimer]:
        with self._session() as session:
            rows = session.scalars(
                select(RetryTimerRow)
                .where(RetryTimerRow.eligible_at <= now)
                .order_by(RetryTimerRow.eligible_at)
            ).all()
            return [RetryTimer(payment_id=r.payment_id, eligible_at=_as_utc(r.eligible_at)) for r in rows]

    # -------------------------------------------------------------------------
    # Quotes
    # -------------------------------------------------------------------------

    def save_quote(self, quote: EarlySettlementQuote) -> None:
        with self._session() as session:
            session.merge(
                SettlementQuoteRow(
                    quote_id=quote.quote_id,
                    transaction_id=quote.transaction_id,
                    lines_json=[asdict(line) for line in quote.lines],
                    gross_amount=quote.gross_amount,
                    net_amount=quote.net_amount,
                    created_at=quote.created_at,
                    expires_at=quote.expires_at,
                )
            )
            session.flush()

    def load_quote(self, quote_id: str) -> EarlySettlementQuote:
        with self._session() as session:
            row = session.get(SettlementQuoteRow, quote_id)
            if row is None:
                raise NotFoundError("Quote", quote_id)
            return EarlySettlementQuote(
                quote_id=row.quote_id,
                transaction_id=row.transaction_id,
                lines=tuple(QuoteLine(**line) for line in row.lines_json),
                created_at=_as_utc(row.created_at),
                expires_at=_as_utc(row.expires_at),
            )

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_transaction(row: TransactionRow) -> Transaction:
        items: list[dict[str, Any]] = row.items_json or []
        return Transaction(
            id=row.id,
            user_id=row.user_id,
            merchant_id=row.merchant_id,
            principal=row.principal,
            currency=row.currency,
            installment_count=row.installment_count,
            status=TransactionStatus(row.status),
            outstanding_amount=row.outstanding_amount,
            items=tuple(LineItem(**item) for item in items),
            final_due_at=_as_utc(row.final_due_at),
            decision_reason=row.decision_reason,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
            version=row.version,
        )

    @staticmethod
    def _to_payment(row: PaymentRow) -> Payment:
        return Payment(
            id=row.id,
            transaction_id=row.transaction_id,
            sequence=row.sequence,
            amount=row.amount,
            due_at=_as_utc(row.due_at),
            status=PaymentStatus(row.status),
            retry_count=row.retry_count,
            gateway_reference=row.gateway_reference,
            failure_reason=row.failure_reason,
            paid_at=_as_utc(row.paid_at),
            paid_amount=row.paid_amount,
            discount_amount=row.discount_amount,
            settlement_quote_id=row.settlement_quote_id,
            action_required_at=_as_utc(row.action_required_at),
            version=row.version,
        )
