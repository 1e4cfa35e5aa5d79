"""Retry scheduling for failed installment payments.

The scheduler only decides *when* a failed payment may be attempted again
and remembers that decision as a timer. It never moves payment state; the
engine re-validates the payment before applying RETRY_ELIGIBLE.
"""

from __future__ import annotations

import logging
from datetime import datetime

from bnpl_engine.domain import Payment
from bnpl_engine.policies import RetryPolicy
from bnpl_engine.store.base import RetryTimer, Store

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Backoff-driven retry timers, at most one per payment."""

    def __init__(self, store: Store, policy: RetryPolicy | None = None):
        self.store = store
        self.policy = policy or RetryPolicy()

    def next_attempt_at(self, payment: Payment, failed_at: datetime, cutoff: datetime) -> datetime | None:
        """Compute the next eligible time without recording it.

        `payment.retry_count` is the count after the failure was applied, so
        the first failure uses the first backoff offset.
        """
        if payment.retry_count >= self.policy.max_attempts:
            return None
        eligible_at = failed_at + self.policy.offset_for(payment.retry_count)
        if eligible_at > cutoff:
            return None
        return eligible_at

    def on_failure(self, payment: Payment, failed_at: datetime, cutoff: datetime) -> datetime | None:
        """Schedule a retry for a payment that just failed.

        Returns:
            The eligible time, or None when the payment is out of attempts or
            the next attempt would fall after the cutoff. The caller then
            applies RETRY_EXHAUSTED.
        """
        eligible_at = self.next_attempt_at(payment, failed_at, cutoff)
        if eligible_at is None:
            self.store.delete_retry_timer(payment.id)
            logger.info(
                "No retry for payment %s (retry_count=%d, cutoff=%s)",
                payment.id,
                payment.retry_count,
                cutoff.isoformat(),
            )
            return None

        self.store.upsert_retry_timer(RetryTimer(payment_id=payment.id, eligible_at=eligible_at))
        logger.info(
            "Retry %d/%d for payment %s scheduled at %s",
            payment.retry_count,
            self.policy.max_attempts,
            payment.id,
            eligible_at.isoformat(),
        )
        return eligible_at

    def due_for_retry(self, now: datetime) -> list[str]:
        """Payment ids whose retry timer has elapsed, oldest first."""
        return [timer.payment_id for timer in self.store.list_due_retry_timers(now)]

    def pending(self, payment_id: str) -> RetryTimer | None:
        return self.store.get_retry_timer(payment_id)

    def cancel(self, payment_id: str) -> None:
        """Drop any pending timer for a payment."""
        self.store.delete_retry_timer(payment_id)

    def cutoff_for(self, final_due_at: datetime) -> datetime:
        """Latest time a retry may be scheduled for a transaction."""
        return final_due_at + self.policy.grace_period
