"""Engine policy objects.

Explicit configuration for the installment engine. Every component receives
its policy through its constructor; nothing is read from a global store at
call time.

Pattern:
    engine = InstallmentEngine(
        store=store,
        gateway=gateway,
        config=EngineConfig(
            plan=PlanPolicy(interval=timedelta(days=14)),
            retry=RetryPolicy(max_attempts=3),
            discount=DiscountPolicy(rate=Decimal("0.05")),
        ),
    )

Rules:
    1. Immutable after creation (frozen dataclasses).
    2. Each policy validates itself on construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal


@dataclass(frozen=True)
class PlanPolicy:
    """
    Installment planning configuration.

    Attributes:
        supported_installment_counts: Plan types offered. Default {2, 3, 4}.
        interval: Time between consecutive due dates. Default 14 days.
        clock_skew_tolerance: How far in the past a first due date may lie
            before the request is rejected. Default 5 minutes.
    """

    supported_installment_counts: frozenset[int] = frozenset({2, 3, 4})
    interval: timedelta = timedelta(days=14)
    clock_skew_tolerance: timedelta = timedelta(minutes=5)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.supported_installment_counts:
            raise ValueError("supported_installment_counts must not be empty")
        if any(count < 1 for count in self.supported_installment_counts):
            raise ValueError("installment counts must be positive")
        if self.interval <= timedelta(0):
            raise ValueError("interval must be positive")
        if self.clock_skew_tolerance < timedelta(0):
            raise ValueError("clock_skew_tolerance cannot be negative")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Failed payment retry configuration.

    Attributes:
        max_attempts: Failures after which a payment is cancelled. Default 3.
        backoff: Offsets from the failure time, indexed by failure number.
            The last offset is reused when failures outnumber offsets.
            Default +24h, +72h, +7d.
        grace_period: No retry is scheduled later than the transaction's final
            due date plus this window. Default 7 days.
    """

    max_attempts: int = 3
    backoff: tuple[timedelta, ...] = (
        timedelta(hours=24),
        timedelta(hours=72),
        timedelta(days=7),
    )
    grace_period: timedelta = timedelta(days=7)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.backoff:
            raise ValueError("backoff must contain at least one offset")
        if any(offset <= timedelta(0) for offset in self.backoff):
            raise ValueError("backoff offsets must be positive")
        if self.grace_period < timedelta(0):
            raise ValueError("grace_period cannot be negative")

    def offset_for(self, failure_number: int) -> timedelta:
        """Backoff offset after the given (1-based) failure."""
        index = min(max(failure_number, 1), len(self.backoff)) - 1
        return self.backoff[index]


@dataclass(frozen=True)
class DiscountPolicy:
    """
    Early-payment discount configuration.

    Attributes:
        rate: Incentive rate applied to a payment settled a full
            normalization window early. Default 5%.
        normalization_window_days: Days early at which the full rate is
            earned; earlier payment earns no more. Default 30.
        processing_cost_floor: Minimum net amount (minor units) collected per
            payment. Default 0.
        quote_validity: How long a quote can be settled. Default 15 minutes.
    """

    rate: Decimal = Decimal("0.05")
    normalization_window_days: int = 30
    processing_cost_floor: int = 0
    quote_validity: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not Decimal("0") <= self.rate <= Decimal("1"):
            raise ValueError("rate must be between 0 and 1")
        if self.normalization_window_days < 1:
            raise ValueError("normalization_window_days must be at least 1")
        if self.processing_cost_floor < 0:
            raise ValueError("processing_cost_floor cannot be negative")
        if self.quote_validity <= timedelta(0):
            raise ValueError("quote_validity must be positive")


@dataclass(frozen=True)
class ReconciliationPolicy:
    """
    Gateway reconciliation configuration.

    Attributes:
        requires_action_timeout: How long a payment may wait on customer
            action before it is forced to FAILED. Default 30 minutes.
        confirm_timeout: Bound on the synchronous gateway confirm call.
            Default 30 seconds.
        conflict_retries: Reload-and-retry attempts on version conflicts.
            Default 3.
        signature_tolerance: Maximum age of a signed webhook. Default 5 minutes.
    """

    requires_action_timeout: timedelta = timedelta(minutes=30)
    confirm_timeout: timedelta = timedelta(seconds=30)
    conflict_retries: int = 3
    signature_tolerance: timedelta = timedelta(minutes=5)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.requires_action_timeout <= timedelta(0):
            raise ValueError("requires_action_timeout must be positive")
        if self.confirm_timeout <= timedelta(0):
            raise ValueError("confirm_timeout must be positive")
        if self.conflict_retries < 1:
            raise ValueError("conflict_retries must be at least 1")


@dataclass(frozen=True)
class EngineConfig:
    """
    Complete engine configuration.

    Attributes:
        plan: Installment planning policy.
        retry: Retry scheduling policy.
        discount: Early-payment discount policy.
        reconciliation: Webhook and gateway timing policy.
        emit_events: If False, domain events are not published. Default True.
    """

    plan: PlanPolicy = field(default_factory=PlanPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    discount: DiscountPolicy = field(default_factory=DiscountPolicy)
    reconciliation: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    emit_events: bool = True
