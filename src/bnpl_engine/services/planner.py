"""Installment plan generation."""

from __future__ import annotations

from datetime import datetime

from bnpl_engine.domain import PaymentSpec, utcnow
from bnpl_engine.errors import InvalidPlanError
from bnpl_engine.policies import PlanPolicy


class InstallmentPlanner:
    """Splits a principal into dated installments.

    Pure and deterministic: the only input besides the arguments is the
    injected PlanPolicy, and `now` may be passed explicitly.
    """

    def __init__(self, policy: PlanPolicy | None = None):
        self.policy = policy or PlanPolicy()

    def plan(
        self,
        principal: int,
        currency: str,
        installment_count: int,
        first_due_at: datetime,
        now: datetime | None = None,
    ) -> list[PaymentSpec]:
        """
        Generate equal installments spaced by the policy interval.

        The last installment absorbs the rounding remainder so the amounts sum
        to the principal exactly.

        Args:
            principal: Total amount in minor units
            currency: ISO 4217 code
            installment_count: Number of payments (must be supported by policy)
            first_due_at: Due date of the first installment (timezone-aware)
            now: Reference time for the past-date check

        Returns:
            PaymentSpec list ordered by sequence

        Example:
            10000 / 3 → [3333, 3333, 3334]
        """
        self.validate(principal, currency, installment_count, first_due_at, now)

        base_amount = principal // installment_count
        remainder = principal % installment_count

        specs = []
        for i in range(installment_count):
            amount = base_amount + (remainder if i == installment_count - 1 else 0)
            specs.append(
                PaymentSpec(
                    sequence=i,
                    amount=amount,
                    due_at=first_due_at + i * self.policy.interval,
                )
            )
        return specs

    def validate(
        self,
        principal: int,
        currency: str,
        installment_count: int,
        first_due_at: datetime,
        now: datetime | None = None,
    ) -> None:
        """Raise InvalidPlanError if the request cannot be planned."""
        if installment_count not in self.policy.supported_installment_counts:
            supported = sorted(self.policy.supported_installment_counts)
            raise InvalidPlanError(
                f"Unsupported installment count {installment_count}; expected one of {supported}"
            )
        if isinstance(principal, bool) or not isinstance(principal, int):
            raise InvalidPlanError("Principal must be an integer amount in minor units")
        if principal <= 0:
            raise InvalidPlanError("Principal must be positive")
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            raise InvalidPlanError(f"Invalid currency code: {currency!r}")
        if first_due_at.tzinfo is None:
            raise InvalidPlanError("first_due_at must be timezone-aware")

        now = now or utcnow()
        if first_due_at < now - self.policy.clock_skew_tolerance:
            raise InvalidPlanError(f"First due date {first_due_at.isoformat()} is in the past")
