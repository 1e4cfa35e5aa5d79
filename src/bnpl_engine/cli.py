"""Installment engine command line interface.

Operational tools for:
- Periodic jobs (due collection, retry promotion, requires_action expiry)
- Plan previews
- Metrics emission
- Health checks

Usage:
    bnpl-engine plan-preview --principal 20000 --currency USD --count 4
    bnpl-engine run-due --payment-method pm_default
    bnpl-engine run-retries
    bnpl-engine expire-stuck
    bnpl-engine metrics --format prometheus
    bnpl-engine health
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from bnpl_engine.config import get_settings, validate_production_config
from bnpl_engine.domain import utcnow
from bnpl_engine.engine import InstallmentEngine, build_engine
from bnpl_engine.errors import InvalidPlanError
from bnpl_engine.logging_config import configure_logging
from bnpl_engine.services.planner import InstallmentPlanner


def parse_datetime(s: str) -> datetime:
    """Parse ISO datetime string. Naive values are rejected."""
    value = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if value.tzinfo is None:
        raise argparse.ArgumentTypeError(f"timestamp must include a timezone: {s}")
    return value


class BnplCli:
    """Installment engine command line interface."""

    def __init__(self, engine_factory: Callable[[], InstallmentEngine] | None = None) -> None:
        self.parser = self._build_parser()
        self._engine_factory = engine_factory or build_engine
        self._engine: InstallmentEngine | None = None

    @property
    def engine(self) -> InstallmentEngine:
        if self._engine is None:
            self._engine = self._engine_factory()
        return self._engine

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="bnpl-engine",
            description="Installment engine operational tools",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            default=None,
            help="Log level (default: LOG_LEVEL or INFO)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # plan-preview command
        preview = subparsers.add_parser(
            "plan-preview",
            help="Show the installments a purchase would be split into",
        )
        preview.add_argument("--principal", type=int, required=True, help="Amount in minor units")
        preview.add_argument("--currency", type=str, default="USD", help="ISO 4217 code")
        preview.add_argument("--count", type=int, required=True, help="Number of installments")
        preview.add_argument(
            "--first-due",
            type=parse_datetime,
            help="First due date (ISO format, default: now)",
        )

        # run-due command
        due = subparsers.add_parser(
            "run-due",
            help="Collect every scheduled payment that is due",
        )
        due.add_argument(
            "--payment-method",
            type=str,
            required=True,
            help="Payment method reference charged for every due payment",
        )
        due.add_argument("--as-of", type=parse_datetime, help="Run time (default: now)")

        # run-retries command
        retries = subparsers.add_parser(
            "run-retries",
            help="Return failed payments whose retry time has come to the schedule",
        )
        retries.add_argument("--as-of", type=parse_datetime, help="Run time (default: now)")

        # expire-stuck command
        expire = subparsers.add_parser(
            "expire-stuck",
            help="Fail payments stuck waiting on customer action",
        )
        expire.add_argument("--as-of", type=parse_datetime, help="Run time (default: now)")

        # metrics command
        metrics = subparsers.add_parser(
            "metrics",
            help="Emit engine metrics",
        )
        metrics.add_argument(
            "--format",
            choices=["prometheus", "json"],
            default="prometheus",
            help="Output format (default: prometheus)",
        )

        # health command
        health = subparsers.add_parser(
            "health",
            help="Check store connectivity and configuration",
        )
        health.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(parsed.log_level or get_settings().log_level)

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "plan-preview": self._cmd_plan_preview,
            "run-due": self._cmd_run_due,
            "run-retries": self._cmd_run_retries,
            "expire-stuck": self._cmd_expire_stuck,
            "metrics": self._cmd_metrics,
            "health": self._cmd_health,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_plan_preview(self, args: argparse.Namespace) -> int:
        """Print a plan without touching the store."""
        now = utcnow()
        first_due = args.first_due or now
        planner = InstallmentPlanner(get_settings().engine_config().plan)
        try:
            specs = planner.plan(args.principal, args.currency.upper(), args.count, first_due, now=now)
        except InvalidPlanError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1

        print(f"Plan for {args.principal} {args.currency.upper()} in {args.count} installments:")
        for spec in specs:
            print(f"  #{spec.sequence + 1}  {spec.due_at.isoformat()}  {spec.amount}")
        print(f"  total {sum(s.amount for s in specs)}")
        return 0

    def _cmd_run_due(self, args: argparse.Namespace) -> int:
        """Collect due payments."""
        method = args.payment_method
        result = self.engine.process_due_payments(
            args.as_of or utcnow(),
            method_resolver=lambda payment, transaction: method,
        )
        self._print_result({
            "run_at": result.run_at.isoformat(),
            "attempted": result.attempted,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "pending_action": result.pending_action,
            "skipped": result.skipped,
            "errors": result.errors,
        })
        return 0 if result.success else 2

    def _cmd_run_retries(self, args: argparse.Namespace) -> int:
        """Promote elapsed retries."""
        result = self.engine.process_due_retries(args.as_of or utcnow())
        self._print_result({
            "run_at": result.run_at.isoformat(),
            "rescheduled": result.rescheduled,
            "dropped": result.dropped,
            "errors": result.errors,
        })
        return 0 if result.success else 2

    def _cmd_expire_stuck(self, args: argparse.Namespace) -> int:
        """Expire requires_action payments."""
        result = self.engine.expire_stuck(args.as_of or utcnow())
        self._print_result({
            "run_at": result.run_at.isoformat(),
            "payments_examined": result.payments_examined,
            "payments_expired": result.payments_expired,
            "errors": result.errors,
        })
        return 0 if result.success else 2

    def _cmd_metrics(self, args: argparse.Namespace) -> int:
        """Emit metrics."""
        snapshot = self.engine.metrics_snapshot()
        if args.format == "json":
            print(snapshot.to_json())
        else:
            sys.stdout.write(snapshot.to_prometheus())
        return 0

    def _cmd_health(self, args: argparse.Namespace) -> int:
        """Check store connectivity and configuration."""
        checks: dict[str, Any] = {}
        all_healthy = True

        try:
            self.engine.store.list_due_retry_timers(utcnow() + timedelta(seconds=1))
            checks["store"] = {"healthy": True}
        except Exception as e:
            checks["store"] = {"healthy": False, "error": str(e)}
            all_healthy = False

        issues = validate_production_config(get_settings())
        checks["config"] = {
            "healthy": not any(issue.startswith("CRITICAL") for issue in issues),
            "issues": issues,
        }
        all_healthy = all_healthy and checks["config"]["healthy"]

        if args.json:
            print(json.dumps({"healthy": all_healthy, "checks": checks}, indent=2))
        else:
            print(f"Overall: {'HEALTHY' if all_healthy else 'UNHEALTHY'}")
            for name, check in checks.items():
                mark = "✓" if check["healthy"] else "✗"
                print(f"  {mark} {name}")
                for issue in check.get("issues", []):
                    print(f"      {issue}")
                if "error" in check:
                    print(f"      {check['error']}")

        return 0 if all_healthy else 1

    @staticmethod
    def _print_result(data: dict[str, Any]) -> None:
        print(json.dumps(data, indent=2, default=str))


def main() -> int:
    """CLI entry point."""
    cli = BnplCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
