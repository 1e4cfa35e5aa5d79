"""Installment engine observability metrics.

In-process counters fed by the event emitter, plus gauges read from the
store when a snapshot is taken.

Usage:
    recorder = MetricsRecorder()
    emitter.on_all(recorder)
    ...
    snapshot = recorder.snapshot(store)

    # For Prometheus export
    print(snapshot.to_prometheus())

    # For JSON export
    print(snapshot.to_json())
"""

from __future__ import annotations

import json
import re
import threading
from collections import Counter as TallyCounter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bnpl_engine.domain import utcnow
from bnpl_engine.events.types import DomainEvent
from bnpl_engine.services.state_machine import PaymentStatus
from bnpl_engine.store.base import Store


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: float | int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


@dataclass
class EngineMetrics:
    """Point-in-time collection of engine metrics."""

    counters: list[Counter]
    gauges: list[Gauge]
    collected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "collected_at": self.collected_at.isoformat(),
            "counters": [self._metric_to_dict(m) for m in self.counters],
            "gauges": [self._metric_to_dict(m) for m in self.gauges],
        }

    @staticmethod
    def _metric_to_dict(metric: Counter | Gauge) -> dict[str, Any]:
        return {
            "name": metric.name,
            "value": metric.value,
            "labels": metric.labels,
            "help": metric.help_text,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        described: set[str] = set()

        def emit(metric: Counter | Gauge) -> None:
            labels = ""
            if metric.labels:
                label_parts = [f'{k}="{v}"' for k, v in metric.labels.items()]
                labels = "{" + ",".join(label_parts) + "}"

            if metric.name not in described:
                described.add(metric.name)
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")
            lines.append(f"{metric.name}{labels} {metric.value}")

        for counter in self.counters:
            emit(counter)
        for gauge in self.gauges:
            emit(gauge)

        return "\n".join(lines) + "\n"


class MetricsRecorder:
    """Event handler counting domain events by type.

    Register with `emitter.on_all(recorder)`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: TallyCounter[str] = TallyCounter()

    def __call__(self, event: DomainEvent) -> None:
        with self._lock:
            self._events[event.event_type] += 1

    def count(self, event_type: str) -> int:
        with self._lock:
            return self._events[event_type]

    def snapshot(self, store: Store | None = None) -> EngineMetrics:
        """Build a metrics snapshot, with payment gauges when a store is given."""
        with self._lock:
            tallies = dict(self._events)

        counters = [
            Counter(
                name="bnpl_domain_events_total",
                value=count,
                labels={"event_type": _snake(event_type)},
                help_text="Domain events published, by type",
            )
            for event_type, count in sorted(tallies.items())
        ]

        gauges: list[Gauge] = []
        if store is not None:
            for status in (PaymentStatus.SCHEDULED, PaymentStatus.PROCESSING, PaymentStatus.FAILED):
                gauges.append(
                    Gauge(
                        name="bnpl_payments_open",
                        value=len(store.list_payments_by_status(status)),
                        labels={"status": status.value},
                        help_text="Payments not yet in a terminal state",
                    )
                )
            gauges.append(
                Gauge(
                    name="bnpl_retry_timers_due",
                    value=len(store.list_due_retry_timers(utcnow())),
                    help_text="Retry timers that have elapsed",
                )
            )

        return EngineMetrics(counters=counters, gauges=gauges)
