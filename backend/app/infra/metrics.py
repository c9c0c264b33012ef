"""Counter/gauge facade for intake, webhook and sweeper events."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import DefaultDict, Dict

from .logging import get_logger

logger = get_logger(__name__)


class MetricsClient:  # pragma: no cover - interface
    def increment(self, metric: str, value: int = 1) -> None:
        raise NotImplementedError

    def gauge(self, metric: str, value: int) -> None:
        raise NotImplementedError


@dataclass
class InMemoryMetricsClient(MetricsClient):
    """Process-local sink; counters are readable for health output and tests."""

    counters: DefaultDict[str, int] = field(default_factory=lambda: defaultdict(int))
    gauges: Dict[str, int] = field(default_factory=dict)

    def increment(self, metric: str, value: int = 1) -> None:
        self.counters[metric] += value
        logger.debug("metrics_increment", extra={"metric": metric, "value": value})

    def gauge(self, metric: str, value: int) -> None:
        self.gauges[metric] = value
        logger.debug("metrics_gauge", extra={"metric": metric, "value": value})

    def value(self, metric: str) -> int:
        return self.counters.get(metric, 0)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {"counters": dict(self.counters), "gauges": dict(self.gauges)}


_metrics_singleton: InMemoryMetricsClient | None = None


def get_metrics_client() -> InMemoryMetricsClient:
    """Return the shared metrics client."""

    global _metrics_singleton
    if _metrics_singleton is None:
        _metrics_singleton = InMemoryMetricsClient()
    return _metrics_singleton


def reset_metrics_client() -> None:
    global _metrics_singleton
    _metrics_singleton = None
