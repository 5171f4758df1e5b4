"""Metric primitives kept by :class:`~ticketflow.metrics.registry.MetricsRegistry`."""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import perf_counter
from typing import Dict, Iterable, Iterator, Mapping, Tuple

LabelValues = Tuple[str, ...]


class Metric(ABC):
    """A named series family, keyed by label values."""

    def __init__(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> None:
        self.name = name
        self.description = description
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self._lock = Lock()

    def _label_key(self, labels: Mapping[str, str] | None) -> LabelValues:
        if not self.label_names:
            if labels:
                raise ValueError(f"Metric '{self.name}' does not accept labels")
            return ()
        missing = [label for label in self.label_names if label not in (labels or {})]
        if missing:
            raise ValueError(f"Metric '{self.name}' is missing labels {missing}")
        return tuple(str(labels[label]) for label in self.label_names)  # type: ignore[index]

    @abstractmethod
    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        """Return the current values per label combination."""

    @abstractmethod
    def reset(self) -> None:
        """Forget every recorded value."""


class CounterMetric(Metric):
    """Monotonic counter."""

    def __init__(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: Dict[LabelValues, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, *, labels: Mapping[str, str] | None = None) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = self._label_key(labels)
        with self._lock:
            self._values[key] += amount

    def value(self, *, labels: Mapping[str, str] | None = None) -> float:
        key = self._label_key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: {"value": value} for key, value in self._values.items()}

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


@dataclass
class DistributionStats:
    count: int = 0
    total: float = 0.0
    min: float | None = None
    max: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def to_mapping(self) -> Mapping[str, float]:
        return {
            "count": float(self.count),
            "sum": self.total,
            "min": self.min or 0.0,
            "max": self.max or 0.0,
            "avg": self.total / self.count if self.count else 0.0,
        }


class DistributionMetric(Metric):
    """Summary statistics over observed values, typically durations."""

    def __init__(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: Dict[LabelValues, DistributionStats] = defaultdict(DistributionStats)

    def observe(self, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key].observe(value)

    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        with self._lock:
            return {key: stats.to_mapping() for key, stats in self._values.items()}

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


@contextmanager
def track_duration(metric: DistributionMetric, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
    start = perf_counter()
    try:
        yield
    finally:
        metric.observe(perf_counter() - start, labels=labels)
