"""Counter and distribution primitives backing the registry."""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import perf_counter
from typing import Dict, Iterable, Iterator, Mapping, MutableMapping, Tuple

LabelValues = Tuple[str, ...]


class Metric(ABC):
    """Base class for concrete metric types."""

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
        if labels is None:
            raise ValueError(f"Metric '{self.name}' requires labels {self.label_names}")
        missing = [label for label in self.label_names if label not in labels]
        if missing:
            raise ValueError(f"Missing labels {missing} for metric '{self.name}'")
        return tuple(labels[label] for label in self.label_names)

    @abstractmethod
    def snapshot(self) -> Mapping[LabelValues, Mapping[str, float]]:
        """Return a snapshot of the metric values."""


class CounterMetric(Metric):
    """Monotonic counter, optionally split by labels."""

    def __init__(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._values: MutableMapping[LabelValues, float] = defaultdict(float)

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


@dataclass
class DistributionStats:
    count: int = 0
    total: float = 0.0

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value

    def to_mapping(self) -> Mapping[str, float]:
        return {"count": float(self.count), "sum": self.total}


class DistributionMetric(Metric):
    """Count and sum of observed values, exported as a summary."""

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


@contextmanager
def track_duration(metric: DistributionMetric, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
    """Record the wall time of the ``with`` block into ``metric``."""

    start = perf_counter()
    try:
        yield
    finally:
        metric.observe(perf_counter() - start, labels=labels)
