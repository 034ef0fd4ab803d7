"""Thread-safe in-memory metrics registry."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterable, Iterator, Mapping, Tuple, Type, TypeVar

from .base import CounterMetric, DistributionMetric, Metric, track_duration

MetricT = TypeVar("MetricT", bound=Metric)


class MetricsRegistry:
    """Named metrics shared by the whole process, created lazily on first use."""

    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}
        self._lock = Lock()

    def _typed(
        self,
        metric_cls: Type[MetricT],
        name: str,
        description: str,
        label_names: Iterable[str] | None,
    ) -> MetricT:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = metric_cls(name, description=description, label_names=label_names)
                self._metrics[name] = metric
        if not isinstance(metric, metric_cls):
            raise TypeError(f"Metric '{name}' is already registered as {type(metric).__name__}")
        return metric

    def counter(
        self,
        name: str,
        *,
        description: str = "",
        label_names: Iterable[str] | None = None,
    ) -> CounterMetric:
        return self._typed(CounterMetric, name, description, label_names)

    def distribution(
        self,
        name: str,
        *,
        description: str = "",
        label_names: Iterable[str] | None = None,
    ) -> DistributionMetric:
        return self._typed(DistributionMetric, name, description, label_names)

    def metrics(self) -> Tuple[Metric, ...]:
        with self._lock:
            return tuple(self._metrics.values())

    def snapshot(self) -> Dict[str, Mapping[Tuple[str, ...], Mapping[str, float]]]:
        return {metric.name: metric.snapshot() for metric in self.metrics()}

    @contextmanager
    def time_distribution(self, name: str, *, labels: Mapping[str, str] | None = None) -> Iterator[None]:
        """Observe the duration of the ``with`` block into distribution ``name``."""

        with track_duration(self.distribution(name), labels=labels):
            yield
