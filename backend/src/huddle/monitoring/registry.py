"""Metric registry rendered in the Prometheus text exposition format."""

from __future__ import annotations

from threading import Lock
from typing import Sequence


def _format_value(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _escape(value: str) -> str:
    return value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


class MetricsRegistry:
    """Collects metrics by name and renders them sorted."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = Lock()

    def _add(self, metric: "Metric") -> "Metric":
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"Metric '{metric.name}' already registered")
            self._metrics[metric.name] = metric
        return metric

    def counter(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "CounterMetric":
        return self._add(CounterMetric(name, description, label_names))  # type: ignore[return-value]

    def gauge(self, name: str, description: str, *, label_names: Sequence[str] = ()) -> "GaugeMetric":
        return self._add(GaugeMetric(name, description, label_names))  # type: ignore[return-value]

    def get(self, name: str) -> "Metric | None":
        return self._metrics.get(name)

    def render(self) -> str:
        lines: list[str] = []
        for name in sorted(self._metrics):
            lines.extend(self._metrics[name].render())
        return "\n".join(lines) + "\n"


class Metric:
    metric_type = "untyped"

    def __init__(self, name: str, description: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(label_names)
        self._samples: dict[tuple[str, ...], float] = {}
        self._lock = Lock()

    def labels(self, *values: object) -> "BoundMetric":
        """Bind label values positionally: ``metric.labels("redis").inc()``."""

        if len(values) != len(self.label_names):
            raise ValueError(
                f"Metric '{self.name}' expects labels {list(self.label_names)}, got {len(values)} values"
            )
        return BoundMetric(self, tuple(str(value) for value in values))

    def value(self, *values: object) -> float:
        return self._samples.get(tuple(str(value) for value in values), 0.0)

    def _apply(self, key: tuple[str, ...], delta: float | None = None, absolute: float | None = None) -> None:
        with self._lock:
            if absolute is not None:
                self._samples[key] = float(absolute)
            else:
                self._samples[key] = self._samples.get(key, 0.0) + (delta or 0.0)

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.metric_type}"]
        with self._lock:
            samples = sorted(self._samples.items())
        if not samples:
            lines.append(f"{self.name} 0")
            return lines
        for labels, value in samples:
            if self.label_names:
                block = ",".join(
                    f'{name}="{_escape(label)}"' for name, label in zip(self.label_names, labels)
                )
                lines.append(f"{self.name}{{{block}}} {_format_value(value)}")
            else:
                lines.append(f"{self.name} {_format_value(value)}")
        return lines


class CounterMetric(Metric):
    metric_type = "counter"

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)


class GaugeMetric(Metric):
    metric_type = "gauge"

    def set(self, value: float) -> None:
        self.labels().set(value)


class BoundMetric:
    """A metric with every label value fixed."""

    def __init__(self, metric: Metric, label_values: tuple[str, ...]) -> None:
        self._metric = metric
        self._key = label_values

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Increment amount must be non-negative")
        self._metric._apply(self._key, delta=amount)

    def dec(self, amount: float = 1.0) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support dec()")
        self._metric._apply(self._key, delta=-amount)

    def set(self, value: float) -> None:
        if not isinstance(self._metric, GaugeMetric):
            raise AttributeError("Only gauges support set()")
        self._metric._apply(self._key, absolute=value)


# Shared registry instance used across the package.
registry = MetricsRegistry()
