"""Minimal in-process Prometheus counters and gauges with text rendering."""

from __future__ import annotations

import math
import re
import threading
from collections.abc import Iterable

__all__ = ["Counter", "Gauge", "Registry"]

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class _Metric:
    """Shared state of a metric: name, help text and one value per label set."""

    type_name = "untyped"

    def __init__(self, name: str, help: str = "", labelnames: Iterable[str] = ()) -> None:
        if not _METRIC_NAME.fullmatch(name):
            raise ValueError(f"invalid metric name {name!r}")
        self.name = name
        self.help = help
        self.labelnames = tuple(labelnames)
        for label in self.labelnames:
            if not _LABEL_NAME.fullmatch(label) or label.startswith("__"):
                raise ValueError(f"invalid label name {label!r}")
        if len(set(self.labelnames)) != len(self.labelnames):
            raise ValueError("duplicate label names")
        self._lock = threading.Lock()
        self._values: dict[tuple[str, ...], float] = {}
        if not self.labelnames:
            self._values[()] = 0.0

    def _key(self, labels: dict[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.labelnames):
            raise ValueError(
                f"metric {self.name!r} expects labels {sorted(self.labelnames)}, "
                f"got {sorted(labels)}"
            )
        return tuple(str(labels[name]) for name in self.labelnames)

    def _adjust(self, amount: float, labels: dict[str, str]) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, **kwargs: str) -> float:
        """Current value for the given label set (0 if never touched)."""
        key = self._key(kwargs)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> str:
        """Render this metric in the text exposition format."""
        lines = []
        if self.help:
            lines.append(f"# HELP {self.name} {_escape_help(self.help)}")
        lines.append(f"# TYPE {self.name} {self.type_name}")
        with self._lock:
            items = sorted(self._values.items())
        for key, value in items:
            if key:
                pairs = ",".join(
                    f'{label}="{_escape_label(val)}"' for label, val in zip(self.labelnames, key)
                )
                lines.append(f"{self.name}{{{pairs}}} {_format_value(value)}")
            else:
                lines.append(f"{self.name} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class Counter(_Metric):
    """A monotonically increasing value."""

    type_name = "counter"

    def inc(self, amount: float = 1.0, **kwargs: str) -> None:
        """Increase the counter; a negative amount raises ValueError."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        self._adjust(amount, kwargs)

    def value(self, **kwargs: str) -> float:
        return super().value(**kwargs)

    def render(self) -> str:
        return super().render()


class Gauge(_Metric):
    """A value that can go up and down."""

    type_name = "gauge"

    def set(self, value: float, **kwargs: str) -> None:
        key = self._key(kwargs)
        with self._lock:
            self._values[key] = float(value)

    def add(self, amount: float, **kwargs: str) -> None:
        """Add to the gauge; a negative amount subtracts."""
        self._adjust(amount, kwargs)

    def value(self, **kwargs: str) -> float:
        return super().value(**kwargs)

    def render(self) -> str:
        return super().render()


class Registry:
    """A collection of uniquely named metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, _Metric] = {}

    def register(self, metric: _Metric) -> _Metric:
        """Register a metric; a second metric with the same name raises ValueError."""
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metrics collector registration attempted: {metric.name}")
            self._metrics[metric.name] = metric
        return metric

    def __contains__(self, name: object) -> bool:
        return name in self._metrics

    def render(self) -> str:
        """Render every registered metric, ordered by name."""
        with self._lock:
            metrics = [self._metrics[name] for name in sorted(self._metrics)]
        return "".join(metric.render() for metric in metrics)