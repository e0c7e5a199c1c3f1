"""Metrics for config generation and server reloads.

Metric names are prefixed with the generator's service name:

- <prefix>_generation_requests_total: config_data calls, including failures
- <prefix>_generation_request_duration_seconds: histogram of config_data time
- <prefix>_generation_exceptions_total{class}: config_data exceptions by class
- <prefix>_generation_in_progress_count: 1 while config_data is running
- <prefix>_generation_ok: 1 if the last config_data call succeeded
- <prefix>_last_generation_timestamp: when a regeneration was last attempted
- <prefix>_last_change_timestamp: modification time of the live config file
- <prefix>_reload_total{status}: server reloads by outcome
- <prefix>_signals_total{signal}: signals received
- <prefix>_config_ok: 1 if the server accepted the last config

Rendered in the Prometheus text exposition format.
"""

import math
import threading
from collections.abc import Iterable
from typing import Final

LabelKey = tuple[tuple[str, str], ...]

DEFAULT_BUCKETS: Final = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(key: LabelKey, extra: LabelKey = ()) -> str:
    pairs = key + extra
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in pairs) + "}"


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(float(value))


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self._lock = threading.Lock()
        self._values: dict[LabelKey, float] = {}

    def value(self, labels: dict[str, str] | None = None) -> float:
        """Current value for a label set (0 if never recorded)."""
        with self._lock:
            return self._values.get(_label_key(labels), 0.0)

    def samples(self) -> Iterable[tuple[str, LabelKey, float]]:
        with self._lock:
            items = sorted(self._values.items())
        for key, value in items:
            yield self.name, key, value

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        for name, key, value in self.samples():
            lines.append(f"{name}{_format_labels(key)} {_format_value(value)}")
        return lines


class Counter(_Metric):
    """A monotonically increasing count."""

    kind = "counter"

    def inc(self, labels: dict[str, str] | None = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount


class Gauge(_Metric):
    """A value that can go up and down."""

    kind = "gauge"

    def set(self, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._values[_label_key(labels)] = float(value)

    def inc(self, amount: float = 1.0, labels: dict[str, str] | None = None) -> None:
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def dec(self, amount: float = 1.0, labels: dict[str, str] | None = None) -> None:
        self.inc(-amount, labels)


class Histogram(_Metric):
    """Observations counted into cumulative buckets."""

    kind = "histogram"

    def __init__(self, name: str, description: str, buckets: Iterable[float] = DEFAULT_BUCKETS):
        super().__init__(name, description)
        self.buckets = tuple(sorted(buckets)) + (math.inf,)
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[i] += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    def samples(self) -> Iterable[tuple[str, LabelKey, float]]:
        with self._lock:
            counts, total, count = list(self._counts), self._sum, self._count
        for bound, bucket_count in zip(self.buckets, counts, strict=True):
            yield f"{self.name}_bucket", (("le", _format_value(bound)),), float(bucket_count)
        yield f"{self.name}_sum", (), total
        yield f"{self.name}_count", (), float(count)


class MetricsRecorder:
    """The set of metrics a config generator records.

    Usage:
        metrics = MetricsRecorder("my_config")
        metrics.reload_total.inc({"status": "success"})
        text = metrics.render()
    """

    def __init__(self, prefix: str):
        self.prefix = prefix
        p = prefix

        self.generation_requests = Counter(
            f"{p}_generation_requests_total", "How many times config generation has been attempted"
        )
        self.generation_duration = Histogram(
            f"{p}_generation_request_duration_seconds", "Time taken to generate a config"
        )
        self.generation_exceptions = Counter(
            f"{p}_generation_exceptions_total", "Exceptions raised while generating a config"
        )
        self.generation_in_progress = Gauge(
            f"{p}_generation_in_progress_count", "Whether a config generation is running"
        )
        self.generation_ok = Gauge(
            f"{p}_generation_ok", "Whether the last config generation succeeded"
        )
        self.last_generation_timestamp = Gauge(
            f"{p}_last_generation_timestamp", "When the last config generation run was made"
        )
        self.last_change_timestamp = Gauge(
            f"{p}_last_change_timestamp", "When the config file was last written to"
        )
        self.reload_total = Counter(
            f"{p}_reload_total", "How many times we've asked the server to reload"
        )
        self.signals_total = Counter(
            f"{p}_signals_total", "How many signals have been received (and handled)"
        )
        self.config_ok = Gauge(
            f"{p}_config_ok", "Whether the last config change was accepted by the server"
        )

        self.generation_in_progress.set(0)
        self.last_generation_timestamp.set(0)
        self.last_change_timestamp.set(0)
        self.config_ok.set(0)

    @property
    def all(self) -> list[_Metric]:
        return [
            self.generation_requests,
            self.generation_duration,
            self.generation_exceptions,
            self.generation_in_progress,
            self.generation_ok,
            self.last_generation_timestamp,
            self.last_change_timestamp,
            self.reload_total,
            self.signals_total,
            self.config_ok,
        ]

    def render(self) -> str:
        """Render every metric in Prometheus text exposition format."""
        lines: list[str] = []
        for metric in self.all:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"
