"""Metrics collection and export for playbook executions."""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


@dataclass
class Observation:
    """One histogram observation with its labels."""

    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """
    Collect counters and histograms for playbook executions.

    Thread-safe; a single collector may be shared by concurrent runs.

    Example:
        metrics = MetricsCollector()
        engine = PlaybookEngine(metrics=metrics)
        await engine.execute(playbook)
        metrics.get_counter("playbook_executions_total", {"status": "completed"})
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._histograms: Dict[str, List[Observation]] = defaultdict(list)
        self._help: Dict[str, str] = {}

    def increment_counter(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None,
        value: float = 1.0,
        help_text: Optional[str] = None,
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name
            labels: Label key-value pairs
            value: Amount to increment (default: 1.0)
            help_text: Optional help text for the metric
        """
        label_key = self._make_label_key(labels or {})
        with self._lock:
            if help_text:
                self._help.setdefault(name, help_text)
            self._counters[name][label_key] += value

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
        help_text: Optional[str] = None,
    ) -> None:
        """Record a histogram observation."""
        with self._lock:
            if help_text:
                self._help.setdefault(name, help_text)
            self._histograms[name].append(Observation(value, dict(labels or {})))

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """
        Get counter value.

        Args:
            name: Metric name
            labels: Labels to match; a subset matches every counter carrying
                those labels, None sums all label combinations

        Returns:
            Counter value
        """
        with self._lock:
            values = self._counters.get(name, {})
            if labels is None:
                return sum(values.values())
            wanted = set(self._make_label_key(labels))
            return sum(
                count for label_key, count in values.items() if wanted <= set(label_key)
            )

    def get_histogram_values(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> List[float]:
        """Observed values, optionally filtered by labels."""
        with self._lock:
            return [
                o.value
                for o in self._histograms.get(name, [])
                if labels is None
                or all(o.labels.get(k) == v for k, v in labels.items())
            ]

    def get_histogram_stats(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> Dict[str, float]:
        """
        Get histogram statistics.

        Returns:
            Dict with count, sum, min, max, avg, p50, p95
        """
        values = sorted(self.get_histogram_values(name, labels))
        if not values:
            return {"count": 0, "sum": 0.0, "min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p95": 0.0}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": values[0],
            "max": values[-1],
            "avg": sum(values) / len(values),
            "p50": self._percentile(values, 0.50),
            "p95": self._percentile(values, 0.95),
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        """All metrics as a dictionary keyed by metric name."""
        result: Dict[str, Any] = {}
        with self._lock:
            counters = {name: dict(values) for name, values in self._counters.items()}
            histogram_names = list(self._histograms)
            help_texts = dict(self._help)

        for name, values in counters.items():
            result[name] = {"type": "counter", "help": help_texts.get(name, ""), "values": values}
        for name in histogram_names:
            result[name] = {
                "type": "histogram",
                "help": help_texts.get(name, ""),
                "stats": self.get_histogram_stats(name),
            }
        return result

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._help.clear()

    def _make_label_key(self, labels: Dict[str, str]) -> LabelKey:
        """Create a unique key for label combination."""
        return tuple(sorted((str(k), str(v)) for k, v in labels.items()))

    def _percentile(self, sorted_values: List[float], p: float) -> float:
        """Linear-interpolated percentile of sorted values."""
        k = (len(sorted_values) - 1) * p
        f = int(k)
        c = min(f + 1, len(sorted_values) - 1)
        return sorted_values[f] + (k - f) * (sorted_values[c] - sorted_values[f])


class PrometheusExporter:
    """Export metrics in Prometheus text format."""

    BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(self, metrics: MetricsCollector) -> None:
        self.metrics = metrics

    def export(self) -> str:
        """Render every metric as Prometheus exposition text."""
        lines: List[str] = []

        for name, data in sorted(self.metrics.get_all_metrics().items()):
            if data["help"]:
                lines.append(f"# HELP {name} {data['help']}")
            lines.append(f"# TYPE {name} {data['type']}")

            if data["type"] == "counter":
                for label_key, value in sorted(data["values"].items()):
                    lines.append(f"{name}{self._format_labels(label_key)} {value}")
            else:
                values = self.metrics.get_histogram_values(name)
                for le in self.BUCKETS:
                    count = sum(1 for v in values if v <= le)
                    lines.append(f'{name}_bucket{{le="{le}"}} {count}')
                lines.append(f'{name}_bucket{{le="+Inf"}} {data["stats"]["count"]}')
                lines.append(f"{name}_sum {data['stats']['sum']}")
                lines.append(f"{name}_count {data['stats']['count']}")

            lines.append("")

        return "\n".join(lines)

    @staticmethod
    def _escape(value: str) -> str:
        return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")

    @classmethod
    def _format_labels(cls, label_key: LabelKey) -> str:
        if not label_key:
            return ""
        return "{" + ",".join(f'{k}="{cls._escape(v)}"' for k, v in label_key) + "}"
