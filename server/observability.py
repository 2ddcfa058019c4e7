import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextvars import ContextVar
from collections import defaultdict
from threading import Lock

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

class StructuredLogger:
    """
    Structured JSON logger for observability.
    Emits one log line per event with consistent base fields.
    """

    def __init__(self, name: str = "questnav"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def _base_fields(self) -> Dict[str, Any]:
        """Common fields for all log events"""
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id_var.get(),
        }

    def log_event(
        self,
        event: str,
        level: str = "INFO",
        **fields
    ) -> None:
        """
        Log a structured event with additional fields.

        Args:
            event: Event name (e.g., "webhook.release.registered", "apk.fetch.redirect")
            level: Log level (INFO, WARN, ERROR)
            **fields: Additional event-specific fields
        """
        log_entry = self._base_fields()
        log_entry["level"] = level
        log_entry["event"] = event
        log_entry.update(fields)

        log_line = json.dumps(log_entry, default=str)

        if level == "ERROR":
            self.logger.error(log_line)
        elif level == "WARN":
            self.logger.warning(log_line)
        else:
            self.logger.info(log_line)


class MetricsCollector:
    """
    In-memory metrics collector with Prometheus text exposition.
    Tracks counters, gauges and histogram observations.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[tuple, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: Dict[str, Dict[tuple, float]] = defaultdict(dict)
        self._histograms: Dict[str, Dict[tuple, list]] = defaultdict(lambda: defaultdict(list))

        # Milliseconds; APK downloads routinely take tens of seconds
        self.latency_buckets = [10, 50, 100, 500, 1000, 5000, 15000, 30000, 60000, 120000]

    @staticmethod
    def _label_key(labels: Optional[Dict[str, str]]) -> tuple:
        return tuple(sorted((labels or {}).items()))

    @staticmethod
    def _format_labels(label_items) -> str:
        return ",".join(f'{k}="{v}"' for k, v in label_items)

    def inc_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        """Increment a counter metric"""
        with self._lock:
            self._counters[metric_name][self._label_key(labels)] += value

    def set_gauge(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Set a gauge to an absolute value"""
        with self._lock:
            self._gauges[metric_name][self._label_key(labels)] = value

    def observe_histogram(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a histogram observation"""
        with self._lock:
            self._histograms[metric_name][self._label_key(labels)].append(value)

    def get_counter(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._counters.get(metric_name, {}).get(self._label_key(labels), 0)

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def get_prometheus_text(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines = []

        with self._lock:
            for metric_name, label_data in sorted(self._counters.items()):
                lines.append(f"# TYPE {metric_name} counter")
                for label_tuple, count in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{self._format_labels(label_tuple)}}} {count}")
                    else:
                        lines.append(f"{metric_name} {count}")

            for metric_name, label_data in sorted(self._gauges.items()):
                lines.append(f"# TYPE {metric_name} gauge")
                for label_tuple, value in sorted(label_data.items()):
                    if label_tuple:
                        lines.append(f"{metric_name}{{{self._format_labels(label_tuple)}}} {value}")
                    else:
                        lines.append(f"{metric_name} {value}")

            for metric_name, label_data in sorted(self._histograms.items()):
                lines.append(f"# TYPE {metric_name} histogram")
                for label_tuple, observations in sorted(label_data.items()):
                    label_dict = dict(label_tuple)

                    for bucket in self.latency_buckets:
                        count = sum(1 for obs in observations if obs <= bucket)
                        bucket_labels = sorted({**label_dict, "le": str(bucket)}.items())
                        lines.append(f"{metric_name}_bucket{{{self._format_labels(bucket_labels)}}} {count}")

                    inf_labels = sorted({**label_dict, "le": "+Inf"}.items())
                    lines.append(f"{metric_name}_bucket{{{self._format_labels(inf_labels)}}} {len(observations)}")

                    suffix = f"{{{self._format_labels(label_tuple)}}}" if label_tuple else ""
                    lines.append(f"{metric_name}_count{suffix} {len(observations)}")
                    lines.append(f"{metric_name}_sum{suffix} {sum(observations)}")

        return "\n".join(lines) + "\n"


structured_logger = StructuredLogger()
metrics = MetricsCollector()
