"""
Observability for CassandraDriver.

Provides:
- OpenTelemetry tracing spans around driver operations
- Operation metrics with percentile latencies
- Prometheus text export of those metrics
"""

import logging
import statistics
import threading
import time
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

logger = logging.getLogger(__name__)


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================

class Tracer:
    """
    Span factory backed by OpenTelemetry.

    Uses the globally configured SDK tracer provider when the application has
    set one; otherwise creates a private provider, exporting to ``exporter``
    when given. When disabled, ``span`` yields None and records nothing.
    """

    def __init__(
        self,
        service_name: str = "casquatch",
        enabled: bool = True,
        exporter: Optional[SpanExporter] = None,
    ):
        self.service_name = service_name
        self.enabled = enabled
        self._provider: Optional[TracerProvider] = None
        self._tracer = None

        if enabled:
            self._initialize(exporter)

    def _initialize(self, exporter: Optional[SpanExporter]):
        current = trace.get_tracer_provider()
        if isinstance(current, TracerProvider) and exporter is None:
            self._tracer = current.get_tracer(__name__)
            logger.info("Using existing OpenTelemetry tracer provider")
            return

        self._provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: self.service_name}))
        if exporter is not None:
            self._provider.add_span_processor(BatchSpanProcessor(exporter))
        self._tracer = self._provider.get_tracer(__name__)
        logger.info(f"OpenTelemetry tracing initialized for {self.service_name}")

    @contextmanager
    def span(self, name: str, attributes: Optional[dict[str, Any]] = None):
        """
        Wrap a block in a span named ``name``.

        None-valued attributes are skipped and non-primitive values are
        stringified. The span ends OK, or ERROR with the exception recorded
        when the block raises. Yields None when tracing is disabled.
        """
        if self._tracer is None:
            yield None
            return

        # OpenTelemetry attributes must be primitives
        clean = {
            key: value if isinstance(value, (str, int, float, bool)) else str(value)
            for key, value in (attributes or {}).items()
            if value is not None
        }
        with self._tracer.start_as_current_span(
            name, attributes=clean, record_exception=False, set_status_on_exception=False
        ) as current:
            try:
                yield current
            except Exception as e:
                current.record_exception(e)
                current.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise
            current.set_status(trace.Status(trace.StatusCode.OK))

    def force_flush(self) -> None:
        """Flush pending spans of a privately owned provider."""
        if self._provider is not None:
            self._provider.force_flush()

    def shutdown(self) -> None:
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


# ============================================================================
# Metrics
# ============================================================================

def _percentile_label(fraction: float) -> str:
    return f"p{round(fraction * 100)}"


class PercentileTracker:
    """Latency samples over a sliding window of the most recent calls."""

    def __init__(self, window_size: int = 1000, percentiles: list[float] = None):
        self.window_size = window_size
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self.samples: deque[float] = deque(maxlen=window_size)

    def record(self, value: float):
        self.samples.append(value)

    def get_percentiles(self) -> dict[str, float]:
        """Map "p50", "p95", ... to the windowed value; 0.0 while empty."""
        window = list(self.samples)
        if len(window) < 2:
            only = window[0] if window else 0.0
            return {_percentile_label(p): only for p in self.percentiles}

        cuts = statistics.quantiles(window, n=100, method="inclusive")
        return {_percentile_label(p): cuts[round(p * 100) - 1] for p in self.percentiles}

    def get_stats(self) -> dict[str, Any]:
        window = list(self.samples)
        summary = {
            "count": len(window),
            "avg": statistics.fmean(window) if window else 0.0,
            "min": min(window, default=0.0),
            "max": max(window, default=0.0),
        }
        summary.update(self.get_percentiles())
        return summary


@dataclass
class OperationStats:
    """Counters and latency window for one facade operation."""

    latency: PercentileTracker
    calls: int = 0
    failures: int = 0


class EnhancedMetrics:
    """
    Operation metrics for one driver instance.

    Counts calls and failures per operation, failure exception types,
    latency percentiles per operation, and routing cache hits and misses.
    All methods may be called from any thread.

    Example:
        metrics = EnhancedMetrics()
        metrics.record_operation("save", 1.8)
        metrics.record_operation("get_by_id", 40.2, success=False, error_type="QueryTimeoutError")
        print(metrics.export_prometheus())
    """

    def __init__(self, service_name: str = "casquatch", percentiles: list[float] = None):
        self.service_name = service_name
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self._lock = threading.Lock()
        self._operations: dict[str, OperationStats] = {}
        self._failure_types: Counter[str] = Counter()
        self.cache_hits = 0
        self.cache_misses = 0
        self.start_time = time.time()

    def _stats_for(self, operation: str) -> OperationStats:
        stats = self._operations.get(operation)
        if stats is None:
            stats = OperationStats(latency=PercentileTracker(percentiles=self.percentiles))
            self._operations[operation] = stats
        return stats

    def record_operation(
        self,
        operation: str,
        latency_ms: float,
        success: bool = True,
        error_type: Optional[str] = None,
    ):
        """
        Record one completed operation.

        Args:
            operation: Facade operation name, e.g. "get_by_id"
            latency_ms: Wall time of the call in milliseconds
            success: False when the call raised
            error_type: Class name of the raised error
        """
        with self._lock:
            stats = self._stats_for(operation)
            stats.calls += 1
            stats.latency.record(latency_ms)
            if not success:
                stats.failures += 1
                if error_type:
                    self._failure_types[error_type] += 1

    def record_cache_hit(self):
        with self._lock:
            self.cache_hits += 1

    def record_cache_miss(self):
        with self._lock:
            self.cache_misses += 1

    def get_latency_stats(self, operation: str) -> dict[str, Any]:
        with self._lock:
            return self._stats_for(operation).latency.get_stats()

    def get_all_stats(self) -> dict[str, Any]:
        """
        Snapshot of every counter.

        Keys: uptime_seconds, operations (total, rate_per_sec, by_type),
        errors (total, rate, by_type, by_error), latencies (per operation)
        and cache (hits, misses, hit_rate).
        """
        with self._lock:
            uptime = time.time() - self.start_time
            calls = {name: s.calls for name, s in self._operations.items()}
            failures = {name: s.failures for name, s in self._operations.items() if s.failures}
            total_calls = sum(calls.values())
            total_failures = sum(failures.values())
            lookups = self.cache_hits + self.cache_misses

            return {
                "uptime_seconds": uptime,
                "operations": {
                    "total": total_calls,
                    "rate_per_sec": total_calls / uptime if uptime > 0 else 0.0,
                    "by_type": calls,
                },
                "errors": {
                    "total": total_failures,
                    "rate": total_failures / total_calls if total_calls else 0.0,
                    "by_type": failures,
                    "by_error": dict(self._failure_types),
                },
                "latencies": {name: s.latency.get_stats() for name, s in self._operations.items()},
                "cache": {
                    "hits": self.cache_hits,
                    "misses": self.cache_misses,
                    "hit_rate": self.cache_hits / lookups if lookups else 0.0,
                },
            }

    def reset(self):
        with self._lock:
            self._operations.clear()
            self._failure_types.clear()
            self.cache_hits = 0
            self.cache_misses = 0
            self.start_time = time.time()

    def export_prometheus(self) -> str:
        """Render the current snapshot in the Prometheus text exposition format."""
        stats = self.get_all_stats()
        lines = [
            f'casquatch_operations_total{{operation="{name}"}} {count}'
            for name, count in stats["operations"]["by_type"].items()
        ]
        lines += [
            f'casquatch_errors_total{{operation="{name}"}} {count}'
            for name, count in stats["errors"]["by_type"].items()
        ]
        lines += [
            f'casquatch_errors_by_type_total{{error="{error}"}} {count}'
            for error, count in stats["errors"]["by_error"].items()
        ]
        for name, latency in stats["latencies"].items():
            for label in map(_percentile_label, self.percentiles):
                lines.append(f'casquatch_latency_ms{{operation="{name}",percentile="{label}"}} {latency[label]}')

        cache = stats["cache"]
        lines.append(f"casquatch_routing_cache_hits_total {cache['hits']}")
        lines.append(f"casquatch_routing_cache_misses_total {cache['misses']}")
        lines.append(f"casquatch_routing_cache_hit_rate {cache['hit_rate']}")
        return "\n".join(lines)
