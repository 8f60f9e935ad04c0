"""
Tests for production features (error translation, structured logging, metrics, tracing).
"""

import json
import logging

import pytest
from cassandra import InvalidRequest, OperationTimedOut, Unauthorized, Unavailable
from cassandra.cluster import NoHostAvailable

from vertector_casquatch.exceptions import (
    AuthenticationError,
    CasquatchError,
    DriverConnectionError,
    FeatureDisabledError,
    QueryExecutionError,
    QueryTimeoutError,
    ReplicaUnavailableError,
    translate_driver_error,
)
from vertector_casquatch.logging_utils import (
    PerformanceLogger,
    StructuredFormatter,
    current_log_context,
    log_context,
    setup_production_logging,
)
from vertector_casquatch.observability import EnhancedMetrics, PercentileTracker, Tracer


# ============================================================================
# Error translation
# ============================================================================

@pytest.mark.unit
class TestErrorTranslation:

    @pytest.mark.parametrize("error, expected", [
        (NoHostAvailable("none", {}), DriverConnectionError),
        (OperationTimedOut("slow"), QueryTimeoutError),
        (Unavailable("down", consistency=1, required_replicas=2, alive_replicas=1), ReplicaUnavailableError),
        (Unauthorized("nope"), AuthenticationError),
        (InvalidRequest("bad"), QueryExecutionError),
        (ValueError("other"), CasquatchError),
    ])
    def test_mapping(self, error, expected):
        translated = translate_driver_error(error, "save")
        assert type(translated) is expected
        assert translated.original_error is error

    def test_casquatch_errors_pass_through(self):
        error = FeatureDisabledError("search")
        assert translate_driver_error(error, "get_all_by_solr") is error

    def test_message_includes_cause(self):
        translated = translate_driver_error(InvalidRequest("unconfigured table"), "get_by_id")
        assert "get_by_id" in str(translated)
        assert "caused by InvalidRequest" in str(translated)

    def test_unavailable_details(self):
        error = Unavailable("down", consistency=1, required_replicas=2, alive_replicas=1)
        translated = translate_driver_error(error, "save")
        assert translated.required_replicas == 2
        assert translated.alive_replicas == 1
        assert "required=2, alive=1" in str(translated)

    def test_feature_disabled_message(self):
        assert str(FeatureDisabledError("search")) == "Feature 'search' is disabled"


# ============================================================================
# Structured Logging
# ============================================================================

@pytest.mark.unit
class TestStructuredLogging:

    def test_json_output_with_extra_fields(self):
        formatter = StructuredFormatter()
        record = logging.LogRecord("casquatch", logging.INFO, __file__, 1, "opened %s", ("west",), None)
        record.routing_key = "west"

        data = json.loads(formatter.format(record))

        assert data["message"] == "opened west"
        assert data["level"] == "INFO"
        assert data["routing_key"] == "west"
        assert "args" not in data

    def test_log_context_fields_and_nesting(self):
        formatter = StructuredFormatter()
        record = logging.LogRecord("casquatch", logging.INFO, __file__, 1, "routed", None, None)

        with log_context(operation="save", table="orders"):
            with log_context(table="customers"):
                data = json.loads(formatter.format(record))
            assert current_log_context() == {"operation": "save", "table": "orders"}

        assert data["operation"] == "save"
        assert data["table"] == "customers"
        assert current_log_context() == {}

    def test_exception_included(self):
        formatter = StructuredFormatter()
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            import sys
            record = logging.LogRecord("casquatch", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        data = json.loads(formatter.format(record))
        assert "RuntimeError: boom" in data["exception"]

    def test_performance_logger_success(self, caplog):
        logger = logging.getLogger("test.perf")
        with caplog.at_level(logging.DEBUG, logger="test.perf"):
            with PerformanceLogger("open_transport", logger=logger, routing_key="west") as perf:
                assert current_log_context()["operation"] == "open_transport"

        assert perf.duration_ms is not None
        assert current_log_context() == {}
        completed = [r for r in caplog.records if getattr(r, "event", None) == "operation_completed"]
        assert completed[0].routing_key == "west"

    def test_performance_logger_failure(self, caplog):
        logger = logging.getLogger("test.perf")
        with caplog.at_level(logging.ERROR, logger="test.perf"):
            with pytest.raises(ValueError):
                with PerformanceLogger("open_transport", logger=logger):
                    raise ValueError("boom")

        failed = [r for r in caplog.records if getattr(r, "event", None) == "operation_failed"]
        assert failed[0].error_type == "ValueError"

    @pytest.mark.asyncio
    async def test_performance_logger_async(self):
        logger = logging.getLogger("test.perf")
        async with PerformanceLogger("asave", logger=logger) as perf:
            pass
        assert perf.duration_ms >= 0

    def test_setup_production_logging(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_production_logging(level="WARNING", format="json")
            assert root.level == logging.WARNING
            assert isinstance(root.handlers[-1].formatter, StructuredFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


# ============================================================================
# Metrics
# ============================================================================

@pytest.mark.unit
class TestMetrics:

    def test_percentiles(self):
        tracker = PercentileTracker()
        for value in range(1, 101):
            tracker.record(float(value))

        stats = tracker.get_stats()
        assert stats["count"] == 100
        assert stats["min"] == 1.0
        assert stats["max"] == 100.0
        assert 49.0 <= stats["p50"] <= 51.0

    def test_single_sample(self):
        tracker = PercentileTracker()
        tracker.record(3.0)
        assert tracker.get_percentiles() == {"p50": 3.0, "p95": 3.0, "p99": 3.0}

    def test_record_operation_and_errors(self):
        metrics = EnhancedMetrics()
        metrics.record_operation("save", 1.0)
        metrics.record_operation("save", 2.0, success=False, error_type="QueryTimeoutError")

        stats = metrics.get_all_stats()
        assert stats["operations"]["by_type"] == {"save": 2}
        assert stats["errors"]["by_type"] == {"save": 1}
        assert stats["errors"]["by_error"] == {"QueryTimeoutError": 1}
        assert stats["errors"]["rate"] == 0.5

    def test_prometheus_export(self):
        metrics = EnhancedMetrics()
        metrics.record_operation("get_by_id", 1.5)
        metrics.record_cache_hit()

        text = metrics.export_prometheus()
        assert 'casquatch_operations_total{operation="get_by_id"} 1' in text
        assert "casquatch_routing_cache_hits_total 1" in text

    def test_reset(self):
        metrics = EnhancedMetrics()
        metrics.record_operation("save", 1.0)
        metrics.reset()
        assert metrics.get_all_stats()["operations"]["total"] == 0


# ============================================================================
# Tracing
# ============================================================================

@pytest.mark.unit
class TestTracer:

    def test_disabled_tracer_yields_none(self):
        tracer = Tracer(enabled=False)
        with tracer.span("casquatch.save") as span:
            assert span is None

    def test_span_records_error(self):
        from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

        exporter = InMemorySpanExporter()
        tracer = Tracer(exporter=exporter)
        with pytest.raises(RuntimeError):
            with tracer.span("casquatch.delete", {"table": "orders", "limit": None}):
                raise RuntimeError("boom")
        tracer.force_flush()

        (span,) = exporter.get_finished_spans()
        assert span.name == "casquatch.delete"
        assert span.attributes["table"] == "orders"
        assert "limit" not in span.attributes
        assert span.status.is_ok is False
        tracer.shutdown()
