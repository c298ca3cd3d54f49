"""
Tests for tracing and metrics helpers.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
import structlog

from faceauth import observability
from faceauth.config import Settings
from faceauth.models.internal_models import AuthOutcome, AuthResult
from faceauth.observability import record_verification_metrics, trace_function


class TestTraceFunction:

    @pytest.mark.asyncio
    async def test_passthrough_without_tracer(self):
        @trace_function("op")
        async def operation(value):
            return value * 2

        with patch.object(observability, "tracer", None):
            assert await operation(21) == 42

    @pytest.mark.asyncio
    async def test_records_auth_outcome(self):
        tracer = MagicMock()
        span = tracer.start_as_current_span.return_value.__enter__.return_value

        @trace_function("face_verification")
        async def verify():
            return AuthResult(success=False, message="no", outcome=AuthOutcome.MISMATCH)

        with patch.object(observability, "tracer", tracer):
            await verify()

        tracer.start_as_current_span.assert_called_once_with("face_verification")
        span.set_attribute.assert_any_call("auth.outcome", "mismatch")
        span.set_attribute.assert_any_call("success", False)

    def test_sync_exception_recorded(self):
        tracer = MagicMock()
        span = tracer.start_as_current_span.return_value.__enter__.return_value

        @trace_function()
        def broken():
            raise RuntimeError("boom")

        with patch.object(observability, "tracer", tracer):
            with pytest.raises(RuntimeError):
                broken()

        span.record_exception.assert_called_once()
        span.set_attribute.assert_any_call("error.type", "RuntimeError")


class TestMetrics:

    def test_noop_before_setup(self):
        with patch.object(observability, "verification_counter", None):
            record_verification_metrics(success=True, processing_time=0.1, distance=0.2, outcome="verified")

    def test_records_distance(self):
        counter = MagicMock()
        duration = MagicMock()
        histogram = MagicMock()

        with patch.object(observability, "verification_counter", counter), \
             patch.object(observability, "operation_duration", duration), \
             patch.object(observability, "verification_distance_histogram", histogram):
            record_verification_metrics(success=False, processing_time=1.5, distance=0.9, outcome="mismatch")

        counter.add.assert_called_once_with(1, {"operation": "verification", "success": "false", "outcome": "mismatch"})
        duration.record.assert_called_once()
        histogram.record.assert_called_once_with(0.9, {"success": "false"})


class TestSetup:

    def test_configure_logging(self):
        with patch("faceauth.observability.structlog.configure") as mock_configure, \
             patch("faceauth.observability.logging.basicConfig") as mock_basic:
            observability.configure_logging("debug")

        mock_basic.assert_called_once()
        assert mock_basic.call_args.kwargs["level"] == logging.DEBUG
        processors = mock_configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_setup_observability_creates_instruments(self):
        with patch.object(observability, "tracer", None), \
             patch.object(observability, "meter", None), \
             patch.object(observability, "operation_duration", None), \
             patch.object(observability, "enrollment_counter", None), \
             patch.object(observability, "verification_counter", None), \
             patch.object(observability, "verification_distance_histogram", None), \
             patch("faceauth.observability.trace.set_tracer_provider") as set_tracer_provider, \
             patch("faceauth.observability.metrics.set_meter_provider") as set_meter_provider, \
             patch("faceauth.observability.LoggingInstrumentor") as instrumentor:
            observability.setup_observability(service_name="faceauth-test")

            assert observability.tracer is not None
            assert observability.enrollment_counter is not None
            assert observability.verification_distance_histogram is not None

        set_tracer_provider.assert_called_once()
        set_meter_provider.assert_called_once()
        instrumentor.return_value.instrument.assert_called_once_with(set_logging_format=False)
        assert observability.tracer is None

    def test_init_observability_runs_once(self):
        settings = Settings(_env_file=None, log_level="WARNING", otlp_endpoint="http://collector:4317")

        with patch.object(observability, "_initialized", False), \
             patch.object(observability, "configure_logging") as mock_logging, \
             patch.object(observability, "setup_observability") as mock_setup:
            observability.init_observability(settings)
            observability.init_observability(settings)

        mock_logging.assert_called_once_with("WARNING")
        mock_setup.assert_called_once_with(otlp_endpoint="http://collector:4317")
