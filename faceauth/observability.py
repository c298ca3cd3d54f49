"""
Logging, tracing and metrics setup for the face authentication package.
"""

import inspect
import logging
from functools import wraps
from typing import Callable, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from faceauth.config import Settings

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
operation_duration: Optional[metrics.Histogram] = None
enrollment_counter: Optional[metrics.Counter] = None
verification_counter: Optional[metrics.Counter] = None
verification_distance_histogram: Optional[metrics.Histogram] = None

_initialized = False


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure stdlib logging and structlog with JSON output.

    Args:
        log_level: Root log level name
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_observability(
    service_name: str = "faceauth",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global operation_duration, enrollment_counter, verification_counter, verification_distance_histogram

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    # Set up tracing
    trace_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    if enable_console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    # Set up metrics
    metric_readers = []

    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000  # 30 seconds
            )
        )

    if enable_console_export:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000  # 60 seconds
            )
        )

    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    meter = metrics.get_meter(__name__)

    operation_duration = meter.create_histogram(
        name="faceauth_operation_duration_seconds",
        description="Duration of enrollment and verification pipelines",
        unit="s"
    )

    enrollment_counter = meter.create_counter(
        name="faceauth_enrollments_total",
        description="Total number of face enrollments",
        unit="1"
    )

    verification_counter = meter.create_counter(
        name="faceauth_verifications_total",
        description="Total number of face verifications",
        unit="1"
    )

    verification_distance_histogram = meter.create_histogram(
        name="faceauth_verification_distance",
        description="Descriptor distances measured during verification",
        unit="1"
    )

    # Inject trace ids into stdlib log records
    LoggingInstrumentor().instrument(set_logging_format=False)

    logger.info("Observability setup completed")


def init_observability(settings: Settings) -> None:
    """
    Configure logging and telemetry from settings.

    Runs once per process; later calls are ignored.
    """
    global _initialized
    if _initialized:
        return

    configure_logging(settings.log_level)
    setup_observability(otlp_endpoint=settings.otlp_endpoint)
    _initialized = True


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            span_name = operation_name or f"{func.__module__}.{func.__name__}"

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_attribute("success", False)
                    span.set_attribute("error.type", type(e).__name__)
                    raise

                # Auth results carry their own outcome
                outcome = getattr(result, "outcome", None)
                if outcome is not None:
                    span.set_attribute("auth.outcome", getattr(outcome, "value", str(outcome)))
                    span.set_attribute("success", bool(getattr(result, "success", False)))
                else:
                    span.set_attribute("success", True)
                return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            span_name = operation_name or f"{func.__module__}.{func.__name__}"

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    span.record_exception(e)
                    span.set_attribute("success", False)
                    span.set_attribute("error.type", type(e).__name__)
                    raise
                span.set_attribute("success", True)
                return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_enrollment_metrics(success: bool, processing_time: float, outcome: str) -> None:
    """
    Record metrics for enrollment operations.

    Args:
        success: Whether enrollment was successful
        processing_time: Time taken for enrollment in seconds
        outcome: Outcome label of the attempt
    """
    if enrollment_counter is None or operation_duration is None:
        return

    attributes = {
        "operation": "enrollment",
        "success": str(success).lower(),
        "outcome": outcome
    }

    enrollment_counter.add(1, attributes)
    operation_duration.record(processing_time, attributes)


def record_verification_metrics(
    success: bool,
    processing_time: float,
    distance: Optional[float],
    outcome: str
) -> None:
    """
    Record metrics for verification operations.

    Args:
        success: Whether verification was successful
        processing_time: Time taken for verification in seconds
        distance: Descriptor distance (if a comparison ran)
        outcome: Outcome label of the attempt
    """
    if verification_counter is None or operation_duration is None:
        return

    attributes = {
        "operation": "verification",
        "success": str(success).lower(),
        "outcome": outcome
    }

    verification_counter.add(1, attributes)
    operation_duration.record(processing_time, attributes)

    if distance is not None and verification_distance_histogram is not None:
        verification_distance_histogram.record(distance, {"success": str(success).lower()})

