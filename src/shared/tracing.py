"""Distributed tracing service.

Tracing is process-wide, so it is modelled as an explicit collaborator with
initialize/shutdown hooks. A disabled service hands out non-recording spans
and never touches the network.
"""

from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

from shared.config import TracingSettings
from shared.logging import get_logger

logger = get_logger(__name__)


class TracingService:
    """Owns the tracer provider and creates request spans."""

    def __init__(self, settings: Optional[TracingSettings] = None) -> None:
        self.settings = settings or TracingSettings()
        self._provider = None
        self._tracer: trace.Tracer = trace.NoOpTracer()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def initialize(self) -> None:
        """Install the exporter pipeline when tracing is enabled."""
        if not self.settings.enabled:
            logger.info("Tracing disabled")
            return

        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

        resource = Resource.create({
            "service.name": self.settings.service_name,
            "service.version": self.settings.version,
            "deployment.environment": self.settings.environment,
        })
        provider = TracerProvider(
            resource=resource,
            sampler=ParentBased(TraceIdRatioBased(self.settings.sampling_rate)),
        )
        exporter = OTLPSpanExporter(
            endpoint=self.settings.endpoint_address,
            insecure=True,
            timeout=int(self.settings.timeout),
        )
        provider.add_span_processor(BatchSpanProcessor(
            exporter,
            schedule_delay_millis=int(self.settings.batch_timeout * 1000),
        ))

        self._provider = provider
        self._tracer = provider.get_tracer(self.settings.service_name, self.settings.version)
        logger.info(
            "Tracing initialized",
            endpoint=self.settings.endpoint_address,
            sampling_rate=self.settings.sampling_rate
        )

    def shutdown(self) -> None:
        """Flush pending spans and release the exporter."""
        if self._provider is None:
            return
        self._provider.shutdown()
        self._provider = None
        self._tracer = trace.NoOpTracer()
        logger.info("Tracing shut down")

    @contextmanager
    def start_span(self, name: str, current: bool = True, **attributes: Any) -> Iterator[Span]:
        """
        Start a span; attribute values must be primitives.

        Args:
            name: Span name
            current: Make the span current for the enclosed block. Async
                generators pass False since they resume in other contexts.
            **attributes: Initial span attributes
        """
        if current:
            with self._tracer.start_as_current_span(name, record_exception=False) as span:
                self._set_attributes(span, attributes)
                yield span
            return

        span = self._tracer.start_span(name)
        self._set_attributes(span, attributes)
        try:
            yield span
        except Exception as e:
            self.record_error(span, e)
            raise
        finally:
            span.end()

    @staticmethod
    def _set_attributes(span: Span, attributes: dict[str, Any]) -> None:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)

    @staticmethod
    def add_attribute(span: Span, key: str, value: Any) -> None:
        if value is not None:
            span.set_attribute(key, value)

    @staticmethod
    def record_error(span: Span, error: BaseException) -> None:
        """Annotate a span with an error attribute and the recorded exception."""
        span.set_attribute("error", str(error))
        span.record_exception(error)
        span.set_status(Status(StatusCode.ERROR, str(error)))
