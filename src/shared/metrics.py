"""Prometheus metrics for LLM completions and tool usage."""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class GatewayMetrics:
    """
    Metric families exposed on /metrics.

    Each instance owns its registry so tests can create as many as they
    like without duplicate-registration errors.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.completion_duration = Histogram(
            "llm_completion_duration_seconds",
            "Duration of LLM completion calls",
            ["provider", "model", "status"],
            registry=self.registry,
        )
        self.completion_in_flight = Gauge(
            "llm_completion_in_flight",
            "LLM completion calls currently running",
            ["provider", "model"],
            registry=self.registry,
        )
        self.tokens_input = Counter(
            "llm_tokens_input_total",
            "Input tokens consumed",
            ["provider", "model"],
            registry=self.registry,
        )
        self.tokens_output = Counter(
            "llm_tokens_output_total",
            "Output tokens produced",
            ["provider", "model"],
            registry=self.registry,
        )
        self.tools_enabled = Counter(
            "llm_tools_enabled_total",
            "Turns that offered tools to the model",
            ["provider", "model"],
            registry=self.registry,
        )
        self.tool_usage = Counter(
            "llm_tool_usage_total",
            "Tool invocations requested by the model",
            ["tool", "status"],
            registry=self.registry,
        )

    def observe_completion(
        self,
        provider: str,
        model: str,
        status: str,
        duration_seconds: float,
        input_tokens: int = 0,
        output_tokens: int = 0
    ) -> None:
        self.completion_duration.labels(provider, model, status).observe(duration_seconds)
        if input_tokens:
            self.tokens_input.labels(provider, model).inc(input_tokens)
        if output_tokens:
            self.tokens_output.labels(provider, model).inc(output_tokens)

    def render(self) -> bytes:
        """Text exposition of every metric in the registry."""
        return generate_latest(self.registry)
