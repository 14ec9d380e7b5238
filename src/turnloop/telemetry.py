"""OpenTelemetry spans around runs, turns, tool calls and lane tasks.

Tracing is off unless an exporter is chosen. ``TURNLOOP_TRACE_EXPORTER``
selects ``stdout`` or ``otlp``; anything else leaves the no-op tracer in
place, so the span helpers below are always safe to call.
"""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import NoOpTracer, Span, Tracer

logger = logging.getLogger(__name__)

EXPORTERS = ("none", "stdout", "otlp")
_FALSEY = {"0", "false", "no", "off"}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    service_name: str = "turnloop"
    enabled: bool = True
    exporter: str = "none"
    otlp_endpoint: str = "http://localhost:4317"

    @classmethod
    def from_env(cls) -> TelemetryConfig:
        """Build from ``TURNLOOP_TRACING``, ``TURNLOOP_TRACE_EXPORTER`` and
        ``TURNLOOP_OTLP_ENDPOINT``."""
        defaults = cls()
        enabled = os.environ.get("TURNLOOP_TRACING", "1").strip().lower() not in _FALSEY
        exporter = os.environ.get("TURNLOOP_TRACE_EXPORTER", defaults.exporter)
        return cls(
            enabled=enabled,
            exporter=exporter.strip().lower(),
            otlp_endpoint=os.environ.get("TURNLOOP_OTLP_ENDPOINT", defaults.otlp_endpoint),
        )


def _clean_attributes(attributes: Mapping[str, Any] | None) -> dict[str, Any]:
    # OTel rejects None values with a warning per attribute.
    if not attributes:
        return {}
    return {k: v for k, v in attributes.items() if v is not None}


# ---------------------------------------------------------------------------
# TurnloopTracer
# ---------------------------------------------------------------------------


class TurnloopTracer:
    """Owns one OTel ``TracerProvider`` and hands out spans from it.

    Until :meth:`init` succeeds every span comes from a ``NoOpTracer``.
    Passing *exporter* overrides the configured one, which lets callers
    collect spans in memory.
    """

    def __init__(
        self,
        config: TelemetryConfig | None = None,
        exporter: SpanExporter | None = None,
    ) -> None:
        self.config = config or TelemetryConfig()
        self._exporter = exporter
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    @property
    def enabled(self) -> bool:
        return self._provider is not None

    def init(self) -> None:
        if self._provider is not None or not self.config.enabled:
            return
        processor = self._span_processor()
        if processor is None:
            return
        provider = TracerProvider(
            resource=Resource.create({"service.name": self.config.service_name})
        )
        provider.add_span_processor(processor)
        self._provider = provider
        self._tracer = provider.get_tracer("turnloop")
        logger.debug("Tracing enabled for %s", self.config.service_name)

    def _span_processor(self) -> SpanProcessor | None:
        if self._exporter is not None:
            return SimpleSpanProcessor(self._exporter)

        kind = self.config.exporter
        if kind == "stdout":
            return SimpleSpanProcessor(ConsoleSpanExporter())
        if kind == "otlp":
            try:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                    OTLPSpanExporter,
                )
            except ImportError:
                logger.warning("OTLP exporter not installed; install turnloop[otlp]")
                return None
            return BatchSpanProcessor(
                OTLPSpanExporter(endpoint=self.config.otlp_endpoint, insecure=True)
            )
        if kind != "none":
            logger.warning("Unknown trace exporter %r; expected one of %s", kind, EXPORTERS)
        return None

    @contextlib.contextmanager
    def span(self, name: str, attributes: Mapping[str, Any] | None = None) -> Iterator[Span]:
        """Open *name* as the current span; attributes set to None are left out."""
        with self._tracer.start_as_current_span(
            name, attributes=_clean_attributes(attributes)
        ) as current:
            yield current

    def record_event(self, name: str, attributes: Mapping[str, Any] | None = None) -> None:
        """Attach an event to the current span when one is recording."""
        current = trace.get_current_span()
        if current.is_recording():
            current.add_event(name, _clean_attributes(attributes))

    def shutdown(self) -> None:
        provider, self._provider = self._provider, None
        self._tracer = NoOpTracer()
        if provider is not None:
            provider.shutdown()


# ---------------------------------------------------------------------------
# Process-wide tracer
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: TurnloopTracer | None = None


def get_tracer() -> TurnloopTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = TurnloopTracer()
    return _DEFAULT_TRACER


def configure_tracing(
    config: TelemetryConfig | None = None,
    exporter: SpanExporter | None = None,
) -> TurnloopTracer:
    """Replace the process-wide tracer with one built from *config*."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is not None:
        _DEFAULT_TRACER.shutdown()
    _DEFAULT_TRACER = TurnloopTracer(config, exporter)
    _DEFAULT_TRACER.init()
    return _DEFAULT_TRACER


# ---------------------------------------------------------------------------
# Span helpers
# ---------------------------------------------------------------------------


def trace_agent_run(run_id: str, session_key: str) -> contextlib.AbstractContextManager[Span]:
    return get_tracer().span("agent/run", {"run.id": run_id, "session.key": session_key})


def trace_agent_turn(turn: int) -> contextlib.AbstractContextManager[Span]:
    return get_tracer().span("agent/turn", {"agent.turn": turn})


def trace_tool_call(tool_name: str) -> contextlib.AbstractContextManager[Span]:
    return get_tracer().span("tool/call", {"tool.name": tool_name})


def trace_lane_task(lane: str) -> contextlib.AbstractContextManager[Span]:
    return get_tracer().span("lane/task", {"lane.name": lane})
