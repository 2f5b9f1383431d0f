#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests, sqlite3 calls and
the key ingestion spans (fetch, parse, entry processing, scheduling, hub
subscription). Spans stay in-process unless a console exporter is requested.

Environment variables:
  - OTEL_SERVICE_NAME (default: feed-ingest)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_EXPORTER_CONSOLE=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import asyncio
import atexit
import functools
import logging
import os
import threading
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and library instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-ingest")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))
            trace.set_tracer_provider(provider)

        if os.environ.get("OTEL_EXPORTER_CONSOLE", "false").lower() == "true":
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            _logger.info("Telemetry initialized with console exporter (service=%s)", svc)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s)", svc)
        _provider = provider

        for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
            try:
                if not instrumentor.is_instrumented_by_opentelemetry:
                    instrumentor.instrument()
            except Exception as e:
                # Never fail startup on instrumentation
                _logger.debug("Telemetry: could not instrument %s: %s", type(instrumentor).__name__, e)

        _initialized = True

        def _shutdown():
            if _provider:
                _provider.shutdown()

        atexit.register(_shutdown)


def get_tracer(name: str = "feed-ingest"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "feed-ingest"
        tracer = get_tracer(tname)

        def _set_attrs(span, args, kwargs):
            try:
                if static_attrs:
                    for k, v in static_attrs.items():
                        span.set_attribute(k, v)
                if callable(attr_from_args):
                    for k, v in (attr_from_args(*args, **kwargs) or {}).items():
                        if v is not None:
                            span.set_attribute(k, v)
            except Exception:
                # Never break the app on attribute setting
                pass

        def _record(span, exc):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise

        return _w

    return _decorator
