#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

Configures tracing for aiohttp client requests, sqlite3 calls and the main
pipeline spans. Spans are exported to Azure Monitor when an Application
Insights connection string is provided; otherwise they stay in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: feed-campaigns)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

Initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
import asyncio
import functools
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Azure Monitor exporter is optional; only used when a connection string is present
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _connection_string() -> Optional[str]:
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )
    if conn:
        return conn
    ikey = os.environ.get("APPLICATIONINSIGHTS_INSTRUMENTATIONKEY")
    return f"InstrumentationKey={ikey}" if ikey else None


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

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

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-campaigns")
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env

        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))
            trace.set_tracer_provider(provider)
        _provider = provider

        conn = _connection_string()
        if conn and _AZURE_AVAILABLE:
            try:
                provider.add_span_processor(
                    BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn))  # type: ignore
                )
                _logger.info("Telemetry initialized with Azure Monitor exporter (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry: failed to enable Azure exporter: %s", e)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s)", svc)
            if conn:
                _logger.warning("Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'")

        for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
            try:
                instrumentor.instrument()
            except Exception as e:  # instrumentation must never stop the app
                _logger.debug("Telemetry: %s not instrumented: %s", type(instrumentor).__name__, e)

        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    if _provider:
        try:
            _provider.shutdown()
        except Exception:
            pass


def get_tracer(name: str = "feed-campaigns"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable] = None,
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
        tracer = get_tracer(tracer_name or name.split(".")[0] or "feed-campaigns")

        def _set_attrs(span, args, kwargs):
            try:
                for k, v in (static_attrs or {}).items():
                    span.set_attribute(k, v)
                if callable(attr_from_args):
                    for k, v in (attr_from_args(*args, **kwargs) or {}).items():
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
