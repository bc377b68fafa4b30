"""Logging and tracing setup for the CLI and embedding applications."""

from __future__ import annotations
import sys

from loguru import logger
from opentelemetry import trace

_tracing_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Replace loguru's default sink with a stderr sink at the chosen level."""
    logger.remove()
    level = "DEBUG" if verbose else "WARNING"
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {message}",
        backtrace=verbose,
        diagnose=False,
    )


def configure_tracing(console: bool = True) -> None:
    """Install an SDK tracer provider; spans are no-ops until this runs."""
    global _tracing_configured
    if _tracing_configured:
        return
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

    provider = TracerProvider()
    if console:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))
    trace.set_tracer_provider(provider)
    _tracing_configured = True


def get_tracer(name: str = "agentscript"):
    return trace.get_tracer(name)
