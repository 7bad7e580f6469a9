"""
Structured logging for the API and the workers.

Modules log through the standard library (``logging.getLogger(__name__)``
with ``extra={...}``); structlog's ProcessorFormatter renders those records
as JSON or console lines. Every line names the component that wrote it,
lines written while a worker runs a step also carry the job's identity,
and credential fields are masked before rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import UUID

import structlog
from opentelemetry import trace
from structlog.typing import EventDict, Processor, WrappedLogger

from renderqueue.config import Settings, get_settings

# Event fields whose values must never reach the log output
SECRET_FIELDS: frozenset[str] = frozenset(
    [
        "webhook_key",
        "webhookKey",
        "api_auth_token",
        "civitai_token",
        "authorization",
    ]
)
REDACTED = "***"

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS: dict[str, int] = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def add_trace_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add the current OpenTelemetry trace and span ids, when a span is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask webhook keys and API tokens passed as event fields."""
    for key in SECRET_FIELDS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def add_component(component: str, service_name: str) -> Processor:
    """
    Build a processor stamping the service and component on each event.

    Args:
        component: "api" or "worker".
        service_name: Deployment-wide service name.
    """
    def processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("component", component)
        return event_dict
    return processor


def setup_logging(settings: Settings | None = None, component: str = "api") -> None:
    """
    Configure structured logging for the process.

    Args:
        settings: Optional settings override.
        component: Name of the process kind, added to every line.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        add_component(component, settings.otel_service_name),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
    ]

    if settings.log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


@contextmanager
def job_context(
    job_uuid: UUID | str,
    workflow: str,
    status: str,
    **fields: Any,
) -> Iterator[None]:
    """
    Tag every log line written inside the block with the job being run.

    Processors log without passing the job around; the worker wraps each
    step in this block. The previous context is restored on exit.
    """
    with structlog.contextvars.bound_contextvars(
        job_uuid=str(job_uuid),
        workflow=workflow,
        job_status=status,
        **fields,
    ):
        yield
