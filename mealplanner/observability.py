from __future__ import annotations

import logging
import sys
from typing import Any, List, MutableMapping

import structlog
from structlog import dev
from structlog.types import Processor

from .config import Settings

_LOGGING_CONFIGURED = False
_SENTRY_CONFIGURED = False

SERVICE_NAME = "mealplanner"


def _service_stamper(service: str) -> Processor:
    def stamp(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict

    return stamp


def build_pre_chain(service: str = SERVICE_NAME) -> List[Processor]:
    """Processors applied to stdlib records, so planner log lines carry the bound request context."""
    return [
        structlog.contextvars.merge_contextvars,
        _service_stamper(service),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging(json_logs: bool, level: str = "INFO", service: str = SERVICE_NAME) -> None:
    """Route stdlib and structlog output through one renderer, JSON when ``json_logs`` is set."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: List[Processor] = [
        structlog.stdlib.filter_by_level,
        *build_pre_chain(service),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_logs:
        renderer: Processor = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = dev.ConsoleRenderer(colors=False)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=build_pre_chain(service))
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # The OpenAI and HTTP clients are chatty at INFO.
    for logger_name in ("httpx", "httpcore", "openai"):
        logging.getLogger(logger_name).setLevel(max(log_level, logging.WARNING))

    _LOGGING_CONFIGURED = True


def bind_request_context(**values: str) -> None:
    """Attach per-call identifiers (request id, diet key) to every log line and Sentry event."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)
    if _SENTRY_CONFIGURED:
        import sentry_sdk

        for key, value in values.items():
            sentry_sdk.set_tag(key, value)


def init_sentry(settings: Settings) -> None:
    """Initialise Sentry, capturing breadcrumbs from logging if configured."""
    global _SENTRY_CONFIGURED
    if _SENTRY_CONFIGURED:
        return

    dsn = getattr(settings, "sentry_dsn", None)
    if not dsn:
        return

    try:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration
    except ImportError:  # pragma: no cover
        logging.getLogger(__name__).warning("sentry-sdk not installed; skipping Sentry init")
        return

    sentry_logging = LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[sentry_logging],
        send_default_pii=False,
    )

    sentry_sdk.set_tag("service", SERVICE_NAME)
    _SENTRY_CONFIGURED = True
