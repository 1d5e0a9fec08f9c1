"""Structured logging for the automation workers.

Every record carries the service name and environment. Records emitted
inside ``workflow_log_context()`` also carry the account and instance
they concern, so one account's history can be pulled out of a shared
worker log. Account credentials (auth tokens, proxies, API keys) are
masked before rendering.

Workers and scripts call ``setup_logging()`` once at process start.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, WrappedLogger

from app.config import Settings, get_settings

REDACTED = "***"
SENSITIVE_KEYS = frozenset({"auth_token", "api_key", "proxy", "authorization", "x-api-key"})


def add_service_context(settings: Settings):
    """Processor stamping ``service`` and ``environment`` on each record."""
    service = settings.APP_NAME.lower().replace(" ", "-")

    def processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        event_dict.setdefault("environment", settings.ENVIRONMENT)
        return event_dict

    return processor


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential fields, including inside nested account snapshots."""
    for key, value in event_dict.items():
        event_dict[key] = _redact(key, value)
    return event_dict


def _redact(key: Any, value: Any) -> Any:
    if isinstance(key, str) and key.lower() in SENSITIVE_KEYS and value:
        return REDACTED
    if isinstance(value, dict):
        return {k: _redact(k, v) for k, v in value.items()}
    return value


def shared_processors(settings: Settings) -> list:
    """Processors applied to structlog and stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        add_service_context(settings),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


@contextmanager
def workflow_log_context(
    account_id: str,
    instance_id: Optional[str] = None,
    **extra: Any,
) -> Iterator[None]:
    """Bind ``account_id``/``instance_id`` to every record logged in the block."""
    values = {"account_id": account_id, **extra}
    if instance_id:
        values["instance_id"] = instance_id
    with structlog.contextvars.bound_contextvars(**values):
        yield


def setup_logging() -> None:
    """Configure structlog on top of the stdlib root logger.

    Development, or ``LOG_FORMAT=text``, renders colored console lines;
    everything else renders JSON lines for the log shipper.
    """
    settings = get_settings()
    processors = shared_processors(settings)

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )
    for name in ("aiosqlite", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
