"""
Structured logging.

structlog builds the event dict; the final processor hands it to the
standard library as ``extra`` fields, and python-json-logger writes one
flat JSON object per line:

    {"logger": "zap_checkout.domain.session", "message": "order_session.receipt_applied",
     "timestamp": "...", "level": "info", "app_name": "zap-checkout", "order_id": "..."}

Spoofed receipts carry ``security_event=True`` so alerting can filter
them from routine rejections.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger
from structlog.typing import EventDict, Processor

from zap_checkout.config import Settings, get_settings

NOISY_LOGGERS = ("httpx", "httpcore", "websockets")


def app_context(settings: Settings) -> Processor:
    """Processor stamping every event with the configured app name and environment."""

    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


def build_processors(settings: Settings) -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        app_context(settings),
        structlog.stdlib.render_to_log_kwargs,
    ]


def json_handler(stream: Any = None) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter("%(name)s %(message)s", rename_fields={"name": "logger"})
    )
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """
    Route structlog through a single JSON handler on the root logger.

    Replaces any handlers already on the root logger.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # cached loggers ignore later reconfiguration
        cache_logger_on_first_use=settings.is_production,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(json_handler())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info("logging_configured", log_level=settings.log_level)


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
