"""
Structured logging configuration.

Every process (API, notification worker, maintenance worker) calls
`setup_logging` once at start-up with its role; events then carry the service
identity, the configured payment provider and the process role, plus whatever
request ids or worker ids were bound through structlog contextvars.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from fulfillment_core.config import Settings, get_settings


class AppContext:
    """structlog processor stamping events with the service identity."""

    def __init__(self, settings: Settings, process: str) -> None:
        self.fields = {
            "app_name": settings.app_name,
            "app_env": settings.app_env,
            "payment_provider": settings.payment_provider,
            "process": process,
        }

    def __call__(
        self, logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        # Values bound by the caller win.
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def build_processors(settings: Settings, process: str) -> list[Any]:
    """
    Processor chain for the given settings.

    Debug mode renders coloured key/value lines for a terminal; otherwise each
    event is a single JSON object.
    """
    renderer = (
        structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        AppContext(settings, process),
        renderer,
    ]


def setup_logging(process: str = "api", settings: Settings | None = None) -> None:
    """
    Configure structured logging for one process.

    Args:
        process: Role of this process (api, notifications, maintenance)
        settings: Settings to read level and debug mode from
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings, process),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if settings.debug:
        # structlog already rendered the line
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(timestamp)s %(level)s %(name)s %(message)s",
                rename_fields={"timestamp": "@timestamp", "name": "logger"},
            )
        )
    root_logger.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        debug=settings.debug,
    )
