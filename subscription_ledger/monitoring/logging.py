"""
Structured logging for the ledger, relayer and workers.

structlog renders each event as JSON and hands it to the stdlib root logger,
whose python-json-logger formatter wraps it with timestamp, level and logger
name. Request-scoped values bound with structlog.contextvars (subscriber,
sweep number, tx_ref) are merged into every event.
"""
import logging
import sys
from typing import Any, Callable, List, Optional

import structlog
from pythonjsonlogger.json import JsonFormatter

from subscription_ledger.config import Settings, get_settings

EventDict = dict[str, Any]
Processor = Callable[[Any, str, EventDict], EventDict]

# chatty third-party loggers held at WARNING
QUIET_LOGGERS = ("asyncio", "tenacity")


def app_context(settings: Settings) -> Processor:
    """Build a processor stamping events with the deployment these settings describe."""
    context = {
        "app_name": settings.app_name,
        "app_env": settings.app_env,
        "ledger_owner": settings.owner_address,
    }

    def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_app_context


def build_processors(settings: Settings) -> List[Processor]:
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
        app_context(settings),
        structlog.processors.JSONRenderer(),
    ]


def json_handler(stream: Any = None) -> logging.Handler:
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "@timestamp",
                "levelname": "level",
                "name": "logger",
            },
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Replaces any handlers already on the root logger, so calling it twice
    does not duplicate output.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(json_handler())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_name=settings.app_name,
        app_env=settings.app_env,
    )
