"""
Structured logging configuration.

structlog events are rendered to JSON and handed to the stdlib root
logger, whose single handler formats records with python-json-logger.
Customer phone numbers are masked before rendering.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from mpesa_bridge.config import Settings, get_settings

Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]

PHONE_FIELDS = frozenset({"phone", "phone_number", "msisdn"})
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def mask_phone(value: Any) -> Any:
    """254712345678 -> 2547****5678"""
    text = str(value)
    if len(text) < 8:
        return value
    return f"{text[:4]}{'*' * (len(text) - 8)}{text[-4:]}"


def mask_phone_numbers(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    for key in PHONE_FIELDS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def add_app_context(settings: Settings) -> Processor:
    """Processor stamping every event with the app and Daraja environment."""
    context = {
        "app_name": settings.app_name,
        "app_env": settings.app_env,
        "daraja_env": settings.daraja_env,
    }

    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    In debug mode events are rendered for the console and phone numbers are
    left readable; otherwise every line is JSON.
    """
    settings = settings or get_settings()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        add_app_context(settings),
    ]
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend([mask_phone_numbers, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    root_logger.handlers = [_json_handler()]

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        debug=settings.debug,
    )
