"""
Structured logging setup.

structlog renders key/value events as JSON; the stdlib root logger gets a
JSON handler too so uvicorn and SQLAlchemy records share the same format.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger.json import JsonFormatter

from .config import settings


def add_app_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict["app_name"] = settings.app_name
    event_dict["env"] = settings.env
    return event_dict


def setup_logging(level: str = None, json_output: bool = None) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; existing root handlers are replaced.
    """
    level = (level or settings.log_level).upper()
    json_output = settings.log_json if json_output is None else json_output

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    # quiet chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info("logging_configured", log_level=level, env=settings.env)
