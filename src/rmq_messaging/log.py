"""Loguru configuration.

Two output modes, chosen by ``LOG_FORMAT``:

- ``json``: one JSON object per line on stdout, broker context such as
  ``host``, ``queue`` or ``consumer_tag`` flattened into the object
- ``text``: coloured single-line records, prefixed with the consumer tag
  while a delivery is being handled

Records from aio-pika, aiormq and uvicorn go through the stdlib ``logging``
module and are forwarded to Loguru.
"""

import json
import logging
import sys
from typing import Any

from loguru import logger

from rmq_messaging.config import Settings, get_settings


_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> <level>{level: <7}</level> "
    "{consumer}<cyan>{name}:{line}</cyan> <level>{message}</level>\n{exception}"
)


def text_formatter(record: dict) -> str:
    tag = record["extra"].get("consumer_tag")
    consumer = f"<magenta>[{tag}]</magenta> " if tag else ""
    return _TEXT_FORMAT.replace("{consumer}", consumer)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value) if not isinstance(value, str) else value
    return value


def serialize_record(record: dict) -> str:
    """Render a Loguru record as a single JSON line."""
    entry: dict[str, Any] = {
        "ts": record["time"].isoformat(),
        "level": record["level"].name,
        "msg": record["message"],
        "module": f"{record['name']}:{record['function']}:{record['line']}",
    }
    entry.update({key: _jsonable(value) for key, value in record["extra"].items()})

    exception = record["exception"]
    if exception is not None and exception.type is not None:
        entry["error_type"] = exception.type.__name__
        entry["error"] = str(exception.value)

    return json.dumps(entry)


def json_sink(message) -> None:
    sys.stdout.write(serialize_record(message.record) + "\n")
    sys.stdout.flush()


class InterceptHandler(logging.Handler):
    """Forward stdlib log records to Loguru, keeping the caller's location."""

    def emit(self, record: logging.LogRecord) -> None:
        level: str | int
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        depth = 2
        frame = logging.currentframe()
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(settings: Settings | None = None) -> None:
    """Replace Loguru's default sink with the configured ones."""
    settings = settings or get_settings()
    level = settings.log_level
    as_json = settings.log_format == "json"

    logger.remove()

    if as_json:
        logger.add(json_sink, level=level, backtrace=False, diagnose=False)
    else:
        logger.add(sys.stdout, format=text_formatter, level=level, colorize=True)

    if settings.log_file:
        logger.add(
            settings.log_file,
            level=level,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            serialize=True,
            enqueue=True,
        )

    # Library records below WARNING are dropped
    logging.basicConfig(handlers=[InterceptHandler()], level=logging.WARNING, force=True)

    logger.debug(
        "Logging configured",
        level=level,
        format=settings.log_format,
        log_file=settings.log_file,
    )
