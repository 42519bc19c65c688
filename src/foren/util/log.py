from __future__ import annotations

import json
import logging
from datetime import datetime

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "foren"
LOG_FORMATS: set[str] = {"text", "json"}
_EXTRA_FIELDS = ("node", "workload")
_NOISY_LOGGERS = ("kubernetes", "urllib3", "websocket")


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "time": datetime.fromtimestamp(record.created).astimezone().isoformat(
                timespec="seconds"
            ),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def new_logger(
    verbose: bool,
    log_format: str = "text",
    *,
    debug: bool = False,
    console: Console | None = None,
) -> logging.Logger:
    if log_format not in LOG_FORMATS:
        raise ValueError(f"log format must be one of {sorted(LOG_FORMATS)}")
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler: logging.Handler
    if log_format == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            log_time_format="%H:%M:%S",
            rich_tracebacks=debug,
        )
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose or debug else logging.INFO)
    logger.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)
    return logger
