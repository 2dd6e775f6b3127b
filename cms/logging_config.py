"""
Logging configuration.

Centralises handler, format and per-module level setup so every module
can simply use ``logging.getLogger(__name__)``.

Formats
-------
- ``simple``: level, logger and message.
- ``detailed``: adds timestamp, file, line and function.
- ``json``: one JSON object per line (``JsonFormatter``).
"""
import json
import logging

from cms.config import settings

SIMPLE_FORMAT = "%(levelname)s - %(name)s - %(message)s"

DETAILED_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(filename)s:%(lineno)d] - %(funcName)s() - %(message)s"
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "module": record.filename,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


_FORMATS = {
    "simple": SIMPLE_FORMAT,
    "detailed": DETAILED_FORMAT,
}

# Third-party libraries are noisy at INFO.
MODULE_LOG_LEVELS = {
    "cms": "INFO",
    "cms.api": "INFO",
    "sqlalchemy": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "sqlalchemy.pool": "WARNING",
    "httpx": "WARNING",
    "asyncio": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
}


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure the root logger with a console handler.

    Args:
        log_level: Override ``settings.LOG_LEVEL``.
        log_format: Override ``settings.LOG_FORMAT`` (simple, detailed, json).
    """
    level = (log_level or settings.LOG_LEVEL).upper()
    fmt = log_format or settings.LOG_FORMAT
    if fmt == "json":
        formatter: logging.Formatter = JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    else:
        formatter = logging.Formatter(_FORMATS.get(fmt, DETAILED_FORMAT), datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates on reload.
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    for module_name, module_level in MODULE_LOG_LEVELS.items():
        logging.getLogger(module_name).setLevel(module_level)

    root_logger.info("Logging configured: level=%s, format=%s", level, fmt)
