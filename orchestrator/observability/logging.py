"""Logging setup for the orchestrator.

Operators get colourised single-line records on a terminal; log shippers
(Loki, ELK) get newline-delimited JSON. Records logged through a
``RunLoggerAdapter`` carry the run id, and any ``unit_id`` or ``stage``
passed as ``extra`` is kept as a top-level JSON field so a run can be
filtered unit by unit.
"""

import json
import logging
import os
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

CONTEXT_FIELDS = ("run_id", "unit_id", "stage")
CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore", "kubernetes", "urllib3", "asyncio")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("true", "1", "yes")


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colours the level name when stderr is a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        if not sys.stderr.isatty():
            return super().format(record)

        # Copy so file handlers sharing the record see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, "")
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure the root logger.

    ``LOG_LEVEL`` and ``LOG_JSON`` in the environment win over the
    arguments. Existing root handlers are replaced.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON instead of coloured text on stderr
        log_file: Optional file that receives JSON records as well
    """
    log_level = getattr(logging, os.getenv("LOG_LEVEL", level).upper(), logging.INFO)
    json_format = json_format or _env_flag("LOG_JSON")

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(
        JSONFormatter()
        if json_format
        else ConsoleFormatter(fmt=CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    )
    handlers.append(console)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class RunLoggerAdapter(logging.LoggerAdapter):
    """Prefixes messages with the short run id and records the full one.

    Usage:
        log = RunLoggerAdapter(logger, run.run_id)
        log.info("Deploying", extra={"unit_id": "redis"})
    """

    def __init__(self, logger: logging.Logger, run_id: str):
        super().__init__(logger, {"run_id": run_id})
        self.run_id = run_id

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(kwargs.get("extra") or {}), "run_id": self.run_id}
        return f"[{self.run_id[:8]}] {msg}", kwargs
