"""
Logging setup for the fleet controller

Records carry the fleet context (node, group, task) bound with
``fleet_context``, so heartbeat and sync logs can be filtered per node.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

CONTEXT_FIELDS = ("node_id", "group_id", "task")

# Libraries that log every query, request or SSH packet at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "paramiko", "httpx")

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s%(fleet)s: %(message)s"

_fleet_context: ContextVar[Dict[str, Any]] = ContextVar("fleet_context", default={})


@contextmanager
def fleet_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Bind fleet fields to every record logged inside the block."""
    merged = {**_fleet_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _fleet_context.set(merged)
    try:
        yield merged
    finally:
        _fleet_context.reset(token)


def current_context() -> Dict[str, Any]:
    return dict(_fleet_context.get())


class FleetContextFilter(logging.Filter):
    """Copies the bound fleet context onto the record"""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _fleet_context.get()
        record.fleet_context = context
        record.fleet = "".join(
            f" [{key}={context[key]}]" for key in CONTEXT_FIELDS if key in context
        )
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        entry.update(getattr(record, "fleet_context", None) or {})
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable lines, coloured by level on a terminal"""

    LEVEL_COLOURS = {
        logging.DEBUG: "\033[2m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }

    def __init__(self, colour: bool = False):
        super().__init__(TEXT_FORMAT)
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "fleet"):
            record.fleet = ""
        line = super().format(record)
        prefix = self.LEVEL_COLOURS.get(record.levelno) if self.colour else None
        return f"{prefix}{line}\033[0m" if prefix else line


class LoggerManager:
    """Installs the root handlers once per process"""

    def __init__(self):
        self.configured = False

    def setup_logging(
        self,
        level: str = "INFO",
        format_type: str = "json",
        log_file: Optional[Path] = None,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
    ) -> None:
        if self.configured:
            return

        numeric_level = logging.getLevelName(level.upper())
        if not isinstance(numeric_level, int):
            numeric_level = logging.INFO

        context_filter = FleetContextFilter()
        root = logging.getLogger()
        root.setLevel(numeric_level)
        for handler in list(root.handlers):
            root.removeHandler(handler)

        console = logging.StreamHandler(sys.stdout)
        if format_type == "json":
            console.setFormatter(JSONFormatter())
        else:
            console.setFormatter(ConsoleFormatter(colour=sys.stdout.isatty()))
        console.addFilter(context_filter)
        root.addHandler(console)

        if log_file:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
            # files are always machine-readable
            file_handler.setFormatter(JSONFormatter())
            file_handler.addFilter(context_filter)
            root.addHandler(file_handler)

        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        self.configured = True


logger_manager = LoggerManager()


def setup_logging(
    level: str = "INFO",
    format_type: str = "json",
    log_file: Optional[Path] = None,
) -> None:
    logger_manager.setup_logging(level=level, format_type=format_type, log_file=log_file)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
