# shared/logging_setup.py
"""
Logging configuration shared by service entry points.

Log records fan out to a list of independently configured sinks (console,
hourly rotating file, TCP stream). Each sink is a ``logging.Handler``, so a
failing sink reports through its own ``handleError`` and the remaining sinks
keep receiving records.
"""
import json
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Attributes present on every LogRecord; anything else came in through ``extra``.
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

NOISY_LOGGERS = ("confluent_kafka", "httpx", "httpcore", "uvicorn.access")


@dataclass
class LoggingSettings:
    service_name: str
    level: int = logging.INFO
    console_enabled: bool = False
    file_enabled: bool = False
    file_base_path: str = "/tmp"
    stream_enabled: bool = False
    stream_host: str = "localhost"
    stream_port: int = 5000
    file_backup_count: int = 14 * 24  # hourly rotation, 14 days


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def __init__(self, service_name: str, static_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service_name = service_name
        self.static_fields = static_fields if static_fields is not None else {}

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        entry.update(self.static_fields)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


class JsonSocketHandler(logging.handlers.SocketHandler):
    """
    Ship newline-delimited JSON over TCP.

    SocketHandler already reconnects with exponential backoff and drops records
    while the peer is unreachable; only the wire format changes here.
    """

    def makePickle(self, record: logging.LogRecord) -> bytes:
        return (self.format(record) + "\n").encode("utf-8")


# Shared with the formatter of every sink; filled in once the HTTP listener is bound.
_server_info: Dict[str, Any] = {"host": None, "port": None}


def set_server_info(host: Optional[str], port: Optional[int]):
    _server_info["host"] = host
    _server_info["port"] = port


def build_handlers(settings: LoggingSettings) -> List[logging.Handler]:
    """Create one handler per enabled sink, defaulting to the console."""
    handlers: List[logging.Handler] = []

    if settings.console_enabled:
        handlers.append(logging.StreamHandler(sys.stdout))

    if settings.file_enabled:
        try:
            os.makedirs(settings.file_base_path, exist_ok=True)
            handlers.append(logging.handlers.TimedRotatingFileHandler(
                os.path.join(settings.file_base_path, f"{settings.service_name}.log"),
                when="H",
                backupCount=settings.file_backup_count,
                encoding="utf-8",
                delay=True,
            ))
        except OSError as e:
            print(f"Error in file logging sink, continuing without it: {e}", file=sys.stderr)

    if settings.stream_enabled:
        handlers.append(JsonSocketHandler(settings.stream_host, settings.stream_port))

    if not handlers:
        handlers.append(logging.StreamHandler(sys.stdout))

    formatter = JsonFormatter(settings.service_name, _server_info)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(settings: LoggingSettings) -> List[logging.Handler]:
    """Install the configured sinks on the root logger, replacing any previous ones."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handlers = build_handlers(settings)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(settings.level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handlers


def shutdown_logging():
    """Flush and close every sink, each isolated from the others."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        try:
            handler.flush()
            handler.close()
        except Exception as e:
            print(f"Error closing log sink {handler!r}: {e}", file=sys.stderr)
        root.removeHandler(handler)
