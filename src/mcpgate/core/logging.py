"""Logging configuration for mcpgate.

Sets up structured logging with colour-coded console output for development
and JSON output for production. Every handler carries a
:class:`SecretRedactingFilter` so hosting credentials and bearer tokens never
reach a log sink, whatever path the message took to get there.

Log file management:
- Each process startup archives the previous log file with a timestamp suffix.
- Archived files older than the retention window are pruned at startup.
"""

import json
import logging
import os
import re
import socket
import sys
import threading
import traceback
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

from .config import get_settings_instance

REDACTED = "[REDACTED]"

# Patterns for secrets that must never be written to a log line
SECRET_PATTERNS = [
    r"apify_api_[A-Za-z0-9]{8,}",  # hosting platform API tokens
    r"Bearer\s+[A-Za-z0-9\-_\.=]+",  # Bearer tokens
    r"token=[A-Za-z0-9\-_\.]{8,}",  # tokens passed as query parameters
]

_STANDARD_RECORD_KEYS = frozenset(
    [
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
    ]
)

# Internal guard to prevent double configuration
_LOGGING_CONFIGURED = False

# Secrets registered at runtime (e.g. the credential of an in-flight deployment)
_registered_secrets: dict[str, int] = {}
_secrets_lock = threading.Lock()


def register_secret(value: str) -> None:
    """Redact ``value`` from every log line until :func:`unregister_secret` is called."""
    if value:
        with _secrets_lock:
            _registered_secrets[value] = _registered_secrets.get(value, 0) + 1


def unregister_secret(value: str) -> None:
    with _secrets_lock:
        remaining = _registered_secrets.get(value, 0) - 1
        if remaining > 0:
            _registered_secrets[value] = remaining
        else:
            _registered_secrets.pop(value, None)


def redact_text(text: str) -> str:
    """Replace known secret shapes and registered secrets in ``text``."""
    if not text:
        return text
    with _secrets_lock:
        secrets = sorted(_registered_secrets, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, REDACTED)
    for pattern in SECRET_PATTERNS:
        text = re.sub(pattern, REDACTED, text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Scrub secrets from the message, its arguments and string ``extra`` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            message = str(record.msg)
        record.msg = redact_text(message)
        record.args = None
        for key, value in list(record.__dict__.items()):
            if key not in _STANDARD_RECORD_KEYS and isinstance(value, str):
                setattr(record, key, redact_text(value))
        if record.exc_info and not record.exc_text:
            record.exc_text = redact_text("".join(traceback.format_exception(*record.exc_info)))
            record.exc_info = None
        elif record.exc_text:
            record.exc_text = redact_text(record.exc_text)
        return True


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_KEYS and value is not None
    }


class ColoredFormatter(logging.Formatter):
    """Custom colored formatter for human-readable logs."""

    # Color codes for different log levels
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors and extra fields."""
        level_color = self.COLORS.get(record.levelname, "") if self.use_colors else ""
        reset_color = self.COLORS["RESET"] if self.use_colors else ""

        timestamp = datetime.fromtimestamp(record.created, UTC).strftime("%Y-%m-%d %H:%M:%S")
        message = record.getMessage()

        # Only include short scalar extra fields
        extra_fields = [
            f"{key}={value}"
            for key, value in _extra_fields(record).items()
            if isinstance(value, (str, int, float, bool)) and len(str(value)) < 100
        ]

        log_line = f"{timestamp} - {level_color}{record.levelname}{reset_color} - {record.name} - {message}"
        if extra_fields:
            log_line += f" | {' '.join(extra_fields)}"

        if record.exc_info:
            log_line += f"\n{level_color}Exception:{reset_color}\n" + "".join(
                traceback.format_exception(*record.exc_info)
            )
        elif record.exc_text:
            log_line += f"\n{level_color}Exception:{reset_color}\n" + record.exc_text

        return redact_text(log_line)


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging (for production/monitoring)."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            exc_type = record.exc_info[0]
            log_data["exception"] = {
                "type": exc_type.__name__ if exc_type is not None else "Unknown",
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        elif record.exc_text:
            log_data["exception"] = {"traceback": record.exc_text}

        log_data.update(_extra_fields(record))

        return redact_text(json.dumps(log_data, default=str))


def _archive_previous_log(log_file_path: Path) -> None:
    if log_file_path.exists() and log_file_path.stat().st_size > 0:
        ts = datetime.now(UTC).strftime("%Y-%m-%d_%H-%M-%S")
        try:
            log_file_path.rename(f"{log_file_path}.{ts}")
        except OSError:
            pass  # worst case we append


def _cleanup_old_log_archives(log_dir: Path, prefix: str, retention_days: int) -> None:
    """Remove archived log files older than the retention window."""
    cutoff = datetime.now(UTC) - timedelta(days=retention_days)
    try:
        for entry in os.scandir(log_dir):
            if not entry.name.startswith(prefix) or not entry.is_file():
                continue
            date_part = entry.name[len(prefix) : len(prefix) + 10]
            try:
                file_date = datetime.strptime(date_part, "%Y-%m-%d").replace(tzinfo=UTC)
            except ValueError:
                continue  # not a date-suffixed file we manage
            if file_date < cutoff:
                os.unlink(entry.path)
    except OSError:
        pass


def setup_logging(force: bool = False) -> None:
    """Set up logging configuration for the gateway."""
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if _LOGGING_CONFIGURED and not force:
        return

    settings = get_settings_instance()

    use_colors = settings.environment == "development" and sys.stdout.isatty()
    formatter = JSONFormatter() if settings.log_format == "json" else ColoredFormatter(use_colors=use_colors)
    redactor = SecretRedactingFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redactor)
    handlers: list[logging.Handler] = [console_handler]

    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        os.makedirs(log_dir, exist_ok=True)
        # Include hostname in filename so replicas don't clobber each other
        log_file_path = log_dir / f"mcpgate_{socket.gethostname()}.log"
        _archive_previous_log(log_file_path)
        _cleanup_old_log_archives(log_dir, f"{log_file_path.name}.", settings.log_retention_days)
        file_handler = logging.FileHandler(log_file_path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redactor)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in handlers:
        root_logger.addHandler(handler)

    # Route uvicorn through our handlers
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uvicorn_log = logging.getLogger(name)
        uvicorn_log.handlers.clear()
        uvicorn_log.setLevel(getattr(logging, settings.log_level))
        uvicorn_log.propagate = True

    # Reduce noise from HTTP libraries; request URLs may carry tokens at DEBUG
    for name in ("httpx", "httpcore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("mcpgate").setLevel(getattr(logging, settings.log_level))

    get_logger(__name__).info(
        "Logging configured",
        extra={
            "log_level": settings.log_level,
            "log_format": settings.log_format,
            "environment": settings.environment,
        },
    )
    _LOGGING_CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``mcpgate`` namespace."""
    if name == "mcpgate" or name.startswith("mcpgate."):
        return logging.getLogger(name)
    return logging.getLogger(f"mcpgate.{name}")
