"""
Logging infrastructure for tablezure.

Provides structured logging with JSON formatting and redaction of account
keys, SAS signatures and SharedKey authorization headers.
"""

import json
import logging
import logging.handlers
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Client request id (x-ms-client-request-id) of the operation being executed
client_request_id: ContextVar[Optional[str]] = ContextVar("client_request_id", default=None)

REDACTED = "***REDACTED***"


class SensitiveDataFilter(logging.Filter):
    """Filter to redact secrets from log messages."""

    PATTERNS = [
        (re.compile(r"(Authorization[\"']?\s*[:=]\s*[\"']?)(?:SharedKey(?:Lite)?\s+)?[^\s\"',]+", re.IGNORECASE), r"\1" + REDACTED),
        (re.compile(r"(SharedKey(?:Lite)?\s+[^:\s]+:)\S+", re.IGNORECASE), r"\1" + REDACTED),
        (re.compile(r"(AccountKey=)[^;\s]+", re.IGNORECASE), r"\1" + REDACTED),
        (re.compile(r"(SharedAccessSignature=)[^;&\s]+", re.IGNORECASE), r"\1" + REDACTED),
        (re.compile(r"(sig=)[^;&\s]+", re.IGNORECASE), r"\1" + REDACTED),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact sensitive data from log record."""
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        return True


def redact(text: str) -> str:
    for pattern, replacement in SensitiveDataFilter.PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }

        if request_id := client_request_id.get():
            log_data["client_request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "context"):
            log_data["context"] = record.context

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter."""

    def __init__(self):
        fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if request_id := client_request_id.get():
            text += f" [client_request_id={request_id}]"
        return text


def setup_logging(
    level: str = "INFO",
    format_type: str = "text",
    log_file: Optional[str] = None,
    rotation_size: str = "10MB",
    rotation_count: int = 5,
    module_levels: Optional[Dict[str, str]] = None,
    logger_name: str = "tablezure",
) -> logging.Logger:
    """
    Configure the tablezure logger hierarchy.

    Args:
        level: Default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format ("json" or "text")
        log_file: Optional file path for log output
        rotation_size: Size limit for log rotation (e.g., "10MB")
        rotation_count: Number of rotated log files to keep
        module_levels: Optional dict of module-specific log levels
                       e.g., {"tablezure.transport.retry": "DEBUG"}
        logger_name: Logger to configure; the library never touches the root logger

    Returns:
        The configured logger
    """
    base_logger = logging.getLogger(logger_name)
    base_logger.setLevel(getattr(logging, level.upper()))
    base_logger.handlers.clear()
    base_logger.propagate = False

    formatter = JSONFormatter() if format_type == "json" else TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SensitiveDataFilter())
    base_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=_parse_size(rotation_size),
            backupCount=rotation_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(SensitiveDataFilter())
        base_logger.addHandler(file_handler)

        base_logger.info(f"Logging to file: {log_file} (rotation: {rotation_size}, count: {rotation_count})")

    if module_levels:
        for module_name, module_level in module_levels.items():
            logging.getLogger(module_name).setLevel(getattr(logging, module_level.upper()))

    base_logger.debug(f"Logging configured: level={level}, format={format_type}")
    return base_logger


def apply_logging_config(config: Any, logger_name: str = "tablezure") -> logging.Logger:
    """Configure logging from a ``LoggingConfig``."""
    return setup_logging(
        level=getattr(config.level, "value", config.level),
        format_type=config.format,
        log_file=config.file,
        rotation_size=config.rotation_size,
        rotation_count=config.rotation_count,
        module_levels=config.module_levels,
        logger_name=logger_name,
    )


def _parse_size(size_str: str) -> int:
    """
    Parse size string to bytes.

    Args:
        size_str: Size string (e.g., "10MB", "1GB")
    """
    size_str = size_str.upper().strip()

    # Check longer suffixes first to avoid matching 'B' in 'MB'
    multipliers = [
        ("GB", 1024 ** 3),
        ("MB", 1024 ** 2),
        ("KB", 1024),
        ("B", 1),
    ]

    for suffix, multiplier in multipliers:
        if size_str.endswith(suffix):
            number = size_str[:-len(suffix)].strip()
            return int(float(number) * multiplier)

    return int(size_str)


def set_client_request_id(request_id: Optional[str]) -> Any:
    """Bind a client request id to the current context; returns the reset token."""
    return client_request_id.set(request_id)


def reset_client_request_id(token: Any) -> None:
    client_request_id.reset(token)


def log_with_context(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """
    Log a message with additional context.

    Args:
        logger: Logger instance
        level: Log level
        message: Log message
        **context: Additional context to include in log
    """
    extra = {"context": context} if context else {}
    logger.log(level, message, extra=extra)
