"""
Shortcode Exec - JSON log output

Every module logs through ``logging.getLogger(__name__)`` with an
``extra={"event": ...}`` payload; this module only decides where those
records go and how they are serialized.

Two entry points:
- ``setup_logging`` for the application loggers
- ``setup_audit_logging`` for the execution audit sink, which writes JSON
  lines to a rotating file when a path is configured

Usage:
    from shortcode_exec.core.logging_config import setup_audit_logging

    audit = setup_audit_logging(log_file="/var/log/shortcode_exec/audit.json")
    audit.warning("Shortcode audit", extra={"event": "shortcode.audit"})
"""

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pythonjsonlogger import jsonlogger

AUDIT_LOGGER = "shortcode_exec.audit"
DEFAULT_FORMAT = "%(timestamp)s %(level)s %(name)s %(message)s"
ROTATE_BYTES = 10 * 1024 * 1024
ROTATE_BACKUPS = 5


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter carrying deployment context.

    Each line gets ``timestamp``, ``level``, ``environment``, ``service``
    and a ``source`` object (function, module, line) next to the record's
    own ``extra`` fields.
    """

    def __init__(
        self,
        fmt: str = DEFAULT_FORMAT,
        timestamp: bool = True,
        environment: Optional[str] = None,
        service_name: str = "shortcode_exec",
    ):
        super().__init__(fmt=fmt)
        self.add_timestamp = timestamp
        self.environment = environment or os.environ.get("SHORTCODE_EXEC_ENV", "production")
        self.service_name = service_name

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if self.add_timestamp and not log_record.get("timestamp"):
            log_record["timestamp"] = _utc_now()
        log_record.setdefault("level", None)
        log_record["level"] = log_record["level"] or record.levelname.lower()

        log_record.update(
            environment=self.environment,
            service=self.service_name,
            source={
                "function": record.funcName,
                "module": record.module,
                "line": record.lineno,
            },
        )


def _file_handler(log_file: str, max_bytes: int, backup_count: int) -> logging.Handler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )


def setup_logging(
    name: str = "shortcode_exec",
    log_file: Optional[str] = None,
    level: str = "INFO",
    environment: str = "production",
    enable_console: bool = True,
    enable_file: bool = True,
    max_bytes: int = ROTATE_BYTES,
    backup_count: int = ROTATE_BACKUPS,
) -> logging.Logger:
    """
    Attach JSON handlers to the logger ``name``, replacing any it had.

    The console handler writes to stderr. The file handler is only added
    when ``enable_file`` is set and ``log_file`` is given; a file that cannot
    be opened leaves the logger console-only with a warning.
    """
    numeric_level = _resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handlers: List[logging.Handler] = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stderr))

    file_error: Optional[OSError] = None
    if enable_file and log_file:
        try:
            handlers.append(_file_handler(log_file, max_bytes, backup_count))
        except OSError as e:
            file_error = e

    formatter = CustomJsonFormatter(
        environment=environment,
        service_name=name.split(".")[0],
    )
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if file_error is not None:
        logger.warning(
            f"Could not open log file {log_file}: {file_error}",
            extra={"event": "logging.file_unavailable"},
        )
    return logger


def get_logger(name: str, log_file: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Return ``name``, configuring it on first use only."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    return setup_logging(name=name, log_file=log_file, level=level)


def setup_audit_logging(
    log_file: Optional[str] = None,
    environment: str = "production",
) -> logging.Logger:
    """Audit sink: the file when a path is given, stderr otherwise."""
    return setup_logging(
        name=AUDIT_LOGGER,
        log_file=log_file,
        level="INFO",
        environment=environment,
        enable_console=log_file is None,
        enable_file=log_file is not None,
    )
