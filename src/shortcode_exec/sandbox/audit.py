"""
Execution Audit Log

Records every terminal outcome of a shortcode invocation (and every
management change) for security monitoring:
- Structured entry written to the ``shortcode_exec.audit`` logger
- Bounded in-memory history with query helpers
- Observer hook for other components

Recording is disabled unless ``enable_execution_log`` is set, which by
default follows the SHORTCODE_EXEC_DEBUG flag. ``record`` never raises.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from shortcode_exec.core.config import ConfigSource, SecurityConfig, resolve_config
from shortcode_exec.core.logging_config import AUDIT_LOGGER, setup_audit_logging
from shortcode_exec.sandbox.permissions import Actor

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = AUDIT_LOGGER
UNKNOWN_IP = "unknown"

_TAGS = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")
_WHITESPACE = re.compile(r"\s{2,}")


def clean_message(message: Any) -> str:
    """Strip markup and control characters from an audit message."""
    text = _TAGS.sub("", str(message or ""))
    text = _CONTROL_CHARS.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def public_ip(address: Optional[str]) -> str:
    """Return the address if it is a valid public IP, else ``unknown``."""
    if not address:
        return UNKNOWN_IP
    try:
        ip = ipaddress.ip_address(address.strip())
    except ValueError:
        return UNKNOWN_IP
    return str(ip) if ip.is_global else UNKNOWN_IP


@dataclass(frozen=True)
class AuditEntry:
    """One audited outcome"""
    timestamp: float
    shortcode_name: str
    status: str
    user_id: Any = None
    user_ip: str = UNKNOWN_IP
    message: str = ""
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AuditSubscriber = Callable[[AuditEntry], None]


class AuditLogger:
    """
    Audit sink for shortcode activity.

    Args:
        config: SecurityConfig, provider or zero-argument callable; read on
            every record so toggling the log takes effect without a restart
        actor_provider: Returns the current actor when ``record`` is not
            given one explicitly
        max_memory_entries: Size of the in-memory history
    """

    def __init__(
        self,
        config: ConfigSource = None,
        actor_provider: Optional[Callable[[], Optional[Actor]]] = None,
        max_memory_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self.actor_provider = actor_provider
        self.entries: Deque[AuditEntry] = deque(maxlen=max_memory_entries)
        self._clock = clock
        self._subscribers: List[AuditSubscriber] = []
        self._lock = threading.Lock()
        self._sink_path: Optional[str] = None
        self._sink = logging.getLogger(AUDIT_LOGGER_NAME)

    def subscribe(self, handler: AuditSubscriber) -> Callable[[], None]:
        """Register a handler called with each recorded entry; returns an unsubscribe callable."""
        with self._lock:
            self._subscribers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe

    def record(
        self,
        name: str,
        status: str,
        message: str = "",
        context: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> Optional[AuditEntry]:
        """
        Record one outcome. Returns the entry, or None when logging is off.

        Failures are logged and swallowed so they never reach the caller.
        """
        try:
            config = resolve_config(self._config)
            if not config.enable_execution_log:
                return None

            if actor is None and self.actor_provider is not None:
                actor = self.actor_provider()

            entry = AuditEntry(
                timestamp=self._clock(),
                shortcode_name=str(name),
                status=str(status),
                user_id=actor.user_id if actor is not None else None,
                user_ip=public_ip(actor.ip_address if actor is not None else None),
                message=clean_message(message),
                context=dict(context or {}),
            )

            with self._lock:
                self.entries.append(entry)
                subscribers = list(self._subscribers)

            self._write(entry, config)
            self._notify(entry, subscribers)
            return entry
        except Exception as e:
            logger.error(
                f"Failed to record audit entry: {type(e).__name__}: {e}",
                extra={"event": "audit.record_failed", "shortcode_name": str(name)},
            )
            return None

    def _write(self, entry: AuditEntry, config: SecurityConfig) -> None:
        if config.audit_log_path and config.audit_log_path != self._sink_path:
            with self._lock:
                self._sink = setup_audit_logging(log_file=config.audit_log_path)
                self._sink_path = config.audit_log_path

        level = logging.INFO if entry.status == "success" else logging.WARNING
        self._sink.log(
            level,
            f"Shortcode audit: name={entry.shortcode_name} status={entry.status}",
            extra={
                "event": "shortcode.audit",
                "shortcode_name": entry.shortcode_name,
                "status": entry.status,
                "user_id": entry.user_id,
                "user_ip": entry.user_ip,
                # "message" is reserved on LogRecord
                "audit_message": entry.message,
                "context": entry.context,
            },
        )

    def _notify(self, entry: AuditEntry, subscribers: List[AuditSubscriber]) -> None:
        for handler in subscribers:
            try:
                handler(entry)
            except Exception as e:
                logger.warning(
                    f"Audit subscriber {handler!r} failed: {type(e).__name__}: {e}",
                    extra={"event": "audit.subscriber_failed"},
                )

    def get_entries(
        self,
        shortcode_name: Optional[str] = None,
        status: Optional[str] = None,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
        limit: int = 1000,
    ) -> List[AuditEntry]:
        """Query recorded entries, newest first"""
        with self._lock:
            filtered = list(self.entries)

        if shortcode_name:
            filtered = [e for e in filtered if e.shortcode_name == shortcode_name]

        if status:
            filtered = [e for e in filtered if e.status == status]

        if start_time:
            filtered = [e for e in filtered if e.timestamp >= start_time]

        if end_time:
            filtered = [e for e in filtered if e.timestamp <= end_time]

        filtered.sort(key=lambda e: e.timestamp, reverse=True)
        return filtered[:limit]

    def get_suspicious_activity(
        self,
        shortcode_name: str,
        threshold: int = 10,
        window_seconds: float = 3600,
    ) -> List[AuditEntry]:
        """Blocked or failed entries in the window, if at least ``threshold`` of them."""
        recent = self.get_entries(
            shortcode_name=shortcode_name,
            start_time=self._clock() - window_seconds,
        )
        failures = [e for e in recent if e.status in ("blocked", "error")]
        if len(failures) >= threshold:
            return failures
        return []

    def clear(self) -> None:
        with self._lock:
            self.entries.clear()
