"""
Per-invocation resource limits.

Limits applied around a single snippet evaluation:
- Memory: RLIMIT_AS soft limit, only ever lowered relative to the ambient value
  and shared by overlapping invocations through one process-wide lease
- Wall clock: ITIMER_REAL + SIGALRM in the main thread, a ``sys.settrace``
  deadline in any other thread (signals are only delivered to the main thread)

``ResourceLimiter.apply()`` is a context manager. The previous SIGALRM
handler, any pending interval timer and the previous trace function are
restored on every exit path; the ambient memory limit is restored when the
last overlapping invocation exits.
"""

from __future__ import annotations

import logging
import resource
import signal
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Protocol

from shortcode_exec.core.exceptions import ExecutionTimeoutError

logger = logging.getLogger(__name__)

UNLIMITED = -1


def effective_memory_limit(ambient: Optional[int], configured: Optional[int]) -> int:
    """
    Memory ceiling to install for one invocation.

    The configured limit may only lower the ambient one. ``UNLIMITED`` (or
    None) on either side means "no limit from that side".
    """
    if configured is None or configured < 0:
        return UNLIMITED if ambient is None or ambient < 0 else ambient
    if ambient is None or ambient < 0:
        return configured
    return min(ambient, configured)


class SharedMemoryLimit:
    """
    RLIMIT_AS bookkeeping shared by overlapping invocations.

    The address-space limit belongs to the whole process, so invocations
    running on different threads cannot each save and restore it. The
    first entry records the ambient value and the last one out puts it
    back. In between, entries may only lower the installed limit, so
    overlapping invocations all run under the lowest limit requested.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._depth = 0
        self._ambient = UNLIMITED

    @property
    def depth(self) -> int:
        return self._depth

    def acquire(self, backend: LimitBackend, configured: Optional[int]) -> tuple[int, int]:
        """
        Enter one invocation.

        Returns:
            (limit seen on entry, limit installed for the invocation)
        """
        with self._lock:
            current = backend.get_memory_limit()
            if self._depth == 0:
                self._ambient = current
            self._depth += 1

            target = effective_memory_limit(current, configured)
            if target == current:
                return current, current
            try:
                backend.set_memory_limit(target)
            except (OSError, ValueError) as e:
                logger.warning(
                    f"Failed to set memory limit ({type(e).__name__}): {e}",
                    extra={"event": "sandbox.mem_fail", "limit": target},
                )
                return current, current
            return current, backend.get_memory_limit()

    def release(self, backend: LimitBackend) -> None:
        """Leave one invocation; the last one out restores the ambient limit."""
        with self._lock:
            self._depth -= 1
            if self._depth > 0:
                return
            if backend.get_memory_limit() == self._ambient:
                return
            try:
                backend.set_memory_limit(self._ambient)
            except (OSError, ValueError) as e:
                logger.error(
                    f"Failed to restore memory limit ({type(e).__name__}): {e}",
                    extra={"event": "sandbox.mem_restore_fail", "limit": self._ambient},
                )


class LimitBackend(Protocol):
    memory_lease: SharedMemoryLimit

    def get_memory_limit(self) -> int:
        ...

    def set_memory_limit(self, limit: int) -> None:
        ...

    def arm_timeout(self, seconds: float, on_timeout: Callable[[], None]) -> Callable[[], None]:
        """Start the wall-clock timer; returns a callable that disarms it."""
        ...


_PROCESS_MEMORY_LEASE = SharedMemoryLimit()


class PosixLimitBackend:
    """Limits backed by ``resource``, ``signal`` and ``sys.settrace``."""

    # One lease per process, whichever instance an invocation uses
    memory_lease = _PROCESS_MEMORY_LEASE

    def get_memory_limit(self) -> int:
        soft, _hard = resource.getrlimit(resource.RLIMIT_AS)
        if soft == resource.RLIM_INFINITY or soft < 0:
            return UNLIMITED
        return int(soft)

    def set_memory_limit(self, limit: int) -> None:
        # Soft limit only; the hard limit is never touched
        _soft, hard = resource.getrlimit(resource.RLIMIT_AS)
        value = resource.RLIM_INFINITY if limit < 0 else int(limit)
        if hard != resource.RLIM_INFINITY and hard >= 0:
            if value == resource.RLIM_INFINITY or value > hard:
                value = hard
        resource.setrlimit(resource.RLIMIT_AS, (value, hard))

    def arm_timeout(self, seconds: float, on_timeout: Callable[[], None]) -> Callable[[], None]:
        if threading.current_thread() is threading.main_thread():
            return self._arm_alarm(seconds, on_timeout)
        return self._arm_trace_deadline(seconds, on_timeout)

    def _arm_alarm(self, seconds: float, on_timeout: Callable[[], None]) -> Callable[[], None]:
        def timeout_handler(signum: int, frame: Any) -> None:
            on_timeout()

        previous_handler = signal.signal(signal.SIGALRM, timeout_handler)
        previous_delay, previous_interval = signal.setitimer(signal.ITIMER_REAL, seconds)
        armed_at = time.monotonic()

        def disarm() -> None:
            signal.setitimer(signal.ITIMER_REAL, 0)
            signal.signal(
                signal.SIGALRM,
                previous_handler if previous_handler is not None else signal.SIG_DFL,
            )
            if previous_delay > 0:
                remaining = previous_delay - (time.monotonic() - armed_at)
                signal.setitimer(signal.ITIMER_REAL, max(remaining, 0.001), previous_interval)

        return disarm

    def _arm_trace_deadline(
        self, seconds: float, on_timeout: Callable[[], None]
    ) -> Callable[[], None]:
        deadline = time.monotonic() + seconds
        previous_trace = sys.gettrace()

        def deadline_tracer(frame: Any, event: str, arg: Any) -> Any:
            if time.monotonic() >= deadline:
                on_timeout()
            return deadline_tracer

        sys.settrace(deadline_tracer)

        def disarm() -> None:
            sys.settrace(previous_trace)

        return disarm


@dataclass(frozen=True)
class LimitSnapshot:
    """Limits observed and installed for one invocation"""
    previous_memory: int
    effective_memory: int
    timeout_seconds: float


class ResourceLimiter:
    """
    Installs memory and wall-clock limits for the duration of a block.

    Usage:
        limiter = ResourceLimiter(max_memory_bytes=..., max_execution_time=30)
        with limiter.apply():
            evaluator.evaluate(...)
    """

    def __init__(
        self,
        max_memory_bytes: Optional[int],
        max_execution_time: float,
        backend: Optional[LimitBackend] = None,
    ):
        self.max_memory_bytes = max_memory_bytes
        self.max_execution_time = max_execution_time
        self.backend = backend or PosixLimitBackend()

    def _on_timeout(self) -> None:
        raise ExecutionTimeoutError(
            f"Maximum execution time of {self.max_execution_time:g} seconds exceeded",
            details={"limit_seconds": self.max_execution_time},
        )

    @contextmanager
    def apply(self) -> Iterator[LimitSnapshot]:
        backend = self.backend
        lease = backend.memory_lease
        previous_memory, installed = lease.acquire(backend, self.max_memory_bytes)

        disarm: Optional[Callable[[], None]] = None
        try:
            disarm = backend.arm_timeout(self.max_execution_time, self._on_timeout)
            yield LimitSnapshot(
                previous_memory=previous_memory,
                effective_memory=installed,
                timeout_seconds=self.max_execution_time,
            )
        finally:
            if disarm is not None:
                disarm()
            lease.release(backend)
