"""
Tests for per-invocation resource limits
"""

import resource
import signal
import sys
import threading
import time

import pytest

from shortcode_exec.core.exceptions import ExecutionTimeoutError
from shortcode_exec.sandbox.resource_limits import (
    UNLIMITED,
    PosixLimitBackend,
    ResourceLimiter,
    SharedMemoryLimit,
    effective_memory_limit,
)

from conftest import FakeLimitBackend

MB = 1024 * 1024


def run_overlapping(first, second):
    """
    Run two limited blocks on separate threads. The first enters, then the
    second; the first leaves while the second is still inside.

    Returns the memory limit the second block saw after the first had left.
    """
    first_in = threading.Event()
    second_in = threading.Event()
    first_out = threading.Event()
    seen = {}

    def run_first():
        try:
            with first.apply():
                first_in.set()
                second_in.wait(5)
        finally:
            first_out.set()

    def run_second():
        with second.apply():
            second_in.set()
            first_out.wait(5)
            seen["memory"] = second.backend.get_memory_limit()

    threads = [threading.Thread(target=run_first), threading.Thread(target=run_second)]
    threads[0].start()
    first_in.wait(5)
    threads[1].start()
    for thread in threads:
        thread.join(10)
    return seen.get("memory")


class TestEffectiveMemoryLimit:
    """Configured memory may only lower the ambient limit"""

    def test_lower_configured_wins(self):
        assert effective_memory_limit(64 * MB, 32 * MB) == 32 * MB

    def test_higher_configured_keeps_ambient(self):
        assert effective_memory_limit(16 * MB, 32 * MB) == 16 * MB

    def test_unlimited_ambient_takes_configured(self):
        assert effective_memory_limit(UNLIMITED, 32 * MB) == 32 * MB
        assert effective_memory_limit(None, 32 * MB) == 32 * MB

    def test_no_configured_limit_keeps_ambient(self):
        assert effective_memory_limit(16 * MB, None) == 16 * MB
        assert effective_memory_limit(UNLIMITED, UNLIMITED) == UNLIMITED


class TestResourceLimiter:
    def test_lowers_and_restores_memory(self):
        backend = FakeLimitBackend(memory=64 * MB)
        limiter = ResourceLimiter(32 * MB, 30, backend=backend)

        with limiter.apply() as snapshot:
            assert backend.memory == 32 * MB
            assert snapshot.previous_memory == 64 * MB
            assert snapshot.effective_memory == 32 * MB

        assert backend.memory == 64 * MB
        assert backend.memory_history == [32 * MB, 64 * MB]

    def test_never_raises_memory(self):
        backend = FakeLimitBackend(memory=16 * MB)
        limiter = ResourceLimiter(32 * MB, 30, backend=backend)

        with limiter.apply() as snapshot:
            assert backend.memory == 16 * MB
            assert snapshot.effective_memory == 16 * MB

        assert backend.memory_history == []

    def test_timer_always_armed_and_disarmed(self):
        backend = FakeLimitBackend(memory=16 * MB)
        limiter = ResourceLimiter(32 * MB, 2.5, backend=backend)

        with limiter.apply():
            assert backend.active_timers == 1

        assert backend.armed == [2.5]
        assert backend.active_timers == 0

    def test_restores_on_exception(self):
        backend = FakeLimitBackend(memory=64 * MB)
        limiter = ResourceLimiter(32 * MB, 30, backend=backend)

        with pytest.raises(ZeroDivisionError):
            with limiter.apply():
                1 / 0

        assert backend.memory == 64 * MB
        assert backend.active_timers == 0

    def test_timeout_handler_raises(self):
        backend = FakeLimitBackend(memory=64 * MB, expire_immediately=True)
        limiter = ResourceLimiter(32 * MB, 3, backend=backend)

        with pytest.raises(ExecutionTimeoutError) as exc_info:
            with limiter.apply():
                pass

        assert "3 seconds" in str(exc_info.value)
        assert exc_info.value.kind == "timeout"
        assert backend.memory == 64 * MB

    def test_set_failure_is_tolerated(self):
        class RefusingBackend(FakeLimitBackend):
            def set_memory_limit(self, limit):
                raise ValueError("not allowed")

        backend = RefusingBackend(memory=64 * MB)
        with ResourceLimiter(32 * MB, 30, backend=backend).apply() as snapshot:
            assert snapshot.effective_memory == 64 * MB
        assert backend.active_timers == 0


class TestSharedMemoryLimit:
    """Overlapping invocations share one process-wide limit"""

    def test_blocks_leaving_out_of_order(self):
        backend = FakeLimitBackend(memory=64 * MB)
        first = ResourceLimiter(32 * MB, 30, backend=backend).apply()
        second = ResourceLimiter(16 * MB, 30, backend=backend).apply()

        first.__enter__()
        snapshot = second.__enter__()
        assert snapshot.previous_memory == 32 * MB
        assert backend.memory == 16 * MB

        first.__exit__(None, None, None)
        assert backend.memory == 16 * MB

        second.__exit__(None, None, None)
        assert backend.memory == 64 * MB
        assert backend.memory_history == [32 * MB, 16 * MB, 64 * MB]
        assert backend.memory_lease.depth == 0

    def test_later_higher_limit_keeps_lower_one(self):
        backend = FakeLimitBackend(memory=64 * MB)
        first = ResourceLimiter(16 * MB, 30, backend=backend).apply()
        second = ResourceLimiter(32 * MB, 30, backend=backend).apply()

        first.__enter__()
        assert second.__enter__().effective_memory == 16 * MB
        first.__exit__(None, None, None)
        second.__exit__(None, None, None)

        assert backend.memory_history == [16 * MB, 64 * MB]

    def test_threads_restore_ambient(self):
        backend = FakeLimitBackend(memory=64 * MB)
        seen = run_overlapping(
            ResourceLimiter(32 * MB, 30, backend=backend),
            ResourceLimiter(16 * MB, 30, backend=backend),
        )

        assert seen == 16 * MB
        assert backend.memory == 64 * MB
        assert backend.active_timers == 0
        assert backend.memory_lease.depth == 0

    def test_failed_restore_is_logged(self, caplog):
        class StickyBackend(FakeLimitBackend):
            def set_memory_limit(self, limit):
                if self.memory_history:
                    raise OSError("denied")
                super().set_memory_limit(limit)

        backend = StickyBackend(memory=64 * MB)
        with caplog.at_level("ERROR", logger="shortcode_exec.sandbox.resource_limits"):
            with ResourceLimiter(32 * MB, 30, backend=backend).apply():
                pass

        assert backend.memory == 32 * MB
        assert backend.memory_lease.depth == 0
        assert [getattr(r, "event", None) for r in caplog.records] == ["sandbox.mem_restore_fail"]

    def test_backends_share_process_lease(self):
        assert PosixLimitBackend().memory_lease is PosixLimitBackend().memory_lease
        assert isinstance(PosixLimitBackend.memory_lease, SharedMemoryLimit)


@pytest.mark.skipif(not hasattr(signal, "setitimer"), reason="POSIX timers required")
class TestPosixLimitBackend:
    """Real process limits; restored after every test"""

    def test_alarm_interrupts_busy_loop(self):
        limiter = ResourceLimiter(None, 0.05, backend=PosixLimitBackend())
        previous_handler = signal.getsignal(signal.SIGALRM)

        with pytest.raises(ExecutionTimeoutError):
            with limiter.apply():
                deadline = time.monotonic() + 5
                while time.monotonic() < deadline:
                    pass

        assert signal.getsignal(signal.SIGALRM) == previous_handler
        assert signal.getitimer(signal.ITIMER_REAL) == (0.0, 0.0)

    def test_fast_block_leaves_no_timer(self):
        limiter = ResourceLimiter(None, 5, backend=PosixLimitBackend())
        with limiter.apply():
            pass
        assert signal.getitimer(signal.ITIMER_REAL) == (0.0, 0.0)

    def test_trace_deadline_in_worker_thread(self):
        outcome = {}
        previous_trace = sys.gettrace()

        def spin():
            return sum(range(10))

        def worker():
            outcome["trace_before"] = sys.gettrace()
            limiter = ResourceLimiter(None, 0.05, backend=PosixLimitBackend())
            try:
                with limiter.apply():
                    deadline = time.monotonic() + 5
                    while time.monotonic() < deadline:
                        spin()
            except ExecutionTimeoutError:
                outcome["timed_out"] = True
            outcome["trace_after"] = sys.gettrace()

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join(10)

        assert outcome.get("timed_out") is True
        assert outcome["trace_after"] is outcome["trace_before"]
        assert sys.gettrace() is previous_trace

    def test_memory_limit_roundtrip(self):
        soft, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard != resource.RLIM_INFINITY:
            pytest.skip("hard RLIMIT_AS already set")

        backend = PosixLimitBackend()
        before = backend.get_memory_limit()
        target = 1 << 40
        limiter = ResourceLimiter(target, 5, backend=backend)
        with limiter.apply():
            assert backend.get_memory_limit() == effective_memory_limit(before, target)

        assert resource.getrlimit(resource.RLIMIT_AS) == (soft, hard)

    def test_overlapping_worker_threads_restore_ambient(self):
        soft, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard != resource.RLIM_INFINITY:
            pytest.skip("hard RLIMIT_AS already set")

        before = PosixLimitBackend().get_memory_limit()
        seen = run_overlapping(
            ResourceLimiter(1 << 41, 5, backend=PosixLimitBackend()),
            ResourceLimiter(1 << 40, 5, backend=PosixLimitBackend()),
        )

        assert seen == effective_memory_limit(before, 1 << 40)
        assert resource.getrlimit(resource.RLIMIT_AS) == (soft, hard)
        assert PosixLimitBackend.memory_lease.depth == 0
