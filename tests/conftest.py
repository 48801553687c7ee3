"""
Test configuration and fixtures
"""
import sys
from pathlib import Path

# Add project root and src to Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"

sys.path.insert(0, str(project_root))
sys.path.insert(0, str(src_path))

import pytest

from shortcode_exec.core.config import SecurityConfig
from shortcode_exec.registry import InMemoryRegistry, Settings, Snippet
from shortcode_exec.sandbox.audit import AuditLogger
from shortcode_exec.sandbox.permissions import Actor, CapabilityGate
from shortcode_exec.sandbox.resource_limits import UNLIMITED, SharedMemoryLimit
from shortcode_exec.sandbox.secure_executor import ShortcodeExecutor


class FakeLimitBackend:
    """Records limit changes instead of touching the process."""

    def __init__(self, memory=UNLIMITED, expire_immediately=False):
        self.memory = memory
        self.expire_immediately = expire_immediately
        self.memory_history = []
        self.armed = []
        self.active_timers = 0
        self.memory_lease = SharedMemoryLimit()

    def get_memory_limit(self):
        return self.memory

    def set_memory_limit(self, limit):
        self.memory_history.append(limit)
        self.memory = limit

    def arm_timeout(self, seconds, on_timeout):
        self.armed.append(seconds)
        self.active_timers += 1
        if self.expire_immediately:
            self.active_timers -= 1
            on_timeout()

        def disarm():
            self.active_timers -= 1

        return disarm


@pytest.fixture
def limit_backend():
    return FakeLimitBackend(memory=64 * 1024 * 1024 * 1024)


@pytest.fixture
def security_config():
    return SecurityConfig(enable_execution_log=True)


@pytest.fixture
def admin():
    return Actor.administrator(user_id=1, ip_address="8.8.8.8")


@pytest.fixture
def editor():
    return Actor(user_id=2, authenticated=True, roles=frozenset({"editor"}), ip_address="10.0.0.2")


@pytest.fixture
def anonymous():
    return Actor.anonymous(ip_address="8.8.4.4")


@pytest.fixture
def registry():
    return InMemoryRegistry(settings=Settings())


@pytest.fixture
def audit(security_config):
    return AuditLogger(config=security_config)


@pytest.fixture
def make_executor(registry, security_config, audit, limit_backend, admin):
    """Build an executor with the shared fakes; keyword arguments override."""

    def factory(**overrides):
        options = {
            "registry": registry,
            "gate": CapabilityGate(),
            "config": security_config,
            "actor_provider": lambda: admin,
            "audit": audit,
            "limit_backend": limit_backend,
        }
        options.update(overrides)
        return ShortcodeExecutor(**options)

    return factory


@pytest.fixture
def greet(registry):
    snippet = Snippet(
        name="greet",
        code='return "Hello, " + attributes.get("name", "World")',
        enabled=True,
    )
    registry.put(snippet)
    return snippet
