"""
Shortcode Exec Configuration

Process-wide security settings read at execution time.

Layering (later wins):
- compiled-in defaults
- optional YAML file (SHORTCODE_EXEC_CONFIG_FILE)
- environment variables (SHORTCODE_EXEC_*)
- override callables registered on the provider

SECURITY NOTICE:
- The blocked-function list is a defense-in-depth layer, not a sandbox
- Only fully trusted administrators may author snippet code
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

import yaml

from shortcode_exec.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "SHORTCODE_EXEC_"

# ==================== BLOCKED FUNCTIONS ====================

# Process / OS execution
PROCESS_FUNCTIONS = (
    "system",
    "popen",
    "spawnl",
    "spawnle",
    "spawnlp",
    "spawnlpe",
    "spawnv",
    "spawnve",
    "spawnvp",
    "spawnvpe",
    "posix_spawn",
    "posix_spawnp",
    "execl",
    "execle",
    "execlp",
    "execlpe",
    "execv",
    "execve",
    "execvp",
    "execvpe",
    "fork",
    "forkpty",
    "check_output",
    "check_call",
    "getoutput",
    "getstatusoutput",
    "kill",
    "killpg",
)

# Raw filesystem access
FILESYSTEM_FUNCTIONS = (
    "open",
    "read_text",
    "read_bytes",
    "write_text",
    "write_bytes",
    "unlink",
    "rmdir",
    "rmtree",
    "mkdir",
    "makedirs",
    "chmod",
    "chown",
    "rename",
    "copyfile",
)

# Raw network access
NETWORK_FUNCTIONS = (
    "socket",
    "create_connection",
    "urlopen",
    "urlretrieve",
    "getaddrinfo",
    "sendmail",
)

# Environment / runtime tampering
RUNTIME_FUNCTIONS = (
    "setrlimit",
    "setrecursionlimit",
    "settrace",
    "setprofile",
    "signal",
    "setitimer",
    "putenv",
    "redirect_stdout",
    "redirect_stderr",
    "set_cookie",
    "delete_cookie",
    "breakpoint",
    "_getframe",
    "getattr",
    "exit",
    "_exit",
    "quit",
    "connect",
)

DEFAULT_BLOCKED_FUNCTIONS = (
    PROCESS_FUNCTIONS + FILESYSTEM_FUNCTIONS + NETWORK_FUNCTIONS + RUNTIME_FUNCTIONS
)

# ==================== LIMITS ====================

DEFAULT_MAX_EXECUTION_TIME = 30
# Applied to RLIMIT_AS, which counts virtual address space rather than heap.
DEFAULT_MAX_MEMORY_MB = 1024
DEFAULT_MAX_CODE_LENGTH = 10000
DEFAULT_CACHE_TTL_SECONDS = 60.0

# Modules bound into the evaluation scope; snippet code cannot import.
DEFAULT_PRELOADED_MODULES = (
    "json",
    "math",
    "re",
    "datetime",
    "html",
    "string",
    "textwrap",
    "random",
    "decimal",
)

EVALUATORS = ("host", "restricted")

_FUNCTION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _env_flag(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value!r}")


def debug_enabled(environ: Mapping[str, str] | None = None) -> bool:
    """Global debug flag; audit logging defaults to its value."""
    env = os.environ if environ is None else environ
    try:
        return _env_flag(env.get(f"{ENV_PREFIX}DEBUG", "0"))
    except ConfigurationError:
        return False


def parse_memory_size(size: Any) -> int:
    """
    Convert a memory size to bytes.

    Accepts integers (bytes) and strings such as ``"32M"``, ``"1G"``,
    ``"512k"`` or ``"1048576"``. ``-1`` means unlimited.
    """
    if isinstance(size, bool):
        raise ConfigurationError(f"Invalid memory size: {size!r}")
    if isinstance(size, int):
        return size
    if not isinstance(size, str):
        raise ConfigurationError(f"Invalid memory size: {size!r}")

    text = size.strip()
    if not text:
        return 0

    multipliers = {"k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}
    suffix = text[-1].lower()
    try:
        if suffix in multipliers:
            return int(text[:-1]) * multipliers[suffix]
        return int(text)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid memory size: {size!r}") from exc


def _normalize_names(names: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for name in names:
        if not isinstance(name, str) or not _FUNCTION_NAME.match(name.strip()):
            raise ConfigurationError(f"Invalid blocked function name: {name!r}")
        seen.setdefault(name.strip().lower(), None)
    return tuple(seen)


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class SecurityConfig:
    """Security settings consumed by the sanitizer and the executor."""

    blocked_functions: tuple[str, ...] = DEFAULT_BLOCKED_FUNCTIONS
    max_code_length: int = DEFAULT_MAX_CODE_LENGTH
    max_execution_time: float = DEFAULT_MAX_EXECUTION_TIME
    max_memory_mb: int = DEFAULT_MAX_MEMORY_MB
    enable_syntax_check: bool = True
    enable_execution_log: bool = field(default_factory=debug_enabled)
    evaluator: str = "host"
    preloaded_modules: tuple[str, ...] = DEFAULT_PRELOADED_MODULES
    audit_log_path: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "blocked_functions", _normalize_names(self.blocked_functions))
        object.__setattr__(self, "preloaded_modules", tuple(self.preloaded_modules))

        if int(self.max_code_length) <= 0:
            raise ConfigurationError("max_code_length must be positive")
        if float(self.max_execution_time) <= 0:
            raise ConfigurationError("max_execution_time must be positive")
        if int(self.max_memory_mb) <= 0:
            raise ConfigurationError("max_memory_mb must be positive")
        if self.evaluator not in EVALUATORS:
            raise ConfigurationError(
                f"Unknown evaluator {self.evaluator!r}; expected one of {EVALUATORS}"
            )

    @property
    def max_memory_bytes(self) -> int:
        return int(self.max_memory_mb) * 1024 * 1024

    def replace(self, **changes: Any) -> SecurityConfig:
        return dataclasses.replace(self, **changes)

    def with_blocked_functions(
        self,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
    ) -> SecurityConfig:
        """Return a copy with names added to and/or removed from the block list."""
        removed = {name.strip().lower() for name in remove}
        names = [name for name in self.blocked_functions if name not in removed]
        names.extend(add)
        return self.replace(blocked_functions=tuple(names))

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["blocked_functions"] = list(self.blocked_functions)
        data["preloaded_modules"] = list(self.preloaded_modules)
        return data

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        base: SecurityConfig | None = None,
    ) -> SecurityConfig:
        """Build a config from a plain mapping (YAML file, dict literal)."""
        base = base or cls()
        known = {f.name for f in dataclasses.fields(cls)}
        changes: dict[str, Any] = {}
        add: list[str] = []
        remove: list[str] = []

        for key, value in data.items():
            if key == "max_memory":
                changes["max_memory_mb"] = max(1, parse_memory_size(value) // (1024 * 1024))
            elif key == "blocked_functions_add":
                add.extend(value or [])
            elif key == "blocked_functions_remove":
                remove.extend(value or [])
            elif key in known:
                if key in ("blocked_functions", "preloaded_modules"):
                    value = tuple(value or ())
                changes[key] = value
            else:
                raise ConfigurationError(f"Unknown configuration key: {key}")

        config = base.replace(**changes) if changes else base
        if add or remove:
            config = config.with_blocked_functions(add=add, remove=remove)
        return config


def load_config_file(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Load a YAML configuration file into a mapping."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(f"Could not read configuration file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in configuration file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    return data


def config_from_env(
    base: SecurityConfig | None = None,
    environ: Mapping[str, str] | None = None,
) -> SecurityConfig:
    """Apply SHORTCODE_EXEC_* environment overrides on top of ``base``."""
    env = os.environ if environ is None else environ
    config = base or SecurityConfig()
    changes: dict[str, Any] = {}

    def _get(name: str) -> str | None:
        value = env.get(f"{ENV_PREFIX}{name}")
        return value if value is not None and value.strip() != "" else None

    try:
        if (value := _get("MAX_EXECUTION_TIME")) is not None:
            changes["max_execution_time"] = float(value)
        if (value := _get("MAX_CODE_LENGTH")) is not None:
            changes["max_code_length"] = int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid numeric environment value: {exc}") from exc

    if (value := _get("MAX_MEMORY")) is not None:
        changes["max_memory_mb"] = max(1, parse_memory_size(value) // (1024 * 1024))
    if (value := _get("SYNTAX_CHECK")) is not None:
        changes["enable_syntax_check"] = _env_flag(value)
    if (value := _get("DEBUG")) is not None:
        changes["enable_execution_log"] = _env_flag(value)
    if (value := _get("EVALUATOR")) is not None:
        changes["evaluator"] = value.strip().lower()
    if (value := _get("AUDIT_LOG")) is not None:
        changes["audit_log_path"] = value.strip()

    if changes:
        config = config.replace(**changes)

    add = _split_list(env.get(f"{ENV_PREFIX}BLOCKED_FUNCTIONS_ADD", ""))
    remove = _split_list(env.get(f"{ENV_PREFIX}BLOCKED_FUNCTIONS_REMOVE", ""))
    if add or remove:
        config = config.with_blocked_functions(add=add, remove=remove)

    return config


ConfigOverride = Callable[[SecurityConfig], SecurityConfig]


class SecurityConfigProvider:
    """
    Hands out the current SecurityConfig.

    The built config is cached for ``ttl_seconds`` so a changed file or
    environment is picked up within that window; ``invalidate()`` forces
    the next ``get()`` to rebuild.
    """

    def __init__(
        self,
        base: SecurityConfig | None = None,
        environ: Mapping[str, str] | None = None,
        config_file: str | os.PathLike[str] | None = None,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base = base
        self.environ = environ
        self.config_file = config_file
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._overrides: list[ConfigOverride] = []
        self._cached: SecurityConfig | None = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def add_override(self, override: ConfigOverride) -> None:
        """Register a callable that receives and returns a SecurityConfig."""
        with self._lock:
            self._overrides.append(override)
            self._cached = None

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def get(self) -> SecurityConfig:
        with self._lock:
            now = self._clock()
            if self._cached is not None and now - self._cached_at < self.ttl_seconds:
                return self._cached

            self._cached = self._build()
            self._cached_at = now
            logger.debug(
                "Security configuration loaded",
                extra={
                    "event": "config.loaded",
                    "blocked_functions": len(self._cached.blocked_functions),
                    "evaluator": self._cached.evaluator,
                },
            )
            return self._cached

    def _build(self) -> SecurityConfig:
        env = os.environ if self.environ is None else self.environ
        config = self.base or SecurityConfig(enable_execution_log=debug_enabled(env))

        config_file = self.config_file or env.get(f"{ENV_PREFIX}CONFIG_FILE")
        if config_file:
            config = SecurityConfig.from_mapping(load_config_file(config_file), base=config)

        config = config_from_env(config, env)

        for override in self._overrides:
            result = override(config)
            if not isinstance(result, SecurityConfig):
                raise ConfigurationError(
                    f"Config override {override!r} returned {type(result).__name__}"
                )
            config = result
        return config


ConfigSource = Any


def resolve_config(source: ConfigSource) -> SecurityConfig:
    """
    Current config from a SecurityConfig, a provider or a zero-argument
    callable. None yields the compiled-in defaults.
    """
    if source is None:
        return SecurityConfig()
    if isinstance(source, SecurityConfig):
        return source
    if isinstance(source, SecurityConfigProvider):
        return source.get()
    config = source()
    if not isinstance(config, SecurityConfig):
        raise ConfigurationError(f"Config source returned {type(config).__name__}")
    return config
