"""
Secure Shortcode Executor

Runs one registered snippet per invocation through a fixed pipeline:

    pending -> validating -> authorizing -> context_checking
            -> executing -> finalizing -> completed | blocked | failed

Security layers:
1. Name validation before any lookup
2. Registry checks (exists, enabled, has code)
3. Capability gate (viewer and content author)
4. Surface flags (widget, excerpt, comment, feed)
5. Static re-validation of the stored code
6. Memory and wall-clock limits around evaluation
7. Residual marker stripping on the output

``invoke`` always returns text and writes exactly one audit record per
invocation. Only KeyboardInterrupt crosses it.
"""

from __future__ import annotations

import html
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from shortcode_exec.core.config import ConfigSource, SecurityConfig, resolve_config
from shortcode_exec.core.exceptions import (
    ExceptionTrapError,
    ExecutionTimeoutError,
    FatalTrapError,
    ParseTrapError,
    RuntimeTrapError,
)
from shortcode_exec.sandbox.audit import AuditLogger
from shortcode_exec.sandbox.code_sanitizer import CodeRejection, CodeSanitizer
from shortcode_exec.sandbox.evaluators import Evaluator, make_evaluator
from shortcode_exec.sandbox.name_validator import validate_shortcode_name
from shortcode_exec.sandbox.permissions import Action, Actor, CapabilityGate, GateContext
from shortcode_exec.sandbox.resource_limits import LimitBackend, ResourceLimiter

logger = logging.getLogger(__name__)


class Surface(Enum):
    """Rendering context an invocation happens in"""
    NORMAL = "normal"
    WIDGET = "widget"
    EXCERPT = "excerpt"
    COMMENT = "comment"
    FEED = "feed"
    ADMIN_TEST = "admin-test"


# Surfaces that only execute when their settings flag is on
SURFACE_FLAGS = {
    Surface.WIDGET: "widget",
    Surface.EXCERPT: "excerpt",
    Surface.COMMENT: "comment",
    Surface.FEED: "feed",
}


class ExecutionState(Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    CONTEXT_CHECKING = "context_checking"
    EXECUTING = "executing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class ExecutionStatus(Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    ERROR = "error"


_TERMINAL_STATES = {
    ExecutionStatus.SUCCESS: ExecutionState.COMPLETED,
    ExecutionStatus.BLOCKED: ExecutionState.BLOCKED,
    ExecutionStatus.ERROR: ExecutionState.FAILED,
}

# Labels shown to privileged viewers
ERROR_LABELS = {
    "invalid_name": "Invalid shortcode name format",
    "not_found": "Shortcode not found",
    "disabled": "Shortcode is disabled",
    "empty_code": "Shortcode has no code defined",
    "code_validation_failed": "Code validation failed",
    "parse_error": "Execution error",
    "fatal_error": "Execution error",
    "exception": "Execution error",
    "timeout": "Execution error",
}

# Audit message prefixes, one per trapped failure kind
_TRAP_PREFIXES = {
    "parse_error": "Parse error",
    "fatal_error": "Fatal error",
    "exception": "Exception",
    "timeout": "Timeout",
}

_RESIDUAL_MARKERS = re.compile(r"<\?.*?\?>", re.DOTALL)


def strip_residual_markers(text: str) -> str:
    """Drop any ``<?...?>`` sequence left in the final output."""
    return _RESIDUAL_MARKERS.sub("", text)


def coerce_surface(surface: Union[Surface, str, None]) -> Surface:
    if isinstance(surface, Surface):
        return surface
    if surface is None:
        return Surface.NORMAL
    return Surface(str(surface).strip().lower().replace("_", "-"))


def normalize_attributes(
    attributes: Union[Mapping[Any, Any], Iterable[Tuple[Any, Any]], None],
) -> Dict[str, str]:
    """String keys and values; duplicate keys collapse to the last write."""
    if not attributes:
        return {}
    items = attributes.items() if isinstance(attributes, Mapping) else attributes
    return {str(key): "" if value is None else str(value) for key, value in items}


@dataclass(frozen=True)
class Invocation:
    """A single request to run a snippet; never persisted"""
    tag: str
    attributes: Dict[str, str] = field(default_factory=dict)
    content: Optional[str] = None
    surface: Surface = Surface.NORMAL
    author: Optional[Actor] = None


@dataclass
class ExecutionResult:
    """Outcome of one invocation"""
    output: str
    status: ExecutionStatus
    reason: str
    message: str = ""
    details: str = ""
    execution_time: float = 0.0
    states: List[ExecutionState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _snippet_line(tb: Optional[TracebackType], filename: str) -> Optional[int]:
    """Innermost traceback line that belongs to the snippet itself."""
    line = None
    while tb is not None:
        if tb.tb_frame.f_code.co_filename == filename:
            line = tb.tb_lineno
        tb = tb.tb_next
    return line


def _fatal_trap(exc: BaseException, filename: str) -> FatalTrapError:
    return FatalTrapError(
        f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
        line=_snippet_line(exc.__traceback__, filename),
    )


class ShortcodeExecutor:
    """
    Executes registered snippets.

    Collaborators are injected: the registry (snippet lookup, settings,
    last-parameter storage), the capability gate, a config source, the
    current-actor provider, the audit logger, and optionally the evaluator
    and the resource-limit backend.
    """

    def __init__(
        self,
        registry: Any,
        gate: Optional[CapabilityGate] = None,
        config: ConfigSource = None,
        actor_provider: Optional[Callable[[], Optional[Actor]]] = None,
        audit: Optional[AuditLogger] = None,
        evaluator: Optional[Evaluator] = None,
        limit_backend: Optional[LimitBackend] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.registry = registry
        self.gate = gate or CapabilityGate()
        self._config = config
        self.actor_provider = actor_provider or Actor.anonymous
        self.audit = audit or AuditLogger(config=config)
        self.evaluator = evaluator
        self.limit_backend = limit_backend
        self._clock = clock
        self._evaluators: Dict[Tuple[str, Tuple[str, ...]], Evaluator] = {}
        self._evaluators_lock = threading.Lock()

    # ==================== PUBLIC API ====================

    def invoke(
        self,
        tag: str,
        attributes: Union[Mapping[Any, Any], Iterable[Tuple[Any, Any]], None] = None,
        content: Optional[str] = None,
        surface: Union[Surface, str] = Surface.NORMAL,
        author: Optional[Actor] = None,
    ) -> str:
        """Run the snippet bound to ``tag`` and return the text to render."""
        return self.execute(tag, attributes, content, surface, author).output

    def execute(
        self,
        tag: str,
        attributes: Union[Mapping[Any, Any], Iterable[Tuple[Any, Any]], None] = None,
        content: Optional[str] = None,
        surface: Union[Surface, str] = Surface.NORMAL,
        author: Optional[Actor] = None,
        viewer: Optional[Actor] = None,
    ) -> ExecutionResult:
        """
        Same as ``invoke`` but returns the full ExecutionResult.

        ``viewer`` replaces the actor provider for this call (admin test runs).
        """
        actor = viewer if viewer is not None else self._current_actor()
        states = [ExecutionState.PENDING]
        name = tag if isinstance(tag, str) else repr(tag)
        try:
            invocation = Invocation(
                tag=tag,
                attributes=normalize_attributes(attributes),
                content=content,
                surface=coerce_surface(surface),
                author=author,
            )
            return self._run(invocation, actor, states)
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            # Collaborator failure (registry, config); still exactly one record
            logger.error(
                f"Shortcode pipeline failed for {name}: {type(e).__name__}: {e}",
                extra={"event": "shortcode.pipeline_error", "shortcode_name": name},
            )
            return self._finish(
                name, actor, states,
                status=ExecutionStatus.ERROR,
                reason="internal_error",
                message=f"{type(e).__name__}: {e}",
            )

    # ==================== PIPELINE ====================

    def _run(self, invocation: Invocation, actor: Actor, states: List[ExecutionState]) -> ExecutionResult:
        tag = invocation.tag

        states.append(ExecutionState.VALIDATING)
        if not validate_shortcode_name(tag):
            return self._finish(tag, actor, states, ExecutionStatus.ERROR, "invalid_name")

        snippet = self.registry.get(tag)
        if snippet is None:
            return self._finish(tag, actor, states, ExecutionStatus.BLOCKED, "not_found")
        if not snippet.enabled:
            return self._finish(tag, actor, states, ExecutionStatus.BLOCKED, "disabled")
        if not snippet.code or not snippet.code.strip():
            return self._finish(tag, actor, states, ExecutionStatus.BLOCKED, "empty_code")

        settings = self.registry.settings()

        states.append(ExecutionState.AUTHORIZING)
        context = GateContext(
            snippet=tag,
            author=invocation.author,
            author_capability=settings.author_capability,
        )
        if not self.gate.authorize(actor, Action.EXECUTE, context):
            return self._finish(
                tag, actor, states, ExecutionStatus.BLOCKED, "access_denied",
                output=f"[Access Denied: {html.escape(tag)}]",
            )

        states.append(ExecutionState.CONTEXT_CHECKING)
        flag = SURFACE_FLAGS.get(invocation.surface)
        if flag is not None and not getattr(settings, flag):
            # The unexecuted tag stays visible in this surface
            return self._finish(
                tag, actor, states, ExecutionStatus.BLOCKED, "context_restricted",
                output=f"[{html.escape(tag)}]",
                context={"surface": invocation.surface.value},
            )

        states.append(ExecutionState.EXECUTING)
        config = resolve_config(self._config)
        checked = CodeSanitizer(config).sanitize(snippet.code)
        if isinstance(checked, CodeRejection):
            return self._finish(
                tag, actor, states, ExecutionStatus.ERROR, "code_validation_failed",
                message=checked.message,
                details=checked.message,
                context={"rejection": checked.kind},
            )

        return self._evaluate(invocation, snippet, checked, config, actor, states)

    def _evaluate(
        self,
        invocation: Invocation,
        snippet: Any,
        code: str,
        config: SecurityConfig,
        actor: Actor,
        states: List[ExecutionState],
    ) -> ExecutionResult:
        tag = invocation.tag
        filename = f"<shortcode:{tag}>"
        bindings = {
            "attributes": dict(invocation.attributes),
            "content": invocation.content,
            "tag": tag,
        }
        evaluator = self._get_evaluator(config)
        limiter = ResourceLimiter(
            max_memory_bytes=config.max_memory_bytes,
            max_execution_time=config.max_execution_time,
            backend=self.limit_backend,
        )

        trap: Optional[RuntimeTrapError] = None
        output = ""
        started = self._clock()
        try:
            with limiter.apply():
                value, buffered = evaluator.evaluate(
                    code, bindings, buffer=snippet.buffer, filename=filename
                )
                output = buffered + _to_text(value)
        except (ParseTrapError, ExecutionTimeoutError) as e:
            trap = e
        except (MemoryError, RecursionError) as e:
            trap = _fatal_trap(e, filename)
        except Exception as e:
            line = _snippet_line(e.__traceback__, filename)
            message = f"{type(e).__name__}: {e}"
            trap = ExceptionTrapError(
                f"{message} on line {line}" if line else message,
                line=line,
            )
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            # SystemExit, GeneratorExit and snippet-defined BaseException subclasses
            trap = _fatal_trap(e, filename)
        execution_time = self._clock() - started

        states.append(ExecutionState.FINALIZING)
        timing = {"execution_time": execution_time, "evaluator": evaluator.name}

        if trap is not None:
            logger.info(
                f"Shortcode {tag} failed: {trap.kind}",
                extra={"event": "shortcode.execution_failed", "shortcode_name": tag, "kind": trap.kind},
            )
            if trap.line is not None:
                timing["error_line"] = trap.line
            return self._finish(
                tag, actor, states, ExecutionStatus.ERROR, trap.kind,
                message=f"{_TRAP_PREFIXES[trap.kind]}: {trap.message}",
                details=trap.message,
                execution_time=execution_time,
                context=timing,
            )

        self._remember_parameters(tag, invocation.attributes)
        return self._finish(
            tag, actor, states, ExecutionStatus.SUCCESS, "completed",
            output=strip_residual_markers(output),
            message=f"Executed successfully in {execution_time:.4f} seconds",
            execution_time=execution_time,
            context=timing,
        )

    # ==================== HELPERS ====================

    def _finish(
        self,
        name: str,
        actor: Actor,
        states: List[ExecutionState],
        status: ExecutionStatus,
        reason: str,
        output: Optional[str] = None,
        message: str = "",
        details: str = "",
        execution_time: float = 0.0,
        context: Optional[Dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Enter the terminal state and write the single audit record."""
        states.append(_TERMINAL_STATES[status])
        if output is None:
            output = self._error_output(name, actor, reason, details)
        if not message:
            message = ERROR_LABELS.get(reason, reason)

        audit_context = {"reason": reason}
        audit_context.update(context or {})
        self.audit.record(name, status.value, message, audit_context, actor=actor)

        return ExecutionResult(
            output=output,
            status=status,
            reason=reason,
            message=message,
            details=details,
            execution_time=execution_time,
            states=list(states),
        )

    def _error_output(self, name: str, actor: Actor, reason: str, details: str) -> str:
        """Detailed message for privileged viewers, a bare placeholder otherwise."""
        escaped_name = html.escape(str(name))
        if not (actor.authenticated and actor.has_capability(self.gate.manage_capability)):
            return f"[Error: {escaped_name}]"

        label = ERROR_LABELS.get(reason, "Unknown error")
        if details:
            label += f": {html.escape(details)}"
        return f"[Shortcode Exec Error: {escaped_name} - {label}]"

    def _remember_parameters(self, tag: str, attributes: Dict[str, str]) -> None:
        try:
            self.registry.set_last_parameters(tag, attributes or None)
        except OSError as e:
            logger.warning(
                f"Could not store last parameters for {tag}: {e}",
                extra={"event": "shortcode.last_parameters_failed", "shortcode_name": tag},
            )

    def _current_actor(self) -> Actor:
        try:
            actor = self.actor_provider()
        except Exception as e:
            logger.error(
                f"Actor provider failed, treating viewer as anonymous: {type(e).__name__}: {e}",
                extra={"event": "shortcode.actor_provider_failed"},
            )
            return Actor.anonymous()
        return actor if actor is not None else Actor.anonymous()

    def _get_evaluator(self, config: SecurityConfig) -> Evaluator:
        if self.evaluator is not None:
            return self.evaluator
        key = (config.evaluator, config.preloaded_modules)
        with self._evaluators_lock:
            if key not in self._evaluators:
                self._evaluators[key] = make_evaluator(config)
            return self._evaluators[key]
