"""
Exception hierarchy for shortcode execution.

Provides typed exceptions for the snippet pipeline so that every failure
class can be caught and reported on its own. Nothing here crosses the
``invoke`` boundary: the executor converts each of them to text plus one
audit record.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class ShortcodeError(Exception):
    """Base exception for all shortcode-related errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ==================== Validation Errors ====================


class ValidationError(ShortcodeError):
    """Raised when a name or code body fails validation before execution."""
    pass


class InvalidNameError(ValidationError):
    """Raised when a shortcode name does not satisfy the naming rules."""

    def __init__(self, name: Any) -> None:
        super().__init__(
            "Invalid shortcode name. Please use only letters, numbers, "
            "underscores, and hyphens.",
            details={"name": repr(name)},
        )
        self.name = name


# ==================== Access Errors ====================


class AuthorizationError(ShortcodeError):
    """Raised when the actor or context is not allowed to perform an action."""

    def __init__(self, action: str, name: Optional[str] = None) -> None:
        super().__init__(
            f"Permission denied for action {action}"
            + (f" on shortcode {name}" if name else ""),
            details={"action": action, "name": name},
        )
        self.action = action
        self.name = name


class NotFoundError(ShortcodeError):
    """Raised when a shortcode is missing or disabled."""
    pass


# ==================== Code Errors ====================


class CodeRejectedError(ShortcodeError):
    """Raised when static analysis rejects a code body.

    Carries the typed rejection returned by the sanitizer.
    """

    def __init__(self, rejection: Any) -> None:
        super().__init__(
            rejection.message,
            details={"kind": rejection.kind},
        )
        self.rejection = rejection


class RuntimeTrapError(ShortcodeError):
    """Base class for failures raised while evaluating a snippet."""

    kind = "runtime_error"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        line: Optional[int] = None,
    ) -> None:
        super().__init__(message, details)
        self.line = line


class ParseTrapError(RuntimeTrapError):
    """Code could not be compiled at evaluation time."""

    kind = "parse_error"


class FatalTrapError(RuntimeTrapError):
    """Interpreter-level failure (memory, recursion, exit)."""

    kind = "fatal_error"


class ExceptionTrapError(RuntimeTrapError):
    """Ordinary exception raised by snippet code."""

    kind = "exception"


class ExecutionTimeoutError(RuntimeTrapError):
    """Wall-clock limit expired during evaluation."""

    kind = "timeout"


# ==================== Configuration Errors ====================


class ConfigurationError(ShortcodeError):
    """Raised when configuration is missing or invalid."""
    pass
