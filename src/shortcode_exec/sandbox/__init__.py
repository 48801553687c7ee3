"""
Shortcode Execution Sandbox

Gates and runs administrator-authored snippet code:
- Name validation and static code checks before anything runs
- Capability gate for execute/edit/create/delete/import/export
- Memory and wall-clock limits around evaluation
- Host or RestrictedPython evaluation of the snippet body
- Audit trail of every outcome
"""

from .audit import AuditEntry, AuditLogger
from .code_sanitizer import (
    BlockedFunction,
    CodeRejection,
    CodeSanitizer,
    CodeSyntaxError,
    DangerousPattern,
    InvalidType,
    TooLong,
    ensure_clean,
    sanitize,
    sanitize_description,
)
from .evaluators import HostEvaluator, RestrictedEvaluator, make_evaluator
from .name_validator import validate_shortcode_name
from .permissions import Action, Actor, CapabilityGate, GateContext
from .resource_limits import PosixLimitBackend, ResourceLimiter, effective_memory_limit
from .secure_executor import (
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    Invocation,
    ShortcodeExecutor,
    Surface,
)

__all__ = [
    "validate_shortcode_name",
    "sanitize",
    "ensure_clean",
    "sanitize_description",
    "CodeSanitizer",
    "CodeRejection",
    "InvalidType",
    "TooLong",
    "BlockedFunction",
    "DangerousPattern",
    "CodeSyntaxError",
    "Action",
    "Actor",
    "CapabilityGate",
    "GateContext",
    "ResourceLimiter",
    "PosixLimitBackend",
    "effective_memory_limit",
    "HostEvaluator",
    "RestrictedEvaluator",
    "make_evaluator",
    "AuditLogger",
    "AuditEntry",
    "ShortcodeExecutor",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionStatus",
    "Invocation",
    "Surface",
]
