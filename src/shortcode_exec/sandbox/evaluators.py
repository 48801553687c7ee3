"""
Snippet evaluators

An evaluator runs one sanitized snippet body and hands back its return
value plus any captured standard output:

    evaluate(code, bindings, buffer) -> (value, stdout)

The body is wrapped into ``def snippet_entry(attributes, content, tag)``
at the AST level, so line numbers and string literals stay untouched.

Two implementations:
1. HostEvaluator: plain CPython with full builtins (the trust boundary is
   the author, not the interpreter)
2. RestrictedEvaluator: RestrictedPython compilation with guarded
   attribute, item and iteration access
"""

from __future__ import annotations

import ast
import builtins
import importlib
import io
import logging
import operator
import sys
from types import CodeType, ModuleType
from typing import Any, Mapping, Protocol

from RestrictedPython import compile_restricted, limited_builtins, safe_builtins, utility_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

from shortcode_exec.core.config import DEFAULT_PRELOADED_MODULES, SecurityConfig
from shortcode_exec.core.exceptions import ParseTrapError

logger = logging.getLogger(__name__)

ENTRY_POINT = "snippet_entry"
BINDING_NAMES = ("attributes", "content", "tag")

_TEMPLATE = f"def {ENTRY_POINT}({', '.join(BINDING_NAMES)}):\n    pass\n"


def build_snippet_module(code: str, filename: str = "<shortcode>") -> ast.Module:
    """
    Parse ``code`` and graft its statements into the entry function.

    Raises:
        SyntaxError: If the body cannot be parsed
    """
    body = ast.parse(code, filename=filename, mode="exec").body
    module = ast.parse(_TEMPLATE, filename=filename, mode="exec")
    if body:
        module.body[0].body = body
    return ast.fix_missing_locations(module)


def compile_snippet(code: str, filename: str = "<shortcode>") -> CodeType:
    """Compile the wrapped body without running it."""
    return compile(build_snippet_module(code, filename), filename, "exec")


def format_syntax_error(exc: SyntaxError) -> str:
    """Message and line only; the filename never reaches the viewer."""
    message = exc.msg or "invalid syntax"
    if exc.lineno:
        return f"{message} on line {exc.lineno}"
    return message


class Evaluator(Protocol):
    name: str

    def evaluate(
        self,
        code: str,
        bindings: Mapping[str, Any],
        buffer: bool = True,
        filename: str = "<shortcode>",
    ) -> tuple[Any, str]:
        ...


def _load_modules(names: tuple[str, ...]) -> dict[str, ModuleType]:
    modules = {}
    for module_name in names:
        try:
            modules[module_name] = importlib.import_module(module_name)
        except ImportError:
            logger.warning(
                f"Preloaded module {module_name} not found, skipping",
                extra={"event": "sandbox.module_missing", "module_name": module_name},
            )
    return modules


def _run_entry(entry: Any, bindings: Mapping[str, Any], buffer: bool) -> tuple[Any, str]:
    args = [bindings.get(name) for name in BINDING_NAMES]
    if not buffer:
        return entry(*args), ""

    old_stdout = sys.stdout
    stdout_capture = io.StringIO()
    try:
        sys.stdout = stdout_capture
        value = entry(*args)
    finally:
        sys.stdout = old_stdout
    return value, stdout_capture.getvalue()


class HostEvaluator:
    """Runs snippet code on the host interpreter with full builtins."""

    name = "host"

    def __init__(self, preloaded_modules: tuple[str, ...] = DEFAULT_PRELOADED_MODULES):
        self.modules = _load_modules(tuple(preloaded_modules))

    def evaluate(
        self,
        code: str,
        bindings: Mapping[str, Any],
        buffer: bool = True,
        filename: str = "<shortcode>",
    ) -> tuple[Any, str]:
        try:
            byte_code = compile_snippet(code, filename)
        except SyntaxError as e:
            raise ParseTrapError(format_syntax_error(e), line=e.lineno) from e

        scope: dict[str, Any] = {
            "__builtins__": builtins,
            "__name__": "shortcode_snippet",
            "__file__": filename,
        }
        scope.update(self.modules)

        exec(byte_code, scope)
        return _run_entry(scope[ENTRY_POINT], bindings, buffer)


class _StdoutPrintCollector(PrintCollector):
    """Sends restricted ``print()`` calls to the current sys.stdout."""

    def _call_print(self, *objects: Any, **kwargs: Any) -> None:
        if kwargs.get("file", None) is None:
            kwargs["file"] = sys.stdout
        else:
            self._getattr_(kwargs["file"], "write")
        print(*objects, **kwargs)


_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    "@=": operator.imatmul,
}


def _inplacevar(op: str, target: Any, value: Any) -> Any:
    return _INPLACE_OPERATORS[op](target, value)


def _apply(func: Any, *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


class RestrictedEvaluator:
    """
    Runs snippet code compiled through RestrictedPython.

    Underscore names, attribute writes on foreign objects and unguarded
    iteration are refused at compile or call time.
    """

    name = "restricted"

    def __init__(self, preloaded_modules: tuple[str, ...] = DEFAULT_PRELOADED_MODULES):
        self.modules = _load_modules(tuple(preloaded_modules))

    def evaluate(
        self,
        code: str,
        bindings: Mapping[str, Any],
        buffer: bool = True,
        filename: str = "<shortcode>",
    ) -> tuple[Any, str]:
        try:
            module = build_snippet_module(code, filename)
            byte_code = compile_restricted(module, filename=filename, mode="exec")
        except SyntaxError as e:
            # RestrictedPython reports policy violations as SyntaxError(errors)
            errors = e.args[0] if e.args else None
            if isinstance(errors, (list, tuple)):
                raise ParseTrapError("; ".join(str(err) for err in errors)) from e
            raise ParseTrapError(format_syntax_error(e), line=e.lineno) from e

        scope: dict[str, Any] = {
            "__builtins__": self._create_safe_builtins(),
            "__name__": "shortcode_snippet",
            "__file__": filename,
            "_getattr_": safer_getattr,
            "_getitem_": default_guarded_getitem,
            "_getiter_": default_guarded_getiter,
            "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
            "_unpack_sequence_": guarded_unpack_sequence,
            "_write_": full_write_guard,
            "_inplacevar_": _inplacevar,
            "_apply_": _apply,
            "_print_": _StdoutPrintCollector,
        }
        scope.update(self.modules)

        exec(byte_code, scope)
        return _run_entry(scope[ENTRY_POINT], bindings, buffer)

    def _create_safe_builtins(self) -> dict[str, Any]:
        """Create dictionary of safe builtin functions"""
        safe = dict(safe_builtins)
        safe.update(limited_builtins)
        safe.update(utility_builtins)
        return safe


def make_evaluator(config: SecurityConfig) -> Evaluator:
    """Build the evaluator selected by ``config.evaluator``."""
    if config.evaluator == RestrictedEvaluator.name:
        return RestrictedEvaluator(config.preloaded_modules)
    return HostEvaluator(config.preloaded_modules)
