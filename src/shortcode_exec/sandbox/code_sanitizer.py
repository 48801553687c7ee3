"""
Code Sanitizer for Shortcode Snippets

Static checks applied to snippet code before it is stored and again before
it is executed:

- Type check (code must be text)
- Removal of one optional ``<?py`` / ``?>`` marker pair
- Length limit
- Blocked function calls (word-boundary aware, case-insensitive)
- Dangerous syntactic patterns (imports, nested evaluation, scope tables,
  dunder access, environment access)
- Syntax tree scan for imports in any statement position and for
  underscore-prefixed attribute access
- Syntax-only compilation of the wrapped body

This is a pattern-based defense-in-depth layer. It cannot be sound against
a Turing-complete language (a call name assembled from strings at run time
passes every textual check), so it never replaces restricting authorship
to trusted administrators.

Results are typed: ``sanitize`` returns the clean code or a
``CodeRejection`` value and does not raise.
"""

from __future__ import annotations

import ast
import html
import logging
import re
import textwrap
from dataclasses import dataclass
from functools import lru_cache
from html.parser import HTMLParser
from typing import Any, ClassVar

from shortcode_exec.core.config import DEFAULT_BLOCKED_FUNCTIONS, SecurityConfig
from shortcode_exec.core.exceptions import CodeRejectedError
from shortcode_exec.sandbox.evaluators import (
    build_snippet_module,
    compile_snippet,
    format_syntax_error,
)

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_BLOCKED_FUNCTIONS",
    "DANGEROUS_PATTERNS",
    "CodeRejection",
    "InvalidType",
    "TooLong",
    "BlockedFunction",
    "DangerousPattern",
    "CodeSyntaxError",
    "CodeSanitizer",
    "sanitize",
    "ensure_clean",
    "sanitize_description",
]


@dataclass(frozen=True)
class CodeRejection:
    """Base rejection returned by the sanitizer"""
    message: str

    kind: ClassVar[str] = "rejected"


@dataclass(frozen=True)
class InvalidType(CodeRejection):
    kind: ClassVar[str] = "invalid_code_type"


@dataclass(frozen=True)
class TooLong(CodeRejection):
    length: int = 0
    limit: int = 0

    kind: ClassVar[str] = "code_too_long"


@dataclass(frozen=True)
class BlockedFunction(CodeRejection):
    function: str = ""

    kind: ClassVar[str] = "blocked_function"


@dataclass(frozen=True)
class DangerousPattern(CodeRejection):
    reason: str = ""

    kind: ClassVar[str] = "dangerous_pattern"


@dataclass(frozen=True)
class CodeSyntaxError(CodeRejection):
    line: int | None = None

    kind: ClassVar[str] = "syntax_error"


_PATTERN_FLAGS = re.IGNORECASE | re.MULTILINE

# Checked in order, first match wins
DANGEROUS_PATTERNS = tuple(
    (re.compile(pattern, _PATTERN_FLAGS), reason)
    for pattern, reason in (
        (r"\b(?:environ|getenv|argv|stdin)\b", "Direct environment access"),
        (r"\beval\s*\(", "Nested eval() calls"),
        (r"\bexec\s*\(", "Nested exec() calls"),
        (r"(?<!\.)\bcompile\s*\(", "Nested compile() calls"),
        (r"\bglobals\s*\(", "Direct globals table access"),
        (r"\blocals\s*\(", "Variable extraction"),
        (r"\bvars\s*\(", "Variable compacting"),
        (r"\b(?:setattr|delattr)\s*\(", "Variable variables"),
        (
            r"\b__(?:dict|class|bases?|mro|subclasses|globals|builtins|code|closure"
            r"|getattribute|loader|spec)__\b",
            "Dunder attribute access",
        ),
        (r"(?:^|;)\s*import\s+\w", "Module import"),
        (r"(?:^|;)\s*from\s+[\w.]+\s+import\b", "Module import (from)"),
        (r"\b__import__\s*\(", "Dynamic import"),
        (r"\bimport_module\s*\(", "Dynamic import (importlib)"),
    )
)

_OPEN_MARKER = re.compile(r"\A\s*<\?(?:python|py)\b[ \t]*\r?\n?", re.IGNORECASE)
_CLOSE_MARKER = re.compile(r"\s*\?>\s*\Z")
_FILESYSTEM_PATH = re.compile(r"(?:[A-Za-z]:)?(?:[\\/][\w.\-]+){2,}")
_IN_FILE = re.compile(r"\(?\b(?:in|File)\s+\S+\s*,?\s*(?=on line|line)")


@lru_cache(maxsize=512)
def _call_pattern(function: str) -> re.Pattern[str]:
    return re.compile(r"\b" + re.escape(function) + r"\s*\(", re.IGNORECASE)


def _forbidden_node(code: str) -> str | None:
    """
    Walk the wrapped body and name the first forbidden construct.

    Imports nested in compound statements on one line (``if 1: import os``)
    and attribute hops through private module handles (``random._os``) slip
    past the line patterns above. Unparseable code is left to the syntax
    check.
    """
    try:
        tree = build_snippet_module(code)
    except (SyntaxError, ValueError):
        return None

    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            return "Module import"
        if isinstance(node, ast.ImportFrom):
            return "Module import (from)"
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            return "Private attribute access"
    return None


def scrub_paths(message: str) -> str:
    """Remove file names and filesystem paths from an error message."""
    message = _IN_FILE.sub("", message)
    return _FILESYSTEM_PATH.sub("", message).strip()


class CodeSanitizer:
    """
    Static analyzer for snippet code.

    Stateless apart from the configuration it was built with; one instance
    may be shared across threads.
    """

    def __init__(self, config: SecurityConfig | None = None):
        self.config = config or SecurityConfig()

    def sanitize(self, raw_code: Any) -> str | CodeRejection:
        """
        Clean and validate snippet code.

        Args:
            raw_code: Code as entered by the author

        Returns:
            Cleaned code text, or a CodeRejection describing the first
            problem found
        """
        if not isinstance(raw_code, str):
            return self._reject(InvalidType("Code must be a string."))

        # Empty code is the one legal "do nothing" body
        if not raw_code.strip():
            return ""

        code = _OPEN_MARKER.sub("", raw_code, count=1)
        code = _CLOSE_MARKER.sub("", code, count=1)
        code = textwrap.dedent(code).rstrip()

        length = len(code.encode("utf-8", errors="surrogatepass"))
        if length > self.config.max_code_length:
            return self._reject(TooLong(
                f"Code exceeds maximum length of {self.config.max_code_length} bytes.",
                length=length,
                limit=self.config.max_code_length,
            ))

        for function in self.config.blocked_functions:
            if _call_pattern(function).search(code):
                return self._reject(BlockedFunction(
                    f"Blocked function detected: {html.escape(function)}",
                    function=function,
                ))

        for pattern, reason in DANGEROUS_PATTERNS:
            if pattern.search(code):
                return self._reject(DangerousPattern(
                    f"Dangerous code pattern detected: {reason}",
                    reason=reason,
                ))

        reason = _forbidden_node(code)
        if reason is not None:
            return self._reject(DangerousPattern(
                f"Dangerous code pattern detected: {reason}",
                reason=reason,
            ))

        if self.config.enable_syntax_check:
            rejection = self._check_syntax(code)
            if rejection is not None:
                return self._reject(rejection)

        return code

    def _check_syntax(self, code: str) -> CodeSyntaxError | None:
        """Compile the wrapped body; nothing is executed."""
        try:
            compile_snippet(code)
        except SyntaxError as e:
            return CodeSyntaxError(
                f"Syntax error: {scrub_paths(format_syntax_error(e))}",
                line=e.lineno,
            )
        except ValueError as e:
            # e.g. source containing null bytes
            return CodeSyntaxError(f"Syntax error: {scrub_paths(str(e))}")
        return None

    def _reject(self, rejection: CodeRejection) -> CodeRejection:
        logger.debug(
            f"Code rejected: {rejection.message}",
            extra={"event": "sandbox.code_rejected", "reason": rejection.kind},
        )
        return rejection


def sanitize(raw_code: Any, config: SecurityConfig | None = None) -> str | CodeRejection:
    """
    Convenience function to sanitize snippet code

    Returns:
        Cleaned code or a CodeRejection
    """
    return CodeSanitizer(config).sanitize(raw_code)


def ensure_clean(raw_code: Any, config: SecurityConfig | None = None) -> str:
    """
    Sanitize code and raise on rejection.

    Raises:
        CodeRejectedError: If the sanitizer rejects the code
    """
    result = sanitize(raw_code, config)
    if isinstance(result, CodeRejection):
        raise CodeRejectedError(result)
    return result


# ==================== DESCRIPTIONS ====================

ALLOWED_DESCRIPTION_TAGS = frozenset({"p", "br", "strong", "em", "code"})
_DROPPED_CONTENT_TAGS = frozenset({"script", "style"})


class _DescriptionFilter(HTMLParser):
    """Keeps allow-listed tags (without attributes) and escaped text."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _DROPPED_CONTENT_TAGS:
            self._skip_depth += 1
        elif tag in ALLOWED_DESCRIPTION_TAGS and not self._skip_depth:
            self.parts.append(f"<{tag}>" if tag != "br" else "<br />")

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in ALLOWED_DESCRIPTION_TAGS and not self._skip_depth:
            self.parts.append(f"<{tag} />" if tag == "br" else f"<{tag}></{tag}>")

    def handle_endtag(self, tag: str) -> None:
        if tag in _DROPPED_CONTENT_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag in ALLOWED_DESCRIPTION_TAGS and tag != "br" and not self._skip_depth:
            self.parts.append(f"</{tag}>")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self.parts.append(html.escape(data, quote=False))


def sanitize_description(description: Any) -> str:
    """Strip every tag outside the inline allow-list and every attribute."""
    if not isinstance(description, str) or not description:
        return ""
    parser = _DescriptionFilter()
    parser.feed(description)
    parser.close()
    return "".join(parser.parts)
