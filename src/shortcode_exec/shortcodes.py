"""
Shortcode dispatch for rendered content.

Installs one binding per enabled snippet and replaces occurrences of

    [tag]  [tag attr="value" other='x' bare 42]  [tag]inner[/tag]  [tag /]

in content with the snippet's output. ``[[tag]]`` escapes a tag and renders
as the literal ``[tag]``.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Dict, FrozenSet, List, Optional, Union

from shortcode_exec.sandbox.name_validator import validate_shortcode_name
from shortcode_exec.sandbox.permissions import Actor
from shortcode_exec.sandbox.secure_executor import ShortcodeExecutor, Surface

logger = logging.getLogger(__name__)

_ATTRIBUTE_PATTERN = re.compile(
    r"""([\w-]+)\s*=\s*"([^"]*)"(?:\s|$)"""
    r"""|([\w-]+)\s*=\s*'([^']*)'(?:\s|$)"""
    r"""|([\w-]+)\s*=\s*([^\s'"]+)(?:\s|$)"""
    r"""|"([^"]*)"(?:\s|$)"""
    r"""|'([^']*)'(?:\s|$)"""
    r"""|(\S+)(?:\s|$)"""
)
_INVISIBLE_SPACES = re.compile("[\u00a0\u200b]")


def parse_attributes(text: str) -> Dict[str, str]:
    """
    Parse the attribute part of a tag.

    Named keys are lower-cased; positional values get their index as key;
    duplicate keys keep the last value.
    """
    attributes: Dict[str, str] = {}
    text = _INVISIBLE_SPACES.sub(" ", text or "")
    position = 0
    for match in _ATTRIBUTE_PATTERN.finditer(text):
        groups = match.groups()
        if groups[0] is not None:
            attributes[groups[0].lower()] = groups[1]
        elif groups[2] is not None:
            attributes[groups[2].lower()] = groups[3]
        elif groups[4] is not None:
            attributes[groups[4].lower()] = groups[5]
        else:
            value = next(g for g in groups[6:] if g is not None)
            attributes[str(position)] = value
            position += 1
    return attributes


def build_tag_pattern(tags: List[str]) -> re.Pattern[str]:
    """Regex matching any of ``tags`` in self-closing, open or enclosing form."""
    alternatives = "|".join(re.escape(tag) for tag in sorted(tags, key=len, reverse=True))
    return re.compile(
        r"\[(\[?)"                               # 1: opening escape bracket
        r"(" + alternatives + r")"               # 2: tag name
        r"(?![\w-])"
        r"([^\]/]*(?:/(?!\])[^\]/]*)*?)"         # 3: attributes
        r"(?:"
        r"(/)\]"                                 # 4: self-closing
        r"|"
        r"\](?:([^\[]*(?:\[(?!/\2\])[^\[]*)*)"   # 5: enclosed content
        r"\[/\2\])?"
        r")"
        r"(\]?)"                                 # 6: closing escape bracket
    )


class ShortcodeDispatcher:
    """Binds enabled snippets to tags and renders content through the executor."""

    def __init__(self, executor: ShortcodeExecutor):
        self.executor = executor
        self._lock = threading.Lock()
        self._tags: FrozenSet[str] = frozenset()
        self._pattern: Optional[re.Pattern[str]] = None

    @property
    def tags(self) -> FrozenSet[str]:
        return self._tags

    def install(self) -> List[str]:
        """(Re)bind every enabled snippet with a valid name; disabled ones stay unbound."""
        installed = []
        registry = self.executor.registry
        for name in registry.list():
            snippet = registry.get(name)
            if snippet is None or not snippet.enabled or not validate_shortcode_name(name):
                continue
            installed.append(name)

        with self._lock:
            self._tags = frozenset(installed)
            self._pattern = build_tag_pattern(installed) if installed else None

        logger.debug(
            f"Installed {len(installed)} shortcode bindings",
            extra={"event": "shortcode.bindings_installed", "count": len(installed)},
        )
        return installed

    def render(
        self,
        text: str,
        surface: Union[Surface, str] = Surface.NORMAL,
        author: Optional[Actor] = None,
    ) -> str:
        """Replace every bound tag in ``text`` with its snippet's output."""
        pattern = self._pattern
        if pattern is None or not text or "[" not in text:
            return text

        def replace_tag(match: re.Match[str]) -> str:
            if match.group(1) == "[" and match.group(6) == "]":
                return match.group(0)[1:-1]

            return match.group(1) + self.executor.invoke(
                match.group(2),
                parse_attributes(match.group(3)),
                match.group(5),
                surface=surface,
                author=author,
            ) + match.group(6)

        return pattern.sub(replace_tag, text)
