"""
Capability Gate for Shortcode Management

Role-based authorization with:
- A baseline check (authenticated, holds the management capability)
- Per-action refinement through a dispatch table
- Content-author capability check for execution
- Fail-closed handling of unknown actions

The gate is a pure decision function over an actor snapshot. It neither
logs nor records anything; the executor writes one audit record per
invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Union

MANAGE_CAPABILITY = "manage_options"
DEFAULT_AUTHOR_CAPABILITY = "edit_posts"

# Capabilities implied by the stock roles of the host platform
ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "administrator": frozenset({
        "manage_options",
        "edit_posts",
        "edit_others_posts",
        "publish_posts",
        "unfiltered_html",
        "read",
    }),
    "editor": frozenset({
        "edit_posts",
        "edit_others_posts",
        "publish_posts",
        "unfiltered_html",
        "read",
    }),
    "author": frozenset({"edit_posts", "publish_posts", "read"}),
    "contributor": frozenset({"edit_posts", "read"}),
    "subscriber": frozenset({"read"}),
}


class Action(Enum):
    """Operations the gate can authorize"""
    EXECUTE = "execute"
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    IMPORT = "import"
    EXPORT = "export"


# Long-form names used by admin request handlers
_ACTION_ALIASES = {
    "execute_shortcode": Action.EXECUTE,
    "edit_shortcode": Action.EDIT,
    "create_shortcode": Action.CREATE,
    "delete_shortcode": Action.DELETE,
    "import_shortcodes": Action.IMPORT,
    "export_shortcodes": Action.EXPORT,
}


@dataclass(frozen=True)
class Actor:
    """Snapshot of the requesting user"""
    user_id: Optional[Union[int, str]] = None
    authenticated: bool = False
    roles: FrozenSet[str] = field(default_factory=frozenset)
    capabilities: FrozenSet[str] = field(default_factory=frozenset)
    ip_address: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "capabilities", frozenset(self.capabilities))

    def has_capability(self, capability: str) -> bool:
        if capability in self.capabilities:
            return True
        return any(
            capability in ROLE_CAPABILITIES.get(role, frozenset())
            for role in self.roles
        )

    @classmethod
    def anonymous(cls, ip_address: Optional[str] = None) -> Actor:
        return cls(ip_address=ip_address)

    @classmethod
    def administrator(cls, user_id: Union[int, str] = 1, ip_address: Optional[str] = None) -> Actor:
        return cls(
            user_id=user_id,
            authenticated=True,
            roles=frozenset({"administrator"}),
            ip_address=ip_address,
        )


@dataclass(frozen=True)
class GateContext:
    """Optional per-check context"""
    snippet: Optional[str] = None
    author: Optional[Actor] = None
    author_capability: str = DEFAULT_AUTHOR_CAPABILITY


def coerce_action(action: Any) -> Optional[Action]:
    """Map an Action or its string form to an Action; None if unknown."""
    if isinstance(action, Action):
        return action
    if not isinstance(action, str):
        return None
    normalized = action.strip().lower()
    if normalized in _ACTION_ALIASES:
        return _ACTION_ALIASES[normalized]
    try:
        return Action(normalized)
    except ValueError:
        return None


Rule = Callable[[Actor, Optional[GateContext]], bool]


class CapabilityGate:
    """
    Decides whether an actor may perform an action.

    Every action first requires an authenticated actor holding
    ``manage_capability``; the dispatch table then refines per action.
    """

    def __init__(self, manage_capability: str = MANAGE_CAPABILITY):
        self.manage_capability = manage_capability
        self._rules: Dict[Action, Rule] = {
            Action.EXECUTE: self._can_execute,
            Action.EDIT: self._baseline_only,
            Action.CREATE: self._baseline_only,
            Action.DELETE: self._baseline_only,
            Action.IMPORT: self._baseline_only,
            Action.EXPORT: self._baseline_only,
        }

    def authorize(
        self,
        actor: Optional[Actor],
        action: Union[Action, str],
        context: Optional[GateContext] = None,
    ) -> bool:
        """
        Check whether ``actor`` may perform ``action``.

        Args:
            actor: Requesting user snapshot (None means anonymous)
            action: Action enum or its string form
            context: Snippet name and content author, when known

        Returns:
            True if allowed, False otherwise (including unknown actions)
        """
        if actor is None or not actor.authenticated:
            return False

        if not actor.has_capability(self.manage_capability):
            return False

        resolved = coerce_action(action)
        if resolved is None:
            return False

        rule = self._rules.get(resolved)
        if rule is None:
            return False
        return bool(rule(actor, context))

    def _baseline_only(self, actor: Actor, context: Optional[GateContext]) -> bool:
        return True

    def _can_execute(self, actor: Actor, context: Optional[GateContext]) -> bool:
        # Content written by an author lacking the configured capability
        # never runs, whoever views it.
        if context is not None and context.author is not None:
            return context.author.has_capability(context.author_capability)
        return True
