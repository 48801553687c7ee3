"""
Snippet management operations.

Create, update, rename, delete and admin-test, each guarded by the
capability gate; code passes the sanitizer before it is stored, so a
rejected body is never persisted.

Errors are raised as ShortcodeError subclasses for CRUD callers:
InvalidNameError, AuthorizationError, NotFoundError, CodeRejectedError,
ValidationError.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from shortcode_exec.core.config import ConfigSource, resolve_config
from shortcode_exec.core.exceptions import (
    AuthorizationError,
    InvalidNameError,
    NotFoundError,
    ValidationError,
)
from shortcode_exec.registry import Registry, Settings, Snippet
from shortcode_exec.sandbox.audit import AuditLogger
from shortcode_exec.sandbox.code_sanitizer import ensure_clean, sanitize_description
from shortcode_exec.sandbox.name_validator import validate_shortcode_name
from shortcode_exec.sandbox.permissions import Action, Actor, CapabilityGate
from shortcode_exec.sandbox.secure_executor import ExecutionResult, ShortcodeExecutor, Surface

logger = logging.getLogger(__name__)

_CAPABILITY_KEY = re.compile(r"^[a-z0-9_-]+\Z")


class SnippetManager:
    """Admin-side operations on the registry"""

    def __init__(
        self,
        registry: Registry,
        gate: Optional[CapabilityGate] = None,
        config: ConfigSource = None,
        audit: Optional[AuditLogger] = None,
        executor: Optional[ShortcodeExecutor] = None,
    ):
        self.registry = registry
        self.gate = gate or CapabilityGate()
        self._config = config
        self.audit = audit or AuditLogger(config=config)
        self.executor = executor or ShortcodeExecutor(
            registry, gate=self.gate, config=config, audit=self.audit
        )

    def _require(self, actor: Optional[Actor], action: Action, name: Optional[str] = None) -> None:
        if not self.gate.authorize(actor, action):
            logger.warning(
                f"Denied {action.value} on {name}",
                extra={"event": "shortcode.denied", "action": action.value, "shortcode_name": name},
            )
            raise AuthorizationError(action.value, name)

    def list_snippets(self) -> List[Snippet]:
        """Snippets in registration order"""
        snippets = []
        for name in self.registry.list():
            snippet = self.registry.get(name)
            if snippet is not None:
                snippets.append(snippet)
        return snippets

    def save(
        self,
        actor: Optional[Actor],
        name: Any,
        code: Any,
        enabled: bool = False,
        buffer: bool = False,
        description: Any = "",
    ) -> Snippet:
        """
        Create or update a snippet.

        Returns:
            The stored snippet

        Raises:
            InvalidNameError: Name fails validation
            AuthorizationError: Actor may not create/edit
            CodeRejectedError: Sanitizer rejected the code
        """
        if not validate_shortcode_name(name):
            raise InvalidNameError(name)

        existing = self.registry.get(name)
        action = Action.EDIT if existing is not None else Action.CREATE
        self._require(actor, action, name)

        clean_code = ensure_clean(code, resolve_config(self._config))

        snippet = Snippet(
            name=name,
            code=clean_code,
            enabled=bool(enabled),
            buffer=bool(buffer),
            description=sanitize_description(description),
            last_parameters=existing.last_parameters if existing is not None else None,
        )
        self.registry.put(snippet)

        status = "updated" if existing is not None else "created"
        self.audit.record(name, status, f"Shortcode {status}", actor=actor)
        logger.info(
            f"Shortcode {name} {status}",
            extra={"event": f"shortcode.{status}", "shortcode_name": name, "enabled": snippet.enabled},
        )
        return snippet

    def delete(self, actor: Optional[Actor], name: str) -> None:
        """Remove a snippet and every field stored with it."""
        self._require(actor, Action.DELETE, name)
        if not self.registry.delete(name):
            raise NotFoundError(f"Shortcode not found: {name}", details={"name": name})

        self.audit.record(name, "deleted", "Shortcode deleted", actor=actor)
        logger.info(
            f"Shortcode {name} deleted",
            extra={"event": "shortcode.deleted", "shortcode_name": name},
        )

    def rename(self, actor: Optional[Actor], old_name: str, new_name: Any) -> Snippet:
        """Rename by recreating the snippet under the new name and deleting the old one."""
        if not validate_shortcode_name(new_name):
            raise InvalidNameError(new_name)

        existing = self.registry.get(old_name)
        if existing is None:
            raise NotFoundError(f"Shortcode not found: {old_name}", details={"name": old_name})
        if new_name == old_name:
            return existing
        if self.registry.get(new_name) is not None:
            raise ValidationError(
                f"Shortcode already exists: {new_name}",
                details={"name": new_name},
            )

        self._require(actor, Action.CREATE, new_name)
        self._require(actor, Action.DELETE, old_name)

        created = self.save(
            actor,
            new_name,
            existing.code,
            enabled=existing.enabled,
            buffer=existing.buffer,
            description=existing.description,
        )
        self.delete(actor, old_name)
        return created

    def test(
        self,
        actor: Optional[Actor],
        name: str,
        attributes: Optional[Mapping[str, Any]] = None,
        content: Optional[str] = None,
    ) -> ExecutionResult:
        """Run a snippet from the admin screen with the given attributes."""
        return self.executor.execute(
            name,
            attributes,
            content,
            surface=Surface.ADMIN_TEST,
            viewer=actor if actor is not None else Actor.anonymous(),
        )

    def update_settings(self, actor: Optional[Actor], **changes: Any) -> Settings:
        """
        Change global settings.

        Raises:
            AuthorizationError: Actor may not edit settings
            ValidationError: Unknown setting or malformed capability name
        """
        self._require(actor, Action.EDIT)

        current = self.registry.settings()
        cleaned: Dict[str, Any] = {}
        for key, value in changes.items():
            if not hasattr(current, key):
                raise ValidationError(f"Unknown setting: {key}", details={"setting": key})
            if key.endswith("_capability"):
                value = str(value).strip().lower()
                if not _CAPABILITY_KEY.match(value):
                    raise ValidationError(
                        f"Invalid capability name: {value!r}",
                        details={"setting": key},
                    )
            else:
                value = bool(value)
            cleaned[key] = value

        settings = replace(current, **cleaned)
        self.registry.update_settings(settings)
        logger.info(
            "Shortcode settings updated",
            extra={"event": "shortcode.settings_updated", "changed": sorted(cleaned)},
        )
        return settings
