"""
Tests for the capability gate
"""

import logging

import pytest

from shortcode_exec.sandbox.permissions import (
    Action,
    Actor,
    CapabilityGate,
    GateContext,
    coerce_action,
)


class TestActor:
    def test_role_implies_capabilities(self):
        actor = Actor(authenticated=True, roles=frozenset({"administrator"}))
        assert actor.has_capability("manage_options")
        assert actor.has_capability("edit_posts")

    def test_explicit_capability(self):
        actor = Actor(authenticated=True, capabilities=frozenset({"manage_options"}))
        assert actor.has_capability("manage_options")
        assert not actor.has_capability("edit_posts")

    def test_unknown_role_grants_nothing(self):
        actor = Actor(authenticated=True, roles=frozenset({"ghost"}))
        assert not actor.has_capability("read")

    def test_sets_are_frozen(self):
        actor = Actor(roles={"editor"}, capabilities=["x"])
        assert isinstance(actor.roles, frozenset)
        assert isinstance(actor.capabilities, frozenset)


class TestBaseline:
    """Authentication and the management capability are required for everything"""

    @pytest.mark.parametrize("action", list(Action))
    def test_admin_allowed(self, admin, action):
        assert CapabilityGate().authorize(admin, action) is True

    @pytest.mark.parametrize("action", list(Action))
    def test_anonymous_denied(self, anonymous, action):
        assert CapabilityGate().authorize(anonymous, action) is False

    @pytest.mark.parametrize("action", list(Action))
    def test_editor_denied(self, editor, action):
        assert CapabilityGate().authorize(editor, action) is False

    def test_none_actor_denied(self):
        assert CapabilityGate().authorize(None, Action.EXECUTE) is False

    def test_unauthenticated_admin_role_denied(self):
        actor = Actor(authenticated=False, roles=frozenset({"administrator"}))
        assert CapabilityGate().authorize(actor, Action.EDIT) is False


class TestActions:
    @pytest.mark.parametrize("value,expected", [
        ("execute", Action.EXECUTE),
        ("EDIT", Action.EDIT),
        (" create ", Action.CREATE),
        ("delete_shortcode", Action.DELETE),
        ("import_shortcodes", Action.IMPORT),
        ("export_shortcodes", Action.EXPORT),
        (Action.EXPORT, Action.EXPORT),
    ])
    def test_coerce(self, value, expected):
        assert coerce_action(value) is expected

    @pytest.mark.parametrize("value", ["publish", "", None, 3, "execute_everything"])
    def test_unknown_action_denied(self, admin, value):
        assert coerce_action(value) is None
        assert CapabilityGate().authorize(admin, value) is False

    def test_string_action_allowed(self, admin):
        assert CapabilityGate().authorize(admin, "execute") is True


class TestExecuteContext:
    def test_author_with_capability_allowed(self, admin):
        author = Actor(user_id=9, authenticated=True, roles=frozenset({"contributor"}))
        context = GateContext(snippet="greet", author=author)
        assert CapabilityGate().authorize(admin, Action.EXECUTE, context) is True

    def test_author_without_capability_denied(self, admin):
        author = Actor(user_id=9, authenticated=True, roles=frozenset({"subscriber"}))
        context = GateContext(snippet="greet", author=author)
        assert CapabilityGate().authorize(admin, Action.EXECUTE, context) is False

    def test_configured_author_capability(self, admin):
        author = Actor(user_id=9, authenticated=True, roles=frozenset({"author"}))
        context = GateContext(snippet="greet", author=author, author_capability="unfiltered_html")
        assert CapabilityGate().authorize(admin, Action.EXECUTE, context) is False

    def test_author_only_checked_for_execute(self, admin):
        author = Actor(roles=frozenset({"subscriber"}))
        context = GateContext(snippet="greet", author=author)
        assert CapabilityGate().authorize(admin, Action.EDIT, context) is True

    def test_context_without_author(self, admin):
        assert CapabilityGate().authorize(admin, Action.EXECUTE, GateContext(snippet="x")) is True


class TestGatePurity:
    def test_gate_does_not_log(self, admin, anonymous, caplog):
        gate = CapabilityGate()
        with caplog.at_level(logging.DEBUG):
            gate.authorize(admin, Action.EXECUTE)
            gate.authorize(anonymous, Action.EXECUTE)
            gate.authorize(admin, "bogus")
        assert caplog.records == []

    def test_custom_manage_capability(self):
        actor = Actor(authenticated=True, capabilities=frozenset({"manage_snippets"}))
        assert CapabilityGate(manage_capability="manage_snippets").authorize(actor, Action.EDIT)
        assert not CapabilityGate().authorize(actor, Action.EDIT)
