"""
Tests for snippet storage
"""

import json

import pytest

from shortcode_exec.core.exceptions import ConfigurationError
from shortcode_exec.registry import InMemoryRegistry, JsonFileRegistry, Settings, Snippet


@pytest.fixture(params=["memory", "file"])
def any_registry(request, tmp_path):
    if request.param == "memory":
        return InMemoryRegistry()
    return JsonFileRegistry(tmp_path / "shortcodes.json")


class TestRegistryContract:
    """Behavior shared by both implementations"""

    def test_put_and_get(self, any_registry):
        any_registry.put(Snippet(name="greet", code="return 1", enabled=True))
        snippet = any_registry.get("greet")
        assert snippet.code == "return 1"
        assert snippet.enabled is True
        assert snippet.buffer is False

    def test_get_missing(self, any_registry):
        assert any_registry.get("missing") is None

    def test_get_returns_copy(self, any_registry):
        any_registry.put(Snippet(name="greet", code="return 1"))
        any_registry.get("greet").code = "return 2"
        assert any_registry.get("greet").code == "return 1"

    def test_names_keep_registration_order(self, any_registry):
        for name in ["zeta", "alpha", "mid"]:
            any_registry.put(Snippet(name=name, code="return 1"))
        any_registry.put(Snippet(name="alpha", code="return 2"))
        assert any_registry.list() == ["zeta", "alpha", "mid"]

    def test_delete_removes_every_field(self, any_registry):
        any_registry.put(Snippet(name="greet", code="return 1", enabled=True, description="d"))
        any_registry.set_last_parameters("greet", {"name": "Ada"})

        assert any_registry.delete("greet") is True
        assert any_registry.get("greet") is None
        assert any_registry.list() == []
        assert any_registry.delete("greet") is False

    def test_last_parameters(self, any_registry):
        any_registry.put(Snippet(name="greet", code="return 1"))
        any_registry.set_last_parameters("greet", {"name": "Ada"})
        assert any_registry.get("greet").last_parameters == {"name": "Ada"}

        any_registry.set_last_parameters("greet", {})
        assert any_registry.get("greet").last_parameters is None

    def test_last_parameters_for_unknown_name_ignored(self, any_registry):
        any_registry.set_last_parameters("missing", {"a": "1"})
        assert any_registry.get("missing") is None

    def test_settings_defaults_and_update(self, any_registry):
        assert any_registry.settings() == Settings()
        any_registry.update_settings(Settings(feed=True, author_capability="publish_posts"))
        assert any_registry.settings().feed is True
        assert any_registry.settings().author_capability == "publish_posts"


class TestSnippet:
    def test_defaults(self):
        snippet = Snippet(name="greet")
        assert snippet.enabled is False
        assert snippet.buffer is False
        assert snippet.last_parameters is None

    def test_from_dict_tolerates_missing_fields(self):
        snippet = Snippet.from_dict("greet", {"code": "return 1", "last_parameters": {}})
        assert snippet.enabled is False
        assert snippet.description == ""
        assert snippet.last_parameters is None

    def test_settings_ignore_unknown_keys(self):
        settings = Settings.from_dict({"widget": True, "legacy_flag": 1})
        assert settings == Settings(widget=True)


class TestJsonFileRegistry:
    def test_persisted_shape(self, tmp_path):
        path = tmp_path / "shortcodes.json"
        registry = JsonFileRegistry(path)
        registry.put(Snippet(name="greet", code="return 1", enabled=True, description="Hi"))

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["names"] == ["greet"]
        assert data["snippets"]["greet"] == {
            "code": "return 1",
            "enabled": True,
            "buffer": False,
            "description": "Hi",
            "last_parameters": None,
        }
        assert data["settings"]["author_capability"] == "edit_posts"
        assert not (tmp_path / "shortcodes.json.tmp").exists()

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "shortcodes.json"
        first = JsonFileRegistry(path)
        first.put(Snippet(name="b", code="return 'b'", enabled=True))
        first.put(Snippet(name="a", code="return 'a'"))
        first.set_last_parameters("b", {"x": "1"})
        first.update_settings(Settings(widget=True))

        second = JsonFileRegistry(path)
        assert second.list() == ["b", "a"]
        assert second.get("b").last_parameters == {"x": "1"}
        assert second.settings().widget is True

    def test_reload_picks_up_external_change(self, tmp_path):
        path = tmp_path / "shortcodes.json"
        registry = JsonFileRegistry(path)
        other = JsonFileRegistry(path)
        other.put(Snippet(name="greet", code="return 1"))

        assert registry.get("greet") is None
        registry.reload()
        assert registry.get("greet").code == "return 1"

    def test_missing_file_starts_empty(self, tmp_path):
        registry = JsonFileRegistry(tmp_path / "nested" / "shortcodes.json")
        assert registry.list() == []
        registry.put(Snippet(name="greet", code="return 1"))
        assert (tmp_path / "nested" / "shortcodes.json").exists()

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"snippets": [1]}'])
    def test_invalid_file(self, tmp_path, content):
        path = tmp_path / "shortcodes.json"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigurationError):
            JsonFileRegistry(path)

    def test_names_list_repaired(self, tmp_path):
        path = tmp_path / "shortcodes.json"
        path.write_text(json.dumps({
            "names": ["ghost", "b"],
            "snippets": {"a": {"code": "return 1"}, "b": {"code": "return 2"}},
        }), encoding="utf-8")
        assert JsonFileRegistry(path).list() == ["b", "a"]
