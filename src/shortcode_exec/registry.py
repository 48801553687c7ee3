"""
Snippet registry.

One storage interface for named snippets, their last-used parameters and
the global surface settings:

    get(name) / list() / put(snippet) / delete(name)
    set_last_parameters(name, params) / settings() / update_settings(settings)

Two implementations: an in-memory registry (tests, embedding) and a JSON
file registry persisted atomically with the shape

    {"names": [...], "snippets": {name: {...}}, "settings": {...}}
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from shortcode_exec.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CAPABILITY = "edit_posts"


@dataclass
class Snippet:
    """A named, persisted code body plus its execution flags"""
    name: str
    code: str = ""
    enabled: bool = False
    buffer: bool = False
    description: str = ""
    last_parameters: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("name")
        return data

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> Snippet:
        params = data.get("last_parameters") or None
        return cls(
            name=name,
            code=str(data.get("code", "") or ""),
            enabled=bool(data.get("enabled", False)),
            buffer=bool(data.get("buffer", False)),
            description=str(data.get("description", "") or ""),
            last_parameters=dict(params) if params else None,
        )


@dataclass(frozen=True)
class Settings:
    """Global flags; surface flags gate execution outside normal content"""
    widget: bool = False
    excerpt: bool = False
    comment: bool = False
    feed: bool = False
    author_capability: str = DEFAULT_CAPABILITY
    tinymce_capability: str = DEFAULT_CAPABILITY

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Settings:
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


class Registry(Protocol):
    def get(self, name: str) -> Optional[Snippet]:
        ...

    def list(self) -> List[str]:
        ...

    def put(self, snippet: Snippet) -> None:
        ...

    def delete(self, name: str) -> bool:
        ...

    def set_last_parameters(self, name: str, params: Optional[Mapping[str, str]]) -> None:
        ...

    def settings(self) -> Settings:
        ...

    def update_settings(self, settings: Settings) -> None:
        ...


class InMemoryRegistry:
    """Thread-safe dictionary-backed registry"""

    def __init__(
        self,
        snippets: Optional[List[Snippet]] = None,
        settings: Optional[Settings] = None,
    ):
        self._lock = threading.RLock()
        self._names: List[str] = []
        self._snippets: Dict[str, Snippet] = {}
        self._settings = settings or Settings()
        for snippet in snippets or []:
            self.put(snippet)

    def get(self, name: str) -> Optional[Snippet]:
        with self._lock:
            snippet = self._snippets.get(name)
            # Callers get a copy; mutations go through put()
            return replace(snippet) if snippet is not None else None

    def list(self) -> List[str]:
        with self._lock:
            return list(self._names)

    def put(self, snippet: Snippet) -> None:
        with self._lock:
            if snippet.name not in self._snippets:
                self._names.append(snippet.name)
            self._snippets[snippet.name] = replace(snippet)
            self._changed()

    def delete(self, name: str) -> bool:
        with self._lock:
            if name not in self._snippets:
                return False
            del self._snippets[name]
            self._names.remove(name)
            self._changed()
            return True

    def set_last_parameters(self, name: str, params: Optional[Mapping[str, str]]) -> None:
        with self._lock:
            snippet = self._snippets.get(name)
            if snippet is None:
                return
            snippet.last_parameters = dict(params) if params else None
            self._changed()

    def settings(self) -> Settings:
        with self._lock:
            return self._settings

    def update_settings(self, settings: Settings) -> None:
        with self._lock:
            self._settings = settings
            self._changed()

    def _changed(self) -> None:
        """Hook called with the lock held after every mutation."""

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "names": list(self._names),
                "snippets": {name: self._snippets[name].to_dict() for name in self._names},
                "settings": self._settings.to_dict(),
            }

    def _load_dict(self, data: Mapping[str, Any]) -> None:
        snippets = data.get("snippets") or {}
        if not isinstance(snippets, Mapping):
            raise ConfigurationError("Registry 'snippets' must be a mapping")
        names = [name for name in data.get("names") or [] if name in snippets]
        names.extend(name for name in snippets if name not in names)

        self._names = names
        self._snippets = {name: Snippet.from_dict(name, snippets[name]) for name in names}
        self._settings = Settings.from_dict(data.get("settings") or {})


class JsonFileRegistry(InMemoryRegistry):
    """
    Registry persisted to a single JSON file.

    Every mutation rewrites the file through a temporary file and
    ``os.replace`` so readers never see a partial document.
    """

    def __init__(self, path: Union[str, os.PathLike[str]]):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid registry file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Registry file {self.path} must contain an object")
        with self._lock:
            self._load_dict(data)
        logger.debug(
            f"Loaded {len(self._names)} snippets from {self.path}",
            extra={"event": "registry.loaded", "count": len(self._names)},
        )

    def reload(self) -> None:
        if self.path.exists():
            self._load()

    def _changed(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)
