"""reqflow variables - {{placeholder}} resolution across layered scopes."""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Any

import yaml

from reqflow.errors import PersistenceError

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{([^{}]+)\}\}")

TIERS = ("global", "folder", "environment")


class VariableScopes:
    """All variable tiers known to the process.

    global_vars   - flat key -> value map, no owning folder
    folders       - folder id -> flat map
    environments  - environment id -> flat map
    """

    def __init__(
        self,
        global_vars: dict[str, str] | None = None,
        folders: dict[str, dict[str, str]] | None = None,
        environments: dict[str, dict[str, str]] | None = None,
        active_environment: str | None = None,
    ):
        self.global_vars = dict(global_vars or {})
        self.folders = {k: dict(v or {}) for k, v in (folders or {}).items()}
        self.environments = {k: dict(v or {}) for k, v in (environments or {}).items()}
        self.active_environment = active_environment

    def for_run(
        self,
        folder_id: str | None = None,
        environment_id: str | None = None,
    ) -> dict[str, dict[str, str]]:
        """Flat {global, folder, environment} view for one execution."""
        return {
            "global": dict(self.global_vars),
            "folder": dict(self.folders.get(folder_id, {})) if folder_id else {},
            "environment": (
                dict(self.environments.get(environment_id, {})) if environment_id else {}
            ),
        }

    def to_dict(self) -> dict:
        return {
            "global": dict(self.global_vars),
            "folders": {k: dict(v) for k, v in self.folders.items()},
            "environments": {k: dict(v) for k, v in self.environments.items()},
            "active_environment": self.active_environment,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> VariableScopes:
        data = data or {}
        return cls(
            global_vars=_stringify(data.get("global")),
            folders={str(k): _stringify(v) for k, v in (data.get("folders") or {}).items()},
            environments={
                str(k): _stringify(v) for k, v in (data.get("environments") or {}).items()
            },
            active_environment=data.get("active_environment"),
        )


def _stringify(mapping: dict | None) -> dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in (mapping or {}).items()}


def effective_variables(
    scopes: VariableScopes | dict,
    folder_id: str | None = None,
    environment_id: str | None = None,
) -> dict[str, str]:
    """Layer Global, then Folder, then Environment; later layers win.

    ``scopes`` is either a VariableScopes or an already-flattened
    {global, folder, environment} view, in which case the ids are ignored
    and every present tier is applied.
    """
    if isinstance(scopes, VariableScopes):
        scopes = scopes.for_run(folder_id, environment_id)
    merged: dict[str, str] = {}
    for tier in TIERS:
        merged.update(scopes.get(tier) or {})
    return merged


def substitute(text: Any, variables: dict[str, str]) -> Any:
    """Replace each {{ key }} with its binding; unbound tokens stay verbatim."""
    if not isinstance(text, str) or "{{" not in text:
        return text

    def _replace(m: re.Match) -> str:
        key = m.group(1).strip()
        if key in variables:
            return str(variables[key])
        return m.group(0)

    return PLACEHOLDER_RE.sub(_replace, text)


def substitute_deep(value: Any, variables: dict[str, str]) -> Any:
    """Recursively substitute every string leaf in dicts, lists and tuples."""
    if isinstance(value, str):
        return substitute(value, variables)
    if isinstance(value, dict):
        return {k: substitute_deep(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_deep(item, variables) for item in value]
    if isinstance(value, tuple):
        return tuple(substitute_deep(item, variables) for item in value)
    return value


def resolve(
    text: Any,
    scopes: VariableScopes | dict,
    folder_id: str | None = None,
    environment_id: str | None = None,
) -> Any:
    return substitute(text, effective_variables(scopes, folder_id, environment_id))


def resolve_deep(
    value: Any,
    scopes: VariableScopes | dict,
    folder_id: str | None = None,
    environment_id: str | None = None,
) -> Any:
    return substitute_deep(value, effective_variables(scopes, folder_id, environment_id))


def placeholder_names(text: Any) -> list[str]:
    if not isinstance(text, str):
        return []
    return [m.group(1).strip() for m in PLACEHOLDER_RE.finditer(text)]


def unresolved_names(
    text: Any,
    scopes: VariableScopes | dict,
    folder_id: str | None = None,
    environment_id: str | None = None,
) -> list[str]:
    """Placeholder names in text with no binding in any active tier."""
    variables = effective_variables(scopes, folder_id, environment_id)
    missing: list[str] = []
    for name in placeholder_names(text):
        if name not in variables and name not in missing:
            missing.append(name)
    return missing


def all_resolved(
    text: Any,
    scopes: VariableScopes | dict,
    folder_id: str | None = None,
    environment_id: str | None = None,
) -> bool:
    """Advisory check only; unresolved text is still allowed to dispatch."""
    return not unresolved_names(text, scopes, folder_id, environment_id)


# ── Variable store ───────────────────────────────────────────────────────


class VariableStore:
    """YAML-backed holder of all variable tiers.

    File layout (variables.yaml):

        global: {host: api.local}
        folders:
          users: {path: /users}
        environments:
          staging: {host: staging.api.local}
        active_environment: staging
    """

    def __init__(self, path: str | Path | None = None, scopes: VariableScopes | None = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._scopes = scopes or self._load()

    def _load(self) -> VariableScopes:
        if not self.path or not self.path.exists():
            return VariableScopes()
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise PersistenceError(f"{self.path} does not contain a mapping")
            return VariableScopes.from_dict(data)
        except (OSError, yaml.YAMLError, PersistenceError) as e:
            logger.warning("Failed to load variables from %s: %s", self.path, e)
            return VariableScopes()

    def _save(self) -> None:
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                yaml.safe_dump(self._scopes.to_dict(), f, sort_keys=False)
        except OSError as e:
            logger.warning("Failed to save variables to %s: %s", self.path, e)

    def scopes(self) -> VariableScopes:
        with self._lock:
            return VariableScopes.from_dict(self._scopes.to_dict())

    @property
    def active_environment(self) -> str | None:
        return self._scopes.active_environment

    def get_scopes(
        self,
        folder_id: str | None = None,
        environment_id: str | None = None,
    ) -> dict[str, dict[str, str]]:
        with self._lock:
            return self._scopes.for_run(folder_id, environment_id)

    def _tier(self, folder_id: str | None, environment_id: str | None) -> dict[str, str]:
        if environment_id:
            return self._scopes.environments.setdefault(environment_id, {})
        if folder_id:
            return self._scopes.folders.setdefault(folder_id, {})
        return self._scopes.global_vars

    def set(
        self,
        key: str,
        value: Any,
        folder_id: str | None = None,
        environment_id: str | None = None,
    ) -> None:
        """Bind key in the environment tier if given, else the folder, else global."""
        with self._lock:
            self._tier(folder_id, environment_id)[key] = "" if value is None else str(value)
            self._save()

    def unset(
        self,
        key: str,
        folder_id: str | None = None,
        environment_id: str | None = None,
    ) -> bool:
        with self._lock:
            removed = self._tier(folder_id, environment_id).pop(key, None) is not None
            if removed:
                self._save()
            return removed

    def replace_environment(self, environment_id: str, values: dict[str, Any]) -> None:
        with self._lock:
            self._scopes.environments[environment_id] = _stringify(values)
            self._save()

    def set_active_environment(self, environment_id: str | None) -> None:
        with self._lock:
            self._scopes.active_environment = environment_id
            self._save()
