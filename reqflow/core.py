"""reqflow core - config loading, resource directories, request definition files."""

from __future__ import annotations

import base64
import logging
import mimetypes
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from reqflow.errors import DefinitionError
from reqflow.models import DEFAULT_TIMEOUT_MS, RequestDefinition, normalize_auth

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".reqflow"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".reqflow.yaml",
    ".reqflow.yml",
    "reqflow.yaml",
    "reqflow.yml",
]

DEFINITION_EXTENSIONS = (".yaml", ".yml")


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (hard, no fallthrough if missing)
      2. .reqflow.yaml (variants) in CWD
      3. ~/.reqflow/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Load YAML config. Returns empty defaults if not found.

    '_config_dir' is kept so relative directories in the config resolve
    against the config file rather than the CWD.
    """
    if config_path is None:
        return {"defaults": {}, "_config_dir": None}
    path = Path(config_path)
    if not path.exists():
        return {"defaults": {}, "_config_dir": None}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise DefinitionError(f"Config file {path} must contain a mapping")
    return {
        "defaults": data.get("defaults") or {},
        "_config_dir": path.resolve().parent,
    }


def load_env(env_file: str | None, base_dir: str | Path = ".") -> dict[str, str]:
    """os.environ overlaid with the .env file, if one is configured."""
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir) / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
        else:
            logger.debug("env file %s not found", dotenv_path)
    return env


def resolve_value(value: Any, env: dict[str, str]) -> Any:
    """Resolve $VAR and ${VAR} references in a string; other values pass through."""
    if not isinstance(value, str):
        return value

    def _replace(m: re.Match) -> str:
        var_name = m.group(1) or m.group(2)
        return env.get(var_name, os.environ.get(var_name, m.group(0)))

    return re.sub(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)", _replace, value)


def resolve_values(value: Any, env: dict[str, str]) -> Any:
    if isinstance(value, dict):
        return {k: resolve_values(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_values(v, env) for v in value]
    return resolve_value(value, env)


# ── Resource directories ─────────────────────────────────────────────────


def _resource_candidates(
    resource_name: str,
    cli_override: str | None,
    config: dict,
) -> list[Path]:
    """Ordered candidate list for a named resource directory."""
    if cli_override:
        p = Path(cli_override)
        if not p.is_absolute():
            p = Path.cwd() / p
        return [p]

    candidates: list[Path] = []
    defaults = config.get("defaults", {})
    config_value = defaults.get(f"{resource_name}_dir")
    config_dir = config.get("_config_dir")
    if config_value:
        p = Path(config_value)
        if not p.is_absolute() and config_dir:
            p = Path(config_dir) / p
        candidates.append(p)

    candidates.append(Path(resource_name))
    candidates.append(GLOBAL_DIR / resource_name)
    return candidates


def resolve_resource_dir(
    resource_name: str,
    cli_override: str | None,
    config: dict,
    default: Path | None = None,
) -> Path | None:
    """Find a resource directory by name.

    Resolution order:
      1. cli_override (absolute or relative to CWD; no fallthrough)
      2. {resource_name}_dir from config defaults (relative to config file)
      3. ./{resource_name}/ in CWD
      4. ~/.reqflow/{resource_name}/

    If none exists, returns default (the caller may create it).
    """
    candidates = _resource_candidates(resource_name, cli_override, config)
    return resolve_path(candidates, default=default)


def resolve_data_dir(cli_override: str | None, config: dict) -> Path:
    """Directory for history, saved requests and variables."""
    if cli_override:
        return _resource_candidates("data", cli_override, config)[0]
    return resolve_resource_dir("data", None, config, default=GLOBAL_DIR / "data")


# ── Request definition files ─────────────────────────────────────────────


def _read_definition_file(path: Path) -> RequestDefinition | None:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Cannot read request definition %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Request definition %s is not a mapping", path)
        return None
    data.setdefault("name", path.stem)
    try:
        return RequestDefinition.from_dict(data)
    except DefinitionError as e:
        raise DefinitionError(f"{path}: {e}") from e


def _find_in_dir(directory: Path, name: str) -> RequestDefinition | None:
    if not directory.is_dir():
        return None
    for ext in DEFINITION_EXTENSIONS:
        candidate = directory / (name + ext)
        if candidate.exists():
            return _read_definition_file(candidate)
    return None


def load_definition(
    name_or_path: str,
    config: dict,
    requests_dir_override: str | None = None,
) -> RequestDefinition | None:
    """Load a request definition.

    Resolution order:
      1. Exact file path, or the path with .yaml/.yml appended
      2. Resolved requests directory + name.yaml
    """
    p = Path(name_or_path)
    if p.exists() and p.is_file():
        return _read_definition_file(p)
    for ext in DEFINITION_EXTENSIONS:
        candidate = Path(name_or_path + ext)
        if candidate.exists():
            return _read_definition_file(candidate)

    rdir = resolve_resource_dir("requests", requests_dir_override, config)
    if rdir:
        return _find_in_dir(rdir, name_or_path)
    return None


def definition_search_paths(
    name: str,
    config: dict,
    requests_dir_override: str | None = None,
) -> list[str]:
    """Human-readable list of paths checked for a request definition."""
    paths = [name, f"{name}.yaml"]
    for c in _resource_candidates("requests", requests_dir_override, config):
        paths.append(str(c / f"{name}.yaml"))
    return paths


def list_definitions(
    config: dict,
    requests_dir_override: str | None = None,
) -> tuple[Path | None, list[RequestDefinition]]:
    """All definition files in the resolved requests directory."""
    rdir = resolve_resource_dir("requests", requests_dir_override, config)
    if not rdir or not rdir.is_dir():
        return (rdir, [])
    definitions: list[RequestDefinition] = []
    for f in sorted(rdir.iterdir()):
        if f.suffix in DEFINITION_EXTENSIONS and f.is_file():
            definition = _read_definition_file(f)
            if definition:
                definitions.append(definition)
    return (rdir, definitions)


# ── Config defaults ──────────────────────────────────────────────────────


def apply_defaults(
    definition: RequestDefinition,
    config: dict,
    env: dict[str, str],
) -> RequestDefinition:
    """Layer config defaults and $VAR references into a definition.

    base_url prefixes relative URLs (but not ones that start with a
    {{placeholder}}); default headers fill in names the definition lacks;
    default auth applies only when the definition has none.
    """
    defaults = config.get("defaults", {})

    base_url = resolve_value(defaults.get("base_url"), env) or ""
    url = definition.url
    if base_url and not url.startswith(("http://", "https://", "{{")):
        if url and not url.startswith("/"):
            url = "/" + url
        definition.url = base_url.rstrip("/") + url

    present = {h["key"].lower() for h in definition.headers}
    for key, value in (defaults.get("headers") or {}).items():
        if key.lower() not in present:
            definition.headers.append({"key": key, "value": str(value), "enabled": True})
    for h in definition.headers:
        h["value"] = resolve_value(h["value"], env)

    if definition.auth.get("type", "none") == "none" and defaults.get("auth"):
        definition.auth = dict(defaults["auth"])
    definition.auth = normalize_auth(resolve_values(definition.auth, env))

    if definition.timeout_ms == DEFAULT_TIMEOUT_MS and defaults.get("timeout"):
        definition.timeout_ms = int(defaults["timeout"])
    return definition


# ── CLI argument parsing ─────────────────────────────────────────────────


def parse_key_values(pairs: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse key=value pairs; entries without '=' are ignored."""
    out: dict[str, str] = {}
    for pair in pairs:
        if "=" in pair:
            k, v = pair.split("=", 1)
            out[k.strip()] = v.strip()
    return out


def parse_headers(header_specs: tuple[str, ...] | list[str]) -> list[dict]:
    """Parse -H 'Name: Value' specs into header entries."""
    headers = []
    for h in header_specs:
        if ":" in h:
            k, v = h.split(":", 1)
            headers.append({"key": k.strip(), "value": v.strip(), "enabled": True})
    return headers


def parse_form_fields(form_specs: tuple[str, ...] | list[str]) -> list[dict]:
    """Parse KEY=VALUE and KEY=@FILE form specs into form entries.

    File contents are embedded as a base64 data: URL with a guessed mime type.
    """
    fields: list[dict] = []
    for spec in form_specs:
        if "=" not in spec:
            continue
        key, value = spec.split("=", 1)
        key = key.strip()
        if value.startswith("@"):
            filepath = Path(value[1:]).expanduser()
            try:
                content = filepath.read_bytes()
            except OSError as e:
                raise DefinitionError(f"Cannot read form file {filepath}: {e}") from e
            mime = mimetypes.guess_type(str(filepath))[0] or "application/octet-stream"
            encoded = base64.b64encode(content).decode("ascii")
            fields.append({
                "key": key,
                "value": f"data:{mime};base64,{encoded}",
                "type": "file",
                "enabled": True,
            })
        else:
            fields.append({"key": key, "value": value, "type": "text", "enabled": True})
    return fields
