"""reqflow models - request definitions, responses, history and saved records."""

from __future__ import annotations

import copy
import datetime
import json
import uuid
from typing import Any

from reqflow.errors import DefinitionError

METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD")
BODY_TYPES = ("none", "json", "raw", "x-www-form-urlencoded", "form-data", "binary")
FORM_BODY_TYPES = ("x-www-form-urlencoded", "form-data")
TEXT_BODY_TYPES = ("json", "raw")
AUTH_TYPES = ("none", "bearer", "basic", "apikey", "oauth2")
AUTH_ALIASES = {"api-key": "apikey", "api_key": "apikey", "oauth": "oauth2"}

DEFAULT_TIMEOUT_MS = 30000


def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def _entries(value: Any, with_type: bool = False) -> list[dict]:
    """Normalise a header/param/form list.

    Accepts a mapping shorthand ({"Accept": "x"}) or a list of
    {key, value, enabled[, type]} dicts.
    """
    if not value:
        return []
    if isinstance(value, dict):
        value = [{"key": k, "value": v} for k, v in value.items()]
    if not isinstance(value, list):
        raise DefinitionError(f"Expected a mapping or list of entries, got {type(value).__name__}")
    out: list[dict] = []
    for item in value:
        if not isinstance(item, dict):
            raise DefinitionError(f"Invalid entry: {item!r}")
        entry = {
            "key": str(item.get("key", "")),
            "value": "" if item.get("value") is None else str(item.get("value")),
            "enabled": bool(item.get("enabled", True)),
        }
        if with_type:
            entry["type"] = "file" if item.get("type") == "file" else "text"
        out.append(entry)
    return out


def normalize_auth(auth: Any) -> dict:
    if not auth:
        return {"type": "none"}
    if not isinstance(auth, dict):
        raise DefinitionError(f"Auth config must be a mapping, got {type(auth).__name__}")
    auth = dict(auth)
    auth_type = str(auth.get("type", "none")).lower()
    auth_type = AUTH_ALIASES.get(auth_type, auth_type)
    if auth_type not in AUTH_TYPES:
        raise DefinitionError(f"Unknown auth type: {auth_type}")
    auth["type"] = auth_type
    if auth_type == "apikey":
        location = str(auth.get("location", "header")).lower()
        if location not in ("header", "query"):
            raise DefinitionError(f"Unknown api key location: {location}")
        auth["location"] = location
    return auth


class RequestDefinition:
    """A request as authored: may contain {{placeholders}} anywhere."""

    def __init__(
        self,
        method: str = "GET",
        url: str = "",
        headers: list[dict] | None = None,
        params: list[dict] | None = None,
        body_type: str = "none",
        body: str = "",
        form_data: list[dict] | None = None,
        binary_data: str = "",
        auth: dict | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        pre_request_script: str = "",
        test_script: str = "",
        id: str | None = None,
        name: str = "",
        folder_id: str | None = None,
    ):
        if body_type not in BODY_TYPES:
            raise DefinitionError(f"Unknown body type: {body_type}")
        self.id = id
        self.name = name
        self.method = (method or "GET").upper()
        self.url = url or ""
        self.headers = _entries(headers)
        self.params = _entries(params)
        self.body_type = body_type
        self.body = body or ""
        self.form_data = _entries(form_data, with_type=True)
        self.binary_data = binary_data or ""
        self.auth = normalize_auth(auth)
        self.timeout_ms = int(timeout_ms or DEFAULT_TIMEOUT_MS)
        self.pre_request_script = pre_request_script or ""
        self.test_script = test_script or ""
        self.folder_id = folder_id

    @classmethod
    def from_dict(cls, data: dict) -> RequestDefinition:
        """Build a definition from a YAML/JSON mapping.

        Besides the flat field names, accepts the file layout:
          body: {type: json, content: {...}}   # or fields: [...] / data: "<base64>"
          scripts: {pre_request: "...", test: "..."}
        """
        if not isinstance(data, dict):
            raise DefinitionError("Request definition must be a mapping")

        body_type = data.get("body_type", "none")
        body = data.get("body", "")
        form_data = data.get("form_data")
        binary_data = data.get("binary_data", "")

        if isinstance(body, dict) and body.get("type") in BODY_TYPES:
            block = body
            body_type = block.get("type", "none")
            body = block.get("content", "")
            form_data = block.get("fields", form_data)
            binary_data = block.get("data", binary_data)
        if isinstance(body, dict | list):
            body = json.dumps(body, indent=2)
            if body_type == "none":
                body_type = "json"

        scripts = data.get("scripts") or {}
        timeout = data.get("timeout_ms", data.get("timeout", DEFAULT_TIMEOUT_MS))

        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            method=data.get("method", "GET"),
            url=data.get("url", ""),
            headers=data.get("headers"),
            params=data.get("params", data.get("query")),
            body_type=body_type,
            body=body if body is not None else "",
            form_data=form_data,
            binary_data=binary_data,
            auth=data.get("auth"),
            timeout_ms=timeout,
            pre_request_script=scripts.get("pre_request", data.get("pre_request_script", "")),
            test_script=scripts.get("test", data.get("test_script", "")),
            folder_id=data.get("folder_id", data.get("folder")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "method": self.method,
            "url": self.url,
            "headers": copy.deepcopy(self.headers),
            "params": copy.deepcopy(self.params),
            "body_type": self.body_type,
            "body": self.body,
            "form_data": copy.deepcopy(self.form_data),
            "binary_data": self.binary_data,
            "auth": dict(self.auth),
            "timeout_ms": self.timeout_ms,
            "pre_request_script": self.pre_request_script,
            "test_script": self.test_script,
            "folder_id": self.folder_id,
        }

    def copy(self) -> RequestDefinition:
        return RequestDefinition.from_dict(self.to_dict())

    def header_map(self) -> dict[str, str]:
        """Enabled headers with a key, later entries winning."""
        return {h["key"]: h["value"] for h in self.headers if h["enabled"] and h["key"]}

    def display_name(self) -> str:
        return self.name or f"{self.method} {self.url}" or "Untitled Request"


class Response:
    """Normalized HTTP response. Non-2xx statuses are ordinary values."""

    def __init__(
        self,
        status: int = 0,
        status_text: str = "",
        headers: dict[str, str] | None = None,
        body: Any = None,
        raw_text: str = "",
        elapsed_ms: float = 0,
    ):
        self.status = status
        self.status_text = status_text
        self.headers = headers or {}
        self.body = body
        self.raw_text = raw_text
        self.elapsed_ms = elapsed_ms

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        lower = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lower:
                return v
        return None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "status_text": self.status_text,
            "headers": dict(self.headers),
            "body": self.body,
            "raw_text": self.raw_text,
            "elapsed_ms": self.elapsed_ms,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> Response | None:
        if not data:
            return None
        return cls(
            status=data.get("status", 0),
            status_text=data.get("status_text", ""),
            headers=data.get("headers") or {},
            body=data.get("body"),
            raw_text=data.get("raw_text", ""),
            elapsed_ms=data.get("elapsed_ms", 0),
        )


class HistoryEntry:
    """One past execution. status/status_text are None on hard failure."""

    def __init__(
        self,
        method: str,
        url: str,
        status: int | None = None,
        status_text: str | None = None,
        elapsed_ms: float = 0,
        timestamp: str | None = None,
        name: str | None = None,
        error: str | None = None,
        id: str | None = None,
    ):
        self.id = id or new_id()
        self.method = method
        self.url = url
        self.status = status
        self.status_text = status_text
        self.elapsed_ms = elapsed_ms
        self.timestamp = timestamp or now_iso()
        self.name = name
        self.error = error

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "method": self.method,
            "url": self.url,
            "status": self.status,
            "status_text": self.status_text,
            "elapsed_ms": self.elapsed_ms,
            "timestamp": self.timestamp,
        }
        if self.name:
            data["name"] = self.name
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> HistoryEntry:
        return cls(
            id=data.get("id"),
            method=data.get("method", "GET"),
            url=data.get("url", ""),
            status=data.get("status"),
            status_text=data.get("status_text"),
            elapsed_ms=data.get("elapsed_ms", 0),
            timestamp=data.get("timestamp"),
            name=data.get("name"),
            error=data.get("error"),
        )


class SavedRequestRecord:
    """A saved request plus its most recent response."""

    def __init__(
        self,
        method: str = "GET",
        url: str = "",
        headers: dict[str, str] | None = None,
        params: list[dict] | None = None,
        body_type: str = "none",
        body: str | None = None,
        form_data: list[dict] | None = None,
        binary_data: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        response: dict | None = None,
        name: str = "",
        folder_id: str | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
        id: str | None = None,
    ):
        self.id = id or new_id()
        self.name = name
        self.method = method
        self.url = url
        self.headers = dict(headers or {})
        self.params = _entries(params)
        self.body_type = body_type
        self.body = body
        self.form_data = _entries(form_data, with_type=True) if form_data is not None else None
        self.binary_data = binary_data
        self.timeout_ms = timeout_ms
        self.response = response
        self.folder_id = folder_id
        self.created_at = created_at or now_iso()
        self.updated_at = updated_at or self.created_at

    @classmethod
    def from_definition(
        cls,
        definition: RequestDefinition,
        resolved_headers: dict[str, str],
        response: Response | None = None,
    ) -> SavedRequestRecord:
        """Capture a definition the way it is saved after a send.

        The url stays pre-resolution; headers are the resolved map.
        """
        body_type = definition.body_type
        return cls(
            name=definition.display_name(),
            method=definition.method,
            url=definition.url,
            headers=resolved_headers,
            params=definition.params,
            body_type=body_type,
            body=definition.body if body_type in TEXT_BODY_TYPES else None,
            form_data=definition.form_data if body_type in FORM_BODY_TYPES else None,
            binary_data=definition.binary_data if body_type == "binary" else None,
            timeout_ms=definition.timeout_ms,
            response=response.to_dict() if response else None,
            folder_id=definition.folder_id,
        )

    def to_definition(self) -> RequestDefinition:
        """A definition that re-sends this record (auth is already in headers)."""
        return RequestDefinition(
            id=self.id,
            name=self.name,
            method=self.method,
            url=self.url,
            headers=self.headers,
            params=self.params,
            body_type=self.body_type,
            body=self.body or "",
            form_data=self.form_data,
            binary_data=self.binary_data or "",
            timeout_ms=self.timeout_ms,
            folder_id=self.folder_id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "params": copy.deepcopy(self.params),
            "body_type": self.body_type,
            "body": self.body,
            "form_data": copy.deepcopy(self.form_data),
            "binary_data": self.binary_data,
            "timeout_ms": self.timeout_ms,
            "response": copy.deepcopy(self.response),
            "folder_id": self.folder_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SavedRequestRecord:
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            method=data.get("method", "GET"),
            url=data.get("url", ""),
            headers=data.get("headers") or {},
            params=data.get("params"),
            body_type=data.get("body_type", "none"),
            body=data.get("body"),
            form_data=data.get("form_data"),
            binary_data=data.get("binary_data"),
            timeout_ms=data.get("timeout_ms", DEFAULT_TIMEOUT_MS),
            response=data.get("response"),
            folder_id=data.get("folder_id"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
