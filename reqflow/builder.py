"""reqflow builder - turn a resolved RequestDefinition into a wire request."""

from __future__ import annotations

import base64
import binascii
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from reqflow.errors import DefinitionError, RequestBuildError
from reqflow.models import BODY_TYPES, RequestDefinition

DEFAULT_FILE_MIME = "application/octet-stream"

# Content-Type values the body type owns; raw/form-data/none own nothing.
AUTO_CONTENT_TYPES = {
    "json": "application/json",
    "x-www-form-urlencoded": "application/x-www-form-urlencoded",
    "binary": "application/octet-stream",
}


class WireRequest:
    """A request ready for the transport: no placeholders, no auth config."""

    def __init__(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: bytes | str | None = None,
        form_fields: list[tuple[str, str]] | None = None,
        files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
        timeout_ms: int | None = None,
    ):
        self.method = method
        self.url = url
        self.headers = headers or {}
        self.body = body
        self.form_fields = form_fields or []
        self.files = files or []
        self.timeout_ms = timeout_ms

    @property
    def is_multipart(self) -> bool:
        return bool(self.files or self.form_fields)

    def header(self, name: str) -> str | None:
        key = _find_key(self.headers, name)
        return self.headers[key] if key is not None else None

    def to_dict(self) -> dict:
        body = self.body
        if isinstance(body, bytes):
            body = f"<{len(body)} bytes>"
        return {
            "method": self.method,
            "url": self.url,
            "headers": dict(self.headers),
            "body": body,
            "form_fields": [list(f) for f in self.form_fields],
            "files": [{"field": k, "filename": f[0], "size": len(f[1]), "type": f[2]}
                      for k, f in self.files],
            "timeout_ms": self.timeout_ms,
        }


def _find_key(headers: dict[str, str], name: str) -> str | None:
    lower = name.lower()
    for key in headers:
        if key.lower() == lower:
            return key
    return None


def _set_header(headers: dict[str, str], name: str, value: str) -> None:
    existing = _find_key(headers, name)
    if existing is not None:
        del headers[existing]
    headers[name] = value


def _drop_header(headers: dict[str, str], name: str) -> None:
    existing = _find_key(headers, name)
    while existing is not None:
        del headers[existing]
        existing = _find_key(headers, name)


def decode_payload(value: str) -> tuple[bytes, str | None]:
    """Decode base64 or a data: URL. Returns (bytes, mime from the prefix)."""
    mime = None
    data = value.strip()
    if data.startswith("data:"):
        prefix, _, data = data.partition(",")
        mime = prefix[5:].split(";")[0] or None
    try:
        return base64.b64decode(data, validate=True), mime
    except (binascii.Error, ValueError) as e:
        raise RequestBuildError("Invalid binary data") from e


# ── Query ────────────────────────────────────────────────────────────────


def merge_query(url: str, pairs: list[tuple[str, str]]) -> str:
    """Add query pairs to url; existing keys with the same name are replaced."""
    if not pairs:
        return url
    parts = urlsplit(url)
    if parts.scheme and parts.netloc:
        names = {k for k, _ in pairs}
        kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                if k not in names]
        query = urlencode(kept + list(pairs))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(pairs)}"


def query_pairs(url: str) -> list[tuple[str, str]]:
    return parse_qsl(urlsplit(url).query, keep_blank_values=True)


# ── Auth ─────────────────────────────────────────────────────────────────


def _auth_none(auth: dict, headers: dict, query: list, url: str) -> None:
    return None


def _auth_bearer(auth: dict, headers: dict, query: list, url: str) -> None:
    token = auth.get("token") or auth.get("access_token")
    if token:
        _set_header(headers, "Authorization", f"Bearer {token}")


def _auth_basic(auth: dict, headers: dict, query: list, url: str) -> None:
    username = auth.get("username")
    password = auth.get("password")
    if username and password:
        encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
        _set_header(headers, "Authorization", f"Basic {encoded}")


def _auth_apikey(auth: dict, headers: dict, query: list, url: str) -> None:
    key = auth.get("key")
    value = auth.get("value")
    if not key or not value:
        return
    if auth.get("location", "header") == "query":
        existing = {k for k, _ in query} | {k for k, _ in query_pairs(url)}
        if key not in existing:
            query.append((key, str(value)))
    else:
        _set_header(headers, key, str(value))


AUTH_HANDLERS = {
    "none": _auth_none,
    "bearer": _auth_bearer,
    "oauth2": _auth_bearer,
    "basic": _auth_basic,
    "apikey": _auth_apikey,
}


def apply_auth(auth: dict, headers: dict[str, str], query: list, url: str = "") -> None:
    handler = AUTH_HANDLERS.get(auth.get("type", "none"))
    if handler is None:
        raise DefinitionError(f"Unknown auth type: {auth.get('type')}")
    handler(auth, headers, query, url)


def resolved_headers(resolved: RequestDefinition) -> dict[str, str]:
    """Enabled headers plus any header-borne auth, as saved on a record."""
    headers = resolved.header_map()
    apply_auth(resolved.auth, headers, [], resolved.url)
    return headers


# ── Body ─────────────────────────────────────────────────────────────────


def enabled_entries(entries: list[dict]) -> list[dict]:
    return [e for e in entries if e.get("enabled", True) and e.get("key")]


def build_request(resolved: RequestDefinition) -> WireRequest:
    """Assemble headers, query, auth and body of an already-resolved definition."""
    headers = resolved.header_map()
    query = [(p["key"], p["value"]) for p in enabled_entries(resolved.params)]
    apply_auth(resolved.auth, headers, query, resolved.url)
    url = merge_query(resolved.url, query)

    wire = WireRequest(
        method=resolved.method,
        url=url,
        headers=headers,
        timeout_ms=resolved.timeout_ms,
    )

    body_type = resolved.body_type
    if body_type == "none":
        _drop_header(headers, "Content-Type")
    elif body_type in ("json", "raw"):
        wire.body = resolved.body or None
        if body_type == "json" and _find_key(headers, "Content-Type") is None:
            headers["Content-Type"] = AUTO_CONTENT_TYPES["json"]
    elif body_type == "x-www-form-urlencoded":
        fields = [(f["key"], f["value"]) for f in enabled_entries(resolved.form_data)
                  if f.get("type", "text") == "text"]
        wire.body = urlencode(fields)
        _set_header(headers, "Content-Type", AUTO_CONTENT_TYPES["x-www-form-urlencoded"])
    elif body_type == "form-data":
        for field in enabled_entries(resolved.form_data):
            if field.get("type") == "file":
                if not field["value"]:
                    continue
                try:
                    content, mime = decode_payload(field["value"])
                except RequestBuildError as e:
                    raise RequestBuildError(
                        f"Invalid file data for form field '{field['key']}'"
                    ) from e
                wire.files.append(
                    (field["key"], (field["key"], content, mime or DEFAULT_FILE_MIME))
                )
            else:
                wire.form_fields.append((field["key"], field["value"]))
        # the transport sets the multipart boundary
        _drop_header(headers, "Content-Type")
    elif body_type == "binary":
        if resolved.binary_data:
            wire.body, _ = decode_payload(resolved.binary_data)
        if _find_key(headers, "Content-Type") is None:
            headers["Content-Type"] = AUTO_CONTENT_TYPES["binary"]
    return wire


# ── Body type / Content-Type coupling ────────────────────────────────────


def _is_content_type(entry: dict) -> bool:
    return entry.get("key", "").lower() == "content-type"


def sync_content_type(
    headers: list[dict],
    body_type: str,
    previous_type: str | None = None,
) -> list[dict]:
    """Return headers with Content-Type adjusted for a body type change."""
    if body_type not in BODY_TYPES:
        raise DefinitionError(f"Unknown body type: {body_type}")
    headers = [dict(h) for h in headers]
    auto = AUTO_CONTENT_TYPES.get(body_type)

    if auto is not None:
        current = [h for h in headers if _is_content_type(h)]
        if current:
            current[0].update(value=auto, enabled=True)
            for extra in current[1:]:
                headers.remove(extra)
        else:
            headers.append({"key": "Content-Type", "value": auto, "enabled": True})
        return headers

    if body_type in ("form-data", "none"):
        return [h for h in headers if not _is_content_type(h)]

    # raw: only drop a value this module put there for the previous type
    previous_auto = AUTO_CONTENT_TYPES.get(previous_type or "")
    if previous_auto is None:
        return headers
    return [h for h in headers
            if not (_is_content_type(h) and h.get("value") == previous_auto)]


def switch_body_type(definition: RequestDefinition, body_type: str) -> RequestDefinition:
    definition.headers = sync_content_type(definition.headers, body_type, definition.body_type)
    definition.body_type = body_type
    return definition
