"""reqflow curl - import curl commands as definitions, export definitions as curl."""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
import shlex
from pathlib import Path
from urllib.parse import parse_qsl, urlencode

from reqflow.builder import AUTO_CONTENT_TYPES, apply_auth, enabled_entries, merge_query
from reqflow.models import RequestDefinition

logger = logging.getLogger(__name__)

DATA_FLAGS = ("-d", "--data", "--data-raw", "--data-binary", "--data-ascii")
NO_VALUE_FLAGS = {
    "-s", "--silent", "-S", "--show-error", "-L", "--location", "-k", "--insecure",
    "-v", "--verbose", "-i", "--include", "--compressed", "-f", "--fail", "-#",
    "--progress-bar", "-N", "--no-buffer", "-g", "--globoff",
}


def _split_commands(text: str) -> list[str]:
    """One entry per curl invocation; continuation lines are joined first."""
    joined = text.replace("\\\r\n", " ").replace("\\\n", " ")
    commands: list[str] = []
    for line in joined.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("curl ") or stripped == "curl" or not commands:
            commands.append(stripped)
        else:
            commands[-1] += " " + stripped
    return commands


def _file_field(key: str, path_text: str) -> dict:
    """-F key=@path: embed the file as a data: URL when it can be read."""
    path = Path(path_text.split(";")[0]).expanduser()
    value = ""
    try:
        content = path.read_bytes()
    except OSError as e:
        logger.warning("Cannot read form file %s: %s", path, e)
    else:
        mime = mimetypes.guess_type(str(path))[0] or "application/octet-stream"
        value = f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"
    return {"key": key, "value": value, "type": "file", "enabled": True}


def _header_value(headers: list[dict], name: str) -> str:
    for h in headers:
        if h["key"].lower() == name.lower():
            return h["value"]
    return ""


def _parse_one(command: str) -> RequestDefinition | None:
    try:
        tokens = shlex.split(command)
    except ValueError as e:
        logger.info("Cannot parse curl command: %s", e)
        return None

    if tokens and tokens[0] == "curl":
        tokens = tokens[1:]

    method = None
    url = ""
    headers: list[dict] = []
    data: list[str] = []
    form: list[dict] = []
    auth = None
    json_body = False
    as_query = False

    i = 0
    while i < len(tokens):
        tok = tokens[i]
        value = tokens[i + 1] if i + 1 < len(tokens) else None

        if tok in ("-X", "--request") and value is not None:
            method = value.upper()
            i += 2
        elif tok in ("-H", "--header") and value is not None:
            key, sep, val = value.partition(":")
            if sep:
                headers.append({"key": key.strip(), "value": val.strip(), "enabled": True})
            i += 2
        elif tok in DATA_FLAGS and value is not None:
            data.append(value)
            i += 2
        elif tok == "--data-urlencode" and value is not None:
            key, sep, val = value.partition("=")
            data.append(urlencode([(key, val)]) if sep else value)
            i += 2
        elif tok == "--json" and value is not None:
            data.append(value)
            json_body = True
            i += 2
        elif tok in ("-F", "--form") and value is not None:
            key, _, val = value.partition("=")
            if val.startswith("@"):
                form.append(_file_field(key, val[1:]))
            else:
                form.append({"key": key, "value": val, "type": "text", "enabled": True})
            i += 2
        elif tok in ("-u", "--user") and value is not None:
            username, _, password = value.partition(":")
            auth = {"type": "basic", "username": username, "password": password}
            i += 2
        elif tok in ("-A", "--user-agent") and value is not None:
            headers.append({"key": "User-Agent", "value": value, "enabled": True})
            i += 2
        elif tok in ("-b", "--cookie") and value is not None:
            headers.append({"key": "Cookie", "value": value, "enabled": True})
            i += 2
        elif tok == "--url" and value is not None:
            url = value
            i += 2
        elif tok in ("-G", "--get"):
            as_query = True
            i += 1
        elif tok in ("-I", "--head"):
            method = "HEAD"
            i += 1
        elif tok in NO_VALUE_FLAGS:
            i += 1
        elif tok.startswith("-"):
            # unknown option: consume its value if it looks like one
            if value is not None and not value.startswith("-") and "://" not in value:
                i += 2
            else:
                i += 1
        else:
            if not url:
                url = tok
            i += 1

    if not url:
        return None

    definition = RequestDefinition(url=url, headers=headers, auth=auth)
    body = "&".join(data)

    if as_query and data:
        definition.url = merge_query(url, parse_qsl(body, keep_blank_values=True))
        definition.method = method or "GET"
        definition.name = f"{definition.method} {definition.url}"
        return definition

    if json_body:
        if not _header_value(headers, "Content-Type"):
            definition.headers.append(
                {"key": "Content-Type", "value": "application/json", "enabled": True}
            )
        if not _header_value(headers, "Accept"):
            definition.headers.append(
                {"key": "Accept", "value": "application/json", "enabled": True}
            )

    if form:
        definition.body_type = "form-data"
        definition.form_data = form
    elif data:
        content_type = _header_value(definition.headers, "Content-Type").lower()
        definition.body = body
        try:
            json.loads(body)
            is_json = True
        except ValueError:
            is_json = False
        if json_body or "json" in content_type or (is_json and not content_type):
            definition.body_type = "json"
        elif "x-www-form-urlencoded" in content_type or (not content_type and "=" in body):
            definition.body_type = "x-www-form-urlencoded"
            definition.form_data = [
                {"key": k, "value": v, "type": "text", "enabled": True}
                for k, v in parse_qsl(body, keep_blank_values=True)
            ]
            definition.body = ""
        else:
            definition.body_type = "raw"

    has_body = bool(form or data)
    definition.method = method or ("POST" if has_body else "GET")
    definition.name = f"{definition.method} {definition.url}"
    return definition


def parse_curl(text: str) -> list[RequestDefinition] | None:
    """Parse one or more curl commands. None when nothing usable is found."""
    if not text or not text.strip():
        return None
    definitions = []
    for command in _split_commands(text):
        definition = _parse_one(command)
        if definition is None:
            return None
        definitions.append(definition)
    return definitions or None


def to_curl(definition: RequestDefinition) -> str:
    """Render a definition as a single-line curl command."""
    if not definition.url:
        return ""
    parts = ["curl"]
    if definition.method != "GET":
        parts += ["-X", definition.method]

    headers = definition.header_map()
    query = [(p["key"], p["value"]) for p in enabled_entries(definition.params)]
    apply_auth(definition.auth, headers, query, definition.url)
    parts.append(shlex.quote(merge_query(definition.url, query)))

    body_type = definition.body_type
    auto = AUTO_CONTENT_TYPES.get(body_type)
    if auto and not any(k.lower() == "content-type" for k in headers):
        headers["Content-Type"] = auto

    for key, value in headers.items():
        parts += ["-H", shlex.quote(f"{key}: {value}")]

    if body_type == "json" and definition.body:
        try:
            body = json.dumps(json.loads(definition.body), separators=(",", ":"))
        except ValueError:
            body = definition.body
        parts += ["-d", shlex.quote(body)]
    elif body_type == "raw" and definition.body:
        parts += ["-d", shlex.quote(definition.body)]
    elif body_type == "x-www-form-urlencoded":
        fields = [(f["key"], f["value"]) for f in enabled_entries(definition.form_data)
                  if f.get("type", "text") == "text"]
        if fields:
            parts += ["-d", shlex.quote(urlencode(fields))]
    elif body_type == "form-data":
        for field in enabled_entries(definition.form_data):
            if field.get("type") == "file":
                parts += ["-F", shlex.quote(f"{field['key']}=@<file>")]
            else:
                parts += ["-F", shlex.quote(f"{field['key']}={field['value']}")]
    elif body_type == "binary" and definition.binary_data:
        parts += ["--data-binary", shlex.quote("@<file>")]
    return " ".join(parts)
