"""reqflow scripts - pre-request and test script sandbox.

Scripts are Python source executed once, top to bottom, against a fixed
capability surface. Nothing else is in scope: builtins are restricted,
imports are unavailable, and underscore names and frame or code
introspection attributes are rejected before execution.

Exposed names (also reachable as attributes of ``pm``):

    environment   get / set / unset / has / to_object
    globals       same shape, separate namespace
    request       url, method, headers.*, body.raw / body.json() / body.update()
    response      code, status, headers.*, json(), text(), response_time
                  (None in pre-request scripts)
    test(name, fn)
    expect(value).to.be.a(type) / .to.equal(x) / .to.include(x) / .eql(x)
    console.log / error / warn / info, print
    json.loads / json.dumps

Writes are recorded in a MutationLog that the pipeline replays after the
script returns.
"""

from __future__ import annotations

import ast
import builtins
import contextlib
import copy
import json
import logging
import sys
import time
import types
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from reqflow.errors import ScriptTimeout
from reqflow.models import TEXT_BODY_TYPES, RequestDefinition, Response

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_TIMEOUT = 5.0

PRE_REQUEST = "pre-request"
TEST = "test"

MUTATION_KINDS = (
    "env_set",
    "env_unset",
    "global_set",
    "global_unset",
    "header_set",
    "header_remove",
    "url_update",
    "body_update",
)
REQUEST_MUTATIONS = ("header_set", "header_remove", "url_update", "body_update")

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "format", "frozenset", "int", "isinstance", "len", "list", "map", "max", "min",
    "range", "repr", "reversed", "round", "set", "sorted", "str", "sum", "tuple",
    "zip", "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "IndexError", "KeyError", "LookupError", "RuntimeError", "TypeError",
    "ValueError", "ZeroDivisionError",
)
SAFE_BUILTINS = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}

_TYPE_NAMES: dict[str, Any] = {
    "string": str,
    "str": str,
    "number": (int, float),
    "int": int,
    "float": float,
    "boolean": bool,
    "bool": bool,
    "object": dict,
    "dict": dict,
    "array": list,
    "list": list,
    "null": type(None),
    "none": type(None),
}


# ── Mutation log ─────────────────────────────────────────────────────────


class Mutation:
    __slots__ = ("kind", "key", "value")

    def __init__(self, kind: str, key: str | None = None, value: Any = None):
        if kind not in MUTATION_KINDS:
            raise ValueError(f"Unknown mutation kind: {kind}")
        self.kind = kind
        self.key = key
        self.value = value

    def __repr__(self) -> str:
        return f"Mutation({self.kind!r}, {self.key!r}, {self.value!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Mutation):
            return NotImplemented
        return (self.kind, self.key, self.value) == (other.kind, other.key, other.value)


class MutationLog:
    """Ordered record of every write a script made through its capabilities."""

    def __init__(self):
        self.entries: list[Mutation] = []

    def record(self, kind: str, key: str | None = None, value: Any = None) -> None:
        self.entries.append(Mutation(kind, key, value))

    def request_mutations(self) -> list[Mutation]:
        return [m for m in self.entries if m.kind in REQUEST_MUTATIONS]

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def apply_variable_mutations(
    mutations: MutationLog | list[Mutation],
    environment: dict[str, str],
    globals_: dict[str, Any],
) -> None:
    """Replay environment/globals writes, in order, into the given maps."""
    for m in mutations:
        if m.kind == "env_set":
            environment[m.key] = m.value
        elif m.kind == "env_unset":
            environment.pop(m.key, None)
        elif m.kind == "global_set":
            globals_[m.key] = m.value
        elif m.kind == "global_unset":
            globals_.pop(m.key, None)


def apply_request_mutations(
    mutations: MutationLog | list[Mutation],
    request: RequestDefinition,
) -> RequestDefinition:
    """Replay header/url/body writes into a (resolved) request definition."""
    for m in mutations:
        if m.kind == "header_set":
            existing = [h for h in request.headers if h["key"].lower() == m.key.lower()]
            if existing:
                existing[0].update(key=m.key, value=m.value, enabled=True)
                for extra in existing[1:]:
                    request.headers.remove(extra)
            else:
                request.headers.append({"key": m.key, "value": m.value, "enabled": True})
        elif m.kind == "header_remove":
            request.headers = [h for h in request.headers if h["key"].lower() != m.key.lower()]
        elif m.kind == "url_update":
            request.url = m.value
        elif m.kind == "body_update":
            request.body = m.value
            if request.body_type not in TEXT_BODY_TYPES:
                request.body_type = "raw"
    return request


# ── Context and result ───────────────────────────────────────────────────


class ScriptContext:
    """Snapshot handed to a single script invocation."""

    def __init__(
        self,
        request: dict | None = None,
        response: Response | None = None,
        environment: dict[str, str] | None = None,
        globals: dict[str, Any] | None = None,
    ):
        request = request or {}
        self.request = {
            "url": request.get("url", ""),
            "method": request.get("method", "GET"),
            "headers": dict(request.get("headers") or {}),
            "body": request.get("body") or "",
        }
        self.response = response
        self.environment = dict(environment or {})
        self.globals = dict(globals or {})

    @classmethod
    def from_request(
        cls,
        request: RequestDefinition,
        environment: dict[str, str] | None = None,
        globals: dict[str, Any] | None = None,
        response: Response | None = None,
    ) -> ScriptContext:
        return cls(
            request={
                "url": request.url,
                "method": request.method,
                "headers": request.header_map(),
                "body": request.body if request.body_type in TEXT_BODY_TYPES else "",
            },
            response=response,
            environment=environment,
            globals=globals,
        )

    def copy(self) -> ScriptContext:
        return ScriptContext(
            request=copy.deepcopy(self.request),
            response=self.response,
            environment=dict(self.environment),
            globals=copy.deepcopy(self.globals),
        )


class ScriptResult:
    """Outcome of one script run."""

    def __init__(
        self,
        success: bool = True,
        error: str | None = None,
        logs: list[str] | None = None,
        mutations: MutationLog | None = None,
        context: ScriptContext | None = None,
        tests: list[tuple[str, bool, str | None]] | None = None,
    ):
        self.success = success
        self.error = error
        self.logs = logs or []
        self.mutations = mutations or MutationLog()
        self.context = context
        self.tests = tests or []

    @property
    def failed_tests(self) -> list[tuple[str, bool, str | None]]:
        return [t for t in self.tests if not t[1]]


# ── Capabilities ─────────────────────────────────────────────────────────


def _format_arg(arg: Any) -> str:
    if isinstance(arg, dict | list | tuple):
        return json.dumps(arg, indent=2, default=str)
    return str(arg)


class Console:
    def __init__(self, logs: list[str]):
        self._logs = logs

    def _write(self, tag: str, args: tuple) -> None:
        self._logs.append(f"[{tag}] " + " ".join(_format_arg(a) for a in args))

    def log(self, *args):
        self._write("LOG", args)

    def error(self, *args):
        self._write("ERROR", args)

    def warn(self, *args):
        self._write("WARN", args)

    def info(self, *args):
        self._write("INFO", args)


class VariableScope:
    """environment / globals capability."""

    def __init__(self, values: dict, log: MutationLog, prefix: str, stringify: bool):
        self._values = values
        self._log = log
        self._prefix = prefix
        self._stringify = stringify

    def get(self, key: str) -> Any:
        return self._values.get(key)

    def has(self, key: str) -> bool:
        return key in self._values

    def set(self, key: str, value: Any) -> None:
        if self._stringify:
            value = "" if value is None else str(value)
        self._values[key] = value
        self._log.record(f"{self._prefix}_set", key, value)

    def unset(self, key: str) -> None:
        self._values.pop(key, None)
        self._log.record(f"{self._prefix}_unset", key)

    def to_object(self) -> dict:
        return dict(self._values)

    toObject = to_object


def _ci_key(mapping: dict, key: str) -> str | None:
    lower = key.lower()
    for k in mapping:
        if k.lower() == lower:
            return k
    return None


class HeaderAccess:
    def __init__(self, headers: dict[str, str], log: MutationLog | None):
        self._headers = headers
        self._log = log

    def get(self, key: str) -> str | None:
        actual = _ci_key(self._headers, key)
        return self._headers[actual] if actual is not None else None

    def has(self, key: str) -> bool:
        return _ci_key(self._headers, key) is not None

    def _writable(self) -> MutationLog:
        if self._log is None:
            raise TypeError("headers are read-only in this script")
        return self._log

    def set(self, key: str, value: Any) -> None:
        log = self._writable()
        actual = _ci_key(self._headers, key)
        if actual is not None:
            del self._headers[actual]
        self._headers[key] = str(value)
        log.record("header_set", key, str(value))

    def remove(self, key: str) -> None:
        log = self._writable()
        actual = _ci_key(self._headers, key)
        if actual is not None:
            del self._headers[actual]
        log.record("header_remove", key)

    def to_object(self) -> dict[str, str]:
        return dict(self._headers)

    toObject = to_object


class BodyAccess:
    def __init__(self, request: dict, log: MutationLog | None):
        self._request = request
        self._log = log

    @property
    def raw(self) -> str:
        return self._request.get("body") or ""

    def json(self) -> Any:
        try:
            return json.loads(self.raw)
        except (TypeError, ValueError):
            return None

    def update(self, text: Any) -> None:
        if self._log is None:
            raise TypeError("request body is read-only in test scripts")
        if not isinstance(text, str):
            text = json.dumps(text)
        self._request["body"] = text
        self._log.record("body_update", value=text)


class RequestCapability:
    def __init__(self, request: dict, log: MutationLog | None):
        self._request = request
        self._log = log
        self.headers = HeaderAccess(request["headers"], log)
        self.body = BodyAccess(request, log)

    @property
    def method(self) -> str:
        return self._request["method"]

    @property
    def url(self) -> str:
        return self._request["url"]

    @url.setter
    def url(self, value: str) -> None:
        self.update_url(value)

    def update_url(self, value: str) -> None:
        if self._log is None:
            raise TypeError("request url is read-only in test scripts")
        self._request["url"] = str(value)
        self._log.record("url_update", value=str(value))

    def query_params(self) -> list[dict[str, str]]:
        query = urlsplit(self.url).query
        return [{"key": k, "value": v} for k, v in parse_qsl(query, keep_blank_values=True)]


class ResponseCapability:
    def __init__(self, response: Response):
        self._response = response
        self.headers = HeaderAccess(dict(response.headers), None)

    @property
    def code(self) -> int:
        return self._response.status

    @property
    def status(self) -> str:
        return self._response.status_text

    @property
    def response_time(self) -> float:
        return self._response.elapsed_ms

    responseTime = response_time

    def json(self) -> Any:
        body = self._response.body
        if isinstance(body, str):
            try:
                return json.loads(body)
            except ValueError:
                return None
        return body

    def text(self) -> str:
        if self._response.raw_text:
            return self._response.raw_text
        body = self._response.body
        if isinstance(body, str):
            return body
        return json.dumps(body if body is not None else {})


class Expectation:
    """Minimal chai-style assertion: expect(x).to.be.a('string')."""

    def __init__(self, value: Any):
        self._value = value

    @property
    def to(self) -> Expectation:
        return self

    @property
    def be(self) -> Expectation:
        return self

    def a(self, type_name: str) -> None:
        expected = _TYPE_NAMES.get(str(type_name).lower())
        if expected is None:
            raise ValueError(f"Unknown type name: {type_name}")
        value = self._value
        matches = isinstance(value, expected)
        if isinstance(value, bool) and expected in ((int, float), int, float):
            matches = False
        if not matches:
            raise AssertionError(
                f"Expected {value!r} to be of type {type_name}, but got {type(value).__name__}"
            )

    an = a

    def equal(self, expected: Any) -> None:
        if self._value != expected:
            raise AssertionError(f"Expected {self._value!r} to equal {expected!r}")

    def include(self, member: Any) -> None:
        value = self._value
        if isinstance(value, list | tuple | dict | set):
            found = member in value
        else:
            found = str(member) in str(value)
        if not found:
            raise AssertionError(f"Expected {value!r} to include {member!r}")

    def eql(self, expected: Any) -> None:
        if self._value != expected:
            raise AssertionError(
                f"Expected {_format_arg(self._value)} to deeply equal {_format_arg(expected)}"
            )


# ── Execution ────────────────────────────────────────────────────────────


# Frame and code introspection reaches the host interpreter's globals
BLOCKED_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom",
    "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "ag_await",
    "f_back", "f_globals", "f_locals", "f_builtins", "f_code",
    "tb_frame", "tb_next",
})


class _SourceGuard(ast.NodeVisitor):
    def visit_Import(self, node):
        raise PermissionError("imports are not allowed in scripts")

    visit_ImportFrom = visit_Import

    def visit_Name(self, node):
        if node.id.startswith("_"):
            raise PermissionError(f"access to '{node.id}' is not allowed in scripts")
        self.generic_visit(node)

    def visit_Attribute(self, node):
        if node.attr.startswith("_") or node.attr in BLOCKED_ATTRIBUTES:
            raise PermissionError(f"access to '{node.attr}' is not allowed in scripts")
        self.generic_visit(node)


@contextlib.contextmanager
def _time_ceiling(seconds: float | None, filename: str):
    """Raise ScriptTimeout in script frames once the deadline passes."""
    if not seconds:
        yield
        return
    deadline = time.monotonic() + seconds

    def _trace(frame, event, arg):
        if frame.f_code.co_filename != filename:
            return None
        if time.monotonic() > deadline:
            raise ScriptTimeout(f"Script timed out after {seconds:g}s")
        return _trace

    previous = sys.gettrace()
    sys.settrace(_trace)
    try:
        yield
    finally:
        sys.settrace(previous)


def _error_message(exc: BaseException) -> str:
    text = str(exc)
    if isinstance(exc, ScriptTimeout):
        return text
    name = type(exc).__name__
    return f"{name}: {text}" if text else name


class ScriptSandbox:
    """Runs pre-request and test scripts with a per-run time ceiling."""

    def __init__(self, timeout: float | None = DEFAULT_SCRIPT_TIMEOUT):
        self.timeout = timeout

    def run_pre_request(self, script: str, context: ScriptContext) -> ScriptResult:
        return self._run(script, context, PRE_REQUEST)

    def run_test(self, script: str, context: ScriptContext) -> ScriptResult:
        return self._run(script, context, TEST)

    def _run(self, script: str, context: ScriptContext, phase: str) -> ScriptResult:
        work = context.copy()
        logs: list[str] = []
        mutations = MutationLog()
        tests: list[tuple[str, bool, str | None]] = []

        if not script or not script.strip():
            return ScriptResult(True, None, logs, mutations, work, tests)

        namespace = self._namespace(work, phase, logs, mutations, tests)
        filename = f"<{phase} script>"
        try:
            tree = ast.parse(script, filename=filename, mode="exec")
            _SourceGuard().visit(tree)
            code = compile(tree, filename, "exec")
            with _time_ceiling(self.timeout, filename):
                exec(code, namespace)
        except ScriptTimeout as e:
            return self._failed(phase, e, logs, mutations, work, tests)
        except Exception as e:
            return self._failed(phase, e, logs, mutations, work, tests)
        return ScriptResult(True, None, logs, mutations, work, tests)

    @staticmethod
    def _failed(phase, exc, logs, mutations, work, tests) -> ScriptResult:
        message = _error_message(exc)
        logs.append(f"[ERROR] {message}")
        logger.info("%s script failed: %s", phase, message)
        return ScriptResult(False, message, logs, mutations, work, tests)

    def _namespace(
        self,
        work: ScriptContext,
        phase: str,
        logs: list[str],
        mutations: MutationLog,
        tests: list,
    ) -> dict[str, Any]:
        console = Console(logs)
        request_log = mutations if phase == PRE_REQUEST else None

        def test(name: str, fn) -> None:
            try:
                fn()
            except Exception as e:
                message = _error_message(e)
                tests.append((name, False, message))
                logs.append(f"[TEST FAIL] {name}: {message}")
            else:
                tests.append((name, True, None))
                logs.append(f"[TEST PASS] {name}")

        api = {
            "environment": VariableScope(work.environment, mutations, "env", stringify=True),
            "globals": VariableScope(work.globals, mutations, "global", stringify=False),
            "request": RequestCapability(work.request, request_log),
            "response": (
                ResponseCapability(work.response)
                if phase == TEST and work.response is not None
                else None
            ),
            "test": test,
            "expect": Expectation,
            "console": console,
        }
        namespace = dict(api)
        namespace["pm"] = types.SimpleNamespace(**api)
        namespace["print"] = console.log
        namespace["json"] = types.SimpleNamespace(loads=json.loads, dumps=json.dumps)
        namespace["__builtins__"] = SAFE_BUILTINS
        return namespace


def run_pre_request(
    script: str,
    context: ScriptContext,
    timeout: float | None = DEFAULT_SCRIPT_TIMEOUT,
) -> ScriptResult:
    return ScriptSandbox(timeout).run_pre_request(script, context)


def run_test(
    script: str,
    context: ScriptContext,
    timeout: float | None = DEFAULT_SCRIPT_TIMEOUT,
) -> ScriptResult:
    return ScriptSandbox(timeout).run_test(script, context)
