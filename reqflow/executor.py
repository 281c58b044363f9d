"""reqflow executor - HTTP dispatch with timeouts and cancellation."""

from __future__ import annotations

import base64
import errno
import http
import json
import logging
import socket
import threading
import time
from typing import Any

import requests

from reqflow.builder import WireRequest
from reqflow.errors import DispatchFailure
from reqflow.models import DEFAULT_TIMEOUT_MS, Response

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")
DROPPED_HEADERS = ("host", "origin", "referer")

POLL_INTERVAL = 0.05

NETWORK_MESSAGES = {
    "ECONNREFUSED": "Connection refused - The server refused the connection",
    "ENOTFOUND": "Host not found - DNS lookup failed",
    "ECONNRESET": "Connection reset - The connection was closed by the server",
    "EHOSTUNREACH": "Host unreachable - The host cannot be reached",
    "EAI_AGAIN": "DNS lookup failed - Temporary DNS resolution failure",
    "EPIPE": "Broken pipe - Connection was closed unexpectedly",
}

_NOT_FOUND_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "failed to resolve",
    "no address associated",
)


class AbortSignal:
    """Cancellation handle for one or more sends."""

    def __init__(self):
        self._event = threading.Event()

    def abort(self) -> None:
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


# ── Response parsing ─────────────────────────────────────────────────────


def _charset(content_type: str) -> str:
    for part in content_type.split(";")[1:]:
        name, _, value = part.strip().partition("=")
        if name.lower() == "charset" and value:
            return value.strip('"')
    return "utf-8"


def is_binary_type(content_type: str) -> bool:
    ct = content_type.lower()
    return (
        ct.startswith("image/")
        or ct.startswith("application/octet-stream")
        or "application/pdf" in ct
        or "audio/" in ct
        or "video/" in ct
    )


def parse_body(content: bytes, content_type: str) -> tuple[Any, str]:
    """Return (body, raw_text) for a response payload.

    JSON types are parsed with a text fallback, textual types stay text,
    binary types become a base64 data: URL, and anything else is sniffed
    for a JSON object or array.
    """
    ct = (content_type or "").lower()
    if is_binary_type(ct):
        encoded = base64.b64encode(content).decode("ascii")
        return f"data:{content_type or 'application/octet-stream'};base64,{encoded}", ""

    try:
        text = content.decode(_charset(ct), errors="replace")
    except LookupError:
        text = content.decode("utf-8", errors="replace")

    if "application/json" in ct or "+json" in ct:
        try:
            return json.loads(text), text
        except ValueError:
            return text, text
    if "text/" in ct or "xml" in ct or "javascript" in ct:
        return text, text

    stripped = text.strip()
    if (stripped.startswith("{") and stripped.endswith("}")) or (
        stripped.startswith("[") and stripped.endswith("]")
    ):
        try:
            return json.loads(stripped), text
        except ValueError:
            pass
    return text, text


def _status_text(resp: requests.Response) -> str:
    if resp.reason:
        return resp.reason
    try:
        return http.HTTPStatus(resp.status_code).phrase
    except ValueError:
        return ""


# ── Error mapping ────────────────────────────────────────────────────────


def _causes(exc: BaseException):
    """Walk an exception and everything it wraps (urllib3 nests deeply)."""
    seen: set[int] = set()
    pending: list[Any] = [exc]
    while pending:
        current = pending.pop(0)
        if not isinstance(current, BaseException) or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.extend(current.args)
        pending.append(getattr(current, "reason", None))
        pending.append(current.__cause__)
        pending.append(current.__context__)


def network_code(exc: BaseException) -> str | None:
    """Derive an errno-style code from a connection error, if possible."""
    for cause in _causes(exc):
        if isinstance(cause, socket.gaierror):
            if cause.errno == getattr(socket, "EAI_AGAIN", None):
                return "EAI_AGAIN"
            return "ENOTFOUND"
        if isinstance(cause, ConnectionRefusedError):
            return "ECONNREFUSED"
        if isinstance(cause, ConnectionResetError):
            return "ECONNRESET"
        if isinstance(cause, OSError) and cause.errno in errno.errorcode:
            return errno.errorcode[cause.errno]
    text = str(exc).lower()
    if any(hint in text for hint in _NOT_FOUND_HINTS):
        return "ENOTFOUND"
    if "connection refused" in text:
        return "ECONNREFUSED"
    if "connection reset" in text:
        return "ECONNRESET"
    return None


def _network_failure(exc: BaseException) -> DispatchFailure:
    code = network_code(exc)
    if code:
        message = NETWORK_MESSAGES.get(code, code)
    else:
        message = f"Connection error: {exc}"
    return DispatchFailure("network", message, code=code)


def _aborted() -> DispatchFailure:
    return DispatchFailure("aborted", "Request aborted")


def _timed_out(timeout_ms: int) -> DispatchFailure:
    return DispatchFailure("timeout", f"Request timeout after {timeout_ms}ms", code="ETIMEDOUT")


# ── Dispatcher ───────────────────────────────────────────────────────────


class Dispatcher:
    """Sends WireRequests with requests.Session.

    Each send runs on a worker thread so an AbortSignal can cancel it;
    aborting closes the send's session and raises DispatchFailure("aborted").
    Non-2xx responses are returned as data.
    """

    def __init__(self, poll_interval: float = POLL_INTERVAL):
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._in_flight: set[AbortSignal] = set()

    def abort_all(self) -> int:
        """Abort every in-flight send. Returns how many were signalled."""
        with self._lock:
            signals = list(self._in_flight)
        for signal in signals:
            signal.abort()
        return len(signals)

    def _request_kwargs(self, wire: WireRequest, timeout_ms: int) -> dict[str, Any]:
        method = wire.method.upper()
        headers = {k: v for k, v in wire.headers.items() if k.lower() not in DROPPED_HEADERS}
        kwargs: dict[str, Any] = {
            "method": method,
            "url": wire.url,
            "headers": headers,
            "timeout": timeout_ms / 1000,
            "allow_redirects": True,
        }
        if method not in BODY_METHODS:
            return kwargs

        if wire.is_multipart:
            # (None, value) parts keep text fields in the multipart body
            files: list[tuple[str, tuple]] = [(k, (None, v)) for k, v in wire.form_fields]
            files.extend(wire.files)
            kwargs["files"] = files
        elif wire.body is not None:
            body = wire.body
            kwargs["data"] = body.encode("utf-8") if isinstance(body, str) else body
        return kwargs

    def send(
        self,
        wire: WireRequest,
        timeout_ms: int | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> Response:
        timeout_ms = timeout_ms or wire.timeout_ms or DEFAULT_TIMEOUT_MS
        signal = abort_signal or AbortSignal()
        if signal.aborted:
            raise _aborted()

        kwargs = self._request_kwargs(wire, timeout_ms)
        session = requests.Session()
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def _worker():
            start = time.monotonic()
            try:
                outcome["response"] = session.request(**kwargs)
            except BaseException as e:  # handed back to the caller thread
                outcome["error"] = e
            finally:
                outcome["elapsed_ms"] = (time.monotonic() - start) * 1000
                done.set()

        with self._lock:
            self._in_flight.add(signal)
        logger.debug("%s %s", kwargs["method"], wire.url)
        # requests only bounds each socket read; this bounds the whole exchange
        deadline = time.monotonic() + timeout_ms / 1000
        try:
            threading.Thread(target=_worker, daemon=True).start()
            while not done.wait(self.poll_interval):
                if signal.aborted:
                    session.close()
                    logger.info("Request aborted: %s %s", kwargs["method"], wire.url)
                    raise _aborted()
                if time.monotonic() >= deadline:
                    session.close()
                    logger.info("Request timed out: %s %s", kwargs["method"], wire.url)
                    raise _timed_out(timeout_ms)
            if signal.aborted:
                raise _aborted()
        finally:
            with self._lock:
                self._in_flight.discard(signal)

        session.close()
        return self._finish(outcome, wire, timeout_ms, kwargs["method"])

    def _finish(self, outcome: dict, wire: WireRequest, timeout_ms: int, method: str) -> Response:
        error = outcome.get("error")
        if error is not None:
            failure = self._map_error(error, timeout_ms)
            logger.info("Dispatch failed (%s): %s %s: %s", failure.kind, method, wire.url, failure)
            raise failure from error

        resp: requests.Response = outcome["response"]
        body, raw_text = parse_body(resp.content, resp.headers.get("Content-Type", ""))
        response = Response(
            status=resp.status_code,
            status_text=_status_text(resp),
            headers=dict(resp.headers),
            body=body,
            raw_text=raw_text,
            elapsed_ms=outcome["elapsed_ms"],
        )
        logger.debug("%s %s -> %s (%.0fms)", method, wire.url, response.status, response.elapsed_ms)
        return response

    @staticmethod
    def _map_error(error: BaseException, timeout_ms: int) -> DispatchFailure:
        if isinstance(error, requests.exceptions.Timeout):
            return _timed_out(timeout_ms)
        if isinstance(error, requests.exceptions.ConnectionError):
            return _network_failure(error)
        if isinstance(error, requests.exceptions.RequestException):
            return DispatchFailure("network", f"Request failed: {error}")
        return DispatchFailure("network", f"Unexpected error: {error}", cause=error)


def http_failure(response: Response) -> DispatchFailure:
    """Describe a non-2xx response as an http_error failure."""
    return DispatchFailure(
        "http_error",
        response.status_text or "HTTP error",
        status=response.status,
        status_text=response.status_text,
        body=response.body,
    )
