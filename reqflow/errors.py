"""reqflow errors - exception taxonomy for the request pipeline."""

from __future__ import annotations

from typing import Any

DISPATCH_KINDS = ("timeout", "aborted", "network", "http_error")


class ReqflowError(Exception):
    """Base class for all reqflow errors."""


class DefinitionError(ReqflowError):
    """A request definition is malformed."""


class RequestBuildError(ReqflowError):
    """A resolved request cannot be turned into a wire request."""


class PersistenceError(ReqflowError):
    """A durable store read or write failed."""


class ScriptTimeout(BaseException):
    """A user script ran past its time ceiling.

    Derives from BaseException so ``except Exception`` inside the script
    cannot swallow it.
    """


class DispatchFailure(ReqflowError):
    """Transport-level failure of a dispatched request.

    ``kind`` is one of DISPATCH_KINDS. The remaining fields are optional
    and only present when the transport could supply them.
    """

    def __init__(
        self,
        kind: str,
        message: str,
        status: int | None = None,
        status_text: str | None = None,
        code: str | None = None,
        body: Any = None,
        cause: BaseException | None = None,
    ):
        if kind not in DISPATCH_KINDS:
            raise ValueError(f"Unknown dispatch failure kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status
        self.status_text = status_text
        self.code = code
        self.body = body
        self.cause = cause

    def describe(self) -> str:
        """Assemble a single human-readable message from the structured fields."""
        message = self.message or "Request failed"
        if self.status:
            message = f"{self.status} {self.status_text or message}"
            detail = _body_detail(self.body)
            if detail and detail != self.status_text:
                message = f"{message} - {detail}"
        if self.code and f"({self.code})" not in message:
            message = f"{message} ({self.code})"
        if self.cause is not None:
            cause_text = str(self.cause)
            if cause_text and cause_text not in message:
                message = f"{message} - {cause_text}"
        return message

    def __str__(self) -> str:
        return self.describe()


def _body_detail(body: Any) -> str | None:
    """Pull an error message out of an HTTP error body, if it carries one."""
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        return None
    if isinstance(body, str):
        text = body.strip()
        if text and len(text) <= 200:
            return text
    return None
