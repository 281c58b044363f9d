"""Shared fixtures for reqflow tests."""

import json
import logging
import os

import pytest
from click.testing import CliRunner

from reqflow import core
from reqflow.errors import DispatchFailure
from reqflow.models import RequestDefinition, Response
from reqflow.workspace import Workspace


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _reset_reqflow_logger():
    """The CLI attaches a stderr handler; drop it so it does not outlive the runner."""
    yield
    logger = logging.getLogger("reqflow")
    logger.handlers = []
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def tmp_project(tmp_path):
    """Create a temporary project directory and cd into it."""
    original = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(original)


@pytest.fixture
def global_reqflow_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqflow directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqflow"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


def make_response(
    status=200,
    body=None,
    headers=None,
    elapsed_ms=42.0,
    status_text=None,
    raw_text="",
):
    """Factory for Response objects as the dispatcher returns them."""
    if status_text is None:
        status_text = {200: "OK", 201: "Created", 404: "Not Found", 500: "Internal Server Error"}.get(
            status, ""
        )
    return Response(
        status=status,
        status_text=status_text,
        headers=headers or {"Content-Type": "application/json"},
        body=body,
        raw_text=raw_text or (json.dumps(body) if isinstance(body, dict | list) else str(body or "")),
        elapsed_ms=elapsed_ms,
    )


class FakeDispatcher:
    """Stands in for Dispatcher: records wire requests, replays outcomes.

    Each queued outcome is a Response or a DispatchFailure; when the queue
    is empty the default response is returned.
    """

    def __init__(self, *outcomes, default=None):
        self.outcomes = list(outcomes)
        self.default = default or make_response(body={"ok": True})
        self.sent = []

    def send(self, wire, timeout_ms=None, abort_signal=None):
        self.sent.append(wire)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, DispatchFailure):
            raise outcome
        return outcome

    def abort_all(self):
        return 0

    @property
    def last(self):
        return self.sent[-1]


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def workspace(dispatcher):
    """In-memory workspace wired to the fake dispatcher."""
    ws = Workspace.in_memory(dispatcher=dispatcher)
    yield ws
    ws.close()


def make_definition(**overrides):
    data = {"method": "GET", "url": "https://api.test/items"}
    data.update(overrides)
    return RequestDefinition.from_dict(data)
