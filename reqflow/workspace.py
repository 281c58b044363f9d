"""reqflow workspace - construct the shared stores and pipeline once."""

from __future__ import annotations

import logging
from pathlib import Path

from reqflow.executor import Dispatcher
from reqflow.models import RequestDefinition
from reqflow.pipeline import ExecutionResult, Pipeline
from reqflow.scripts import DEFAULT_SCRIPT_TIMEOUT
from reqflow.store import (
    DEFAULT_HISTORY_LIMIT,
    BackgroundWriter,
    FileBackend,
    HistoryStore,
    Persistence,
    RequestRecordStore,
)
from reqflow.variables import VariableStore

logger = logging.getLogger(__name__)

VARIABLES_FILE = "variables.yaml"


class Workspace:
    """Process-wide state: variable store, history, saved records, dispatcher.

    Built once per process and passed around; close() (or leaving the
    ``with`` block) drains pending background writes.
    """

    def __init__(
        self,
        variables: VariableStore,
        history: HistoryStore,
        records: RequestRecordStore,
        dispatcher: Dispatcher,
        pipeline: Pipeline,
        writer: BackgroundWriter | None = None,
        data_dir: Path | None = None,
        default_environment: str | None = None,
    ):
        self.variables = variables
        self.history = history
        self.records = records
        self.dispatcher = dispatcher
        self.pipeline = pipeline
        self.writer = writer
        self.data_dir = data_dir
        self.default_environment = default_environment

    @classmethod
    def _build(
        cls,
        variables: VariableStore,
        persistence: Persistence,
        writer: BackgroundWriter | None,
        config: dict | None,
        data_dir: Path | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> Workspace:
        defaults = (config or {}).get("defaults", {})
        history = HistoryStore(
            persistence,
            limit=int(defaults.get("history_limit", DEFAULT_HISTORY_LIMIT)),
            writer=writer,
        )
        records = RequestRecordStore(persistence)
        dispatcher = dispatcher or Dispatcher()
        pipeline = Pipeline(
            variables,
            dispatcher,
            history,
            records,
            script_timeout=float(defaults.get("script_timeout", DEFAULT_SCRIPT_TIMEOUT)),
            fail_on_http_error=bool(defaults.get("fail_on_http_error", False)),
            persist_environment=bool(defaults.get("persist_environment", False)),
        )
        return cls(
            variables,
            history,
            records,
            dispatcher,
            pipeline,
            writer=writer,
            data_dir=data_dir,
            default_environment=defaults.get("environment"),
        )

    @classmethod
    def open(
        cls,
        data_dir: str | Path,
        config: dict | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> Workspace:
        """File-backed workspace rooted at data_dir."""
        data_dir = Path(data_dir)
        logger.debug("Opening workspace at %s", data_dir)
        return cls._build(
            VariableStore(data_dir / VARIABLES_FILE),
            Persistence(FileBackend(data_dir)),
            BackgroundWriter(),
            config,
            data_dir=data_dir,
            dispatcher=dispatcher,
        )

    @classmethod
    def in_memory(cls, config: dict | None = None, dispatcher: Dispatcher | None = None) -> Workspace:
        """Cache-only workspace; nothing touches the filesystem."""
        return cls._build(VariableStore(), Persistence(), None, config, dispatcher=dispatcher)

    def execute(self, definition: RequestDefinition, **kwargs) -> ExecutionResult:
        if not kwargs.get("environment_id") and not self.variables.active_environment:
            kwargs["environment_id"] = self.default_environment
        return self.pipeline.execute(definition, **kwargs)

    def close(self) -> None:
        if self.writer is not None:
            self.writer.flush()
            self.writer.close()

    def __enter__(self) -> Workspace:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
