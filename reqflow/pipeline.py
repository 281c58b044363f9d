"""reqflow pipeline - resolve, script, build, dispatch, test, record.

One Pipeline.execute call runs a single request to completion:

    RequestDefinition + variable scopes
      -> resolve placeholders
      -> pre-request script (mutations replayed, then re-resolved)
      -> build wire request
      -> dispatch
      -> test script (only when a response arrived)
      -> history append + saved record upsert

Nothing but the ExecutionResult leaves execute(): unresolved placeholders,
script errors, build errors and dispatch failures all end up as data on it.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from reqflow.builder import WireRequest, build_request, resolved_headers
from reqflow.errors import DefinitionError, DispatchFailure, RequestBuildError
from reqflow.executor import AbortSignal, Dispatcher, http_failure
from reqflow.models import (
    TEXT_BODY_TYPES,
    HistoryEntry,
    RequestDefinition,
    Response,
    SavedRequestRecord,
)
from reqflow.scripts import (
    DEFAULT_SCRIPT_TIMEOUT,
    Mutation,
    ScriptContext,
    ScriptResult,
    ScriptSandbox,
    apply_request_mutations,
    apply_variable_mutations,
)
from reqflow.store import HistoryStore, RequestRecordStore
from reqflow.variables import VariableStore, effective_variables, substitute, substitute_deep

logger = logging.getLogger(__name__)


class ExecutionResult:
    """Outcome of one execution: a response or a single error message."""

    def __init__(self):
        self.response: Response | None = None
        self.error: str | None = None
        self.failure: DispatchFailure | None = None
        self.logs: list[str] = []
        self.tests: list[tuple[str, bool, str | None]] = []
        self.environment: dict[str, str] = {}
        self.globals: dict[str, Any] = {}
        self.resolved: RequestDefinition | None = None
        self.wire_request: WireRequest | None = None
        self.history_entry: HistoryEntry | None = None
        self.record: SavedRequestRecord | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None

    @property
    def failed_tests(self) -> list[tuple[str, bool, str | None]]:
        return [t for t in self.tests if not t[1]]


def _resolve_body(body: str, variables: dict[str, str]) -> str:
    if not body:
        return body
    try:
        parsed = json.loads(body)
    except ValueError:
        return substitute(body, variables)
    if not isinstance(parsed, dict | list):
        return substitute(body, variables)
    return json.dumps(substitute_deep(parsed, variables), indent=2)


def _resolve_entries(entries: list[dict], variables: dict[str, str]) -> list[dict]:
    resolved = []
    for entry in entries:
        entry = dict(entry)
        entry["key"] = substitute(entry["key"], variables)
        entry["value"] = substitute(entry["value"], variables)
        resolved.append(entry)
    return resolved


def resolve_request(definition: RequestDefinition, variables: dict[str, str]) -> RequestDefinition:
    """Copy of definition with every templated field substituted.

    JSON bodies are resolved structurally and re-serialised; any other
    text body gets plain substitution. Unbound placeholders survive.
    """
    resolved = definition.copy()
    resolved.url = substitute(resolved.url, variables)
    resolved.headers = _resolve_entries(resolved.headers, variables)
    resolved.params = _resolve_entries(resolved.params, variables)
    if resolved.body_type in TEXT_BODY_TYPES:
        resolved.body = _resolve_body(resolved.body, variables)
    resolved.form_data = _resolve_entries(resolved.form_data, variables)
    resolved.binary_data = substitute(resolved.binary_data, variables)
    resolved.auth = substitute_deep(resolved.auth, variables)
    return resolved


class Pipeline:
    """Executes request definitions against shared stores.

    fail_on_http_error: report non-2xx responses as an http_error failure;
        the test script and history still run, the record is not saved.
    persist_environment: write environment changes made by scripts back to
        the VariableStore.
    """

    def __init__(
        self,
        variable_store: VariableStore,
        dispatcher: Dispatcher,
        history: HistoryStore,
        records: RequestRecordStore,
        script_timeout: float | None = DEFAULT_SCRIPT_TIMEOUT,
        fail_on_http_error: bool = False,
        persist_environment: bool = False,
        sandbox: ScriptSandbox | None = None,
    ):
        self.variable_store = variable_store
        self.dispatcher = dispatcher
        self.history = history
        self.records = records
        self.sandbox = sandbox or ScriptSandbox(script_timeout)
        self.fail_on_http_error = fail_on_http_error
        self.persist_environment = persist_environment

    def execute(
        self,
        definition: RequestDefinition,
        folder_id: str | None = None,
        environment_id: str | None = None,
        abort_signal: AbortSignal | None = None,
        selected_id: str | None = None,
        extra_vars: dict[str, str] | None = None,
    ) -> ExecutionResult:
        folder_id = folder_id or definition.folder_id
        environment_id = environment_id or self.variable_store.active_environment
        scopes = self.variable_store.get_scopes(folder_id, environment_id)

        result = ExecutionResult()
        run_env = dict(scopes["environment"])
        run_env.update({k: str(v) for k, v in (extra_vars or {}).items()})
        result.environment = run_env
        result.globals = {}
        env_writes: list[Mutation] = []

        def _variables() -> dict[str, str]:
            return effective_variables(
                {"global": scopes["global"], "folder": scopes["folder"], "environment": run_env}
            )

        resolved = resolve_request(definition, _variables())
        try:
            record_headers = resolved_headers(resolved)
        except DefinitionError as e:
            result.error = str(e)
            return result

        if definition.pre_request_script:
            pre = self.sandbox.run_pre_request(
                definition.pre_request_script,
                ScriptContext.from_request(resolved, run_env, result.globals),
            )
            self._merge_script(result, pre, env_writes)
            apply_request_mutations(pre.mutations, resolved)
            resolved = resolve_request(resolved, _variables())
        result.resolved = resolved

        try:
            wire = build_request(resolved)
        except (RequestBuildError, DefinitionError) as e:
            logger.info("Cannot build request %s: %s", definition.display_name(), e)
            result.error = str(e)
            self._write_environment(environment_id, env_writes)
            return result
        result.wire_request = wire

        try:
            response = self.dispatcher.send(wire, resolved.timeout_ms, abort_signal)
        except DispatchFailure as failure:
            result.failure = failure
            result.error = failure.describe()
            result.history_entry = self._append_history(definition, wire, None, result.error)
            self._write_environment(environment_id, env_writes)
            return result

        result.response = response
        if self.fail_on_http_error and not response.ok:
            result.failure = http_failure(response)
            result.error = result.failure.describe()

        if definition.test_script:
            test = self.sandbox.run_test(
                definition.test_script,
                ScriptContext.from_request(resolved, run_env, result.globals, response),
            )
            self._merge_script(result, test, env_writes)
            result.tests.extend(test.tests)

        result.history_entry = self._append_history(definition, wire, response, result.error)
        if result.error is None:
            record = SavedRequestRecord.from_definition(definition, record_headers, response)
            result.record = self.records.upsert(record, selected_id)
        self._write_environment(environment_id, env_writes)
        return result

    @staticmethod
    def _merge_script(result: ExecutionResult, script: ScriptResult, env_writes: list) -> None:
        result.logs.extend(script.logs)
        apply_variable_mutations(script.mutations, result.environment, result.globals)
        env_writes.extend(m for m in script.mutations if m.kind in ("env_set", "env_unset"))

    def _append_history(
        self,
        definition: RequestDefinition,
        wire: WireRequest,
        response: Response | None,
        error: str | None,
    ) -> HistoryEntry:
        entry = HistoryEntry(
            method=wire.method,
            url=wire.url,
            status=response.status if response else None,
            status_text=response.status_text if response else None,
            elapsed_ms=response.elapsed_ms if response else 0,
            name=definition.name or None,
            error=error if response is None else None,
        )
        return self.history.append(entry)

    def _write_environment(self, environment_id: str | None, writes: list[Mutation]) -> None:
        if not self.persist_environment or not writes:
            return
        if not environment_id:
            logger.warning("No active environment; script environment changes not saved")
            return
        for m in writes:
            if m.kind == "env_set":
                self.variable_store.set(m.key, m.value, environment_id=environment_id)
            else:
                self.variable_store.unset(m.key, environment_id=environment_id)
