"""Tests for the script sandbox and mutation replay."""

import pytest

from reqflow.scripts import (
    Mutation,
    MutationLog,
    ScriptContext,
    ScriptSandbox,
    apply_request_mutations,
    apply_variable_mutations,
    run_pre_request,
    run_test,
)
from tests.conftest import make_definition, make_response


def _pre_context(**request):
    base = {"url": "https://api.test/items", "method": "GET", "headers": {}}
    base.update(request)
    return ScriptContext(request=base, environment={"token": "abc"})


def _test_context(response=None, **request):
    base = {"url": "https://api.test/items", "method": "GET", "headers": {"Accept": "*/*"}}
    base.update(request)
    return ScriptContext(request=base, response=response or make_response(body={"id": 7}))


# ── Console and logs ────────────────────────────────────────────────────


class TestConsole:
    def test_tags(self):
        script = "console.log('a', 1)\nconsole.error('b')\nconsole.warn('c')\nconsole.info('d')"
        result = run_pre_request(script, _pre_context())
        assert result.success
        assert result.logs == ["[LOG] a 1", "[ERROR] b", "[WARN] c", "[INFO] d"]

    def test_print_routes_to_log(self):
        result = run_pre_request("print('hello')", _pre_context())
        assert result.logs == ["[LOG] hello"]

    def test_structured_args_pretty_printed(self):
        result = run_pre_request("console.log({'a': 1})", _pre_context())
        assert result.logs == ['[LOG] {\n  "a": 1\n}']

    def test_empty_script_is_noop(self):
        result = run_pre_request("   \n", _pre_context())
        assert result.success
        assert result.logs == []
        assert len(result.mutations) == 0


# ── Failure isolation ───────────────────────────────────────────────────


class TestFailures:
    def test_error_after_log(self):
        result = run_pre_request("console.log('a')\nraise ValueError('boom')", _pre_context())
        assert not result.success
        assert result.error == "ValueError: boom"
        assert result.logs == ["[LOG] a", "[ERROR] ValueError: boom"]

    def test_syntax_error_reported(self):
        result = run_pre_request("this is not python", _pre_context())
        assert not result.success
        assert result.error.startswith("SyntaxError")

    def test_partial_mutations_kept(self):
        script = "environment.set('a', 1)\nraise RuntimeError('stop')\nenvironment.set('b', 2)"
        result = run_pre_request(script, _pre_context())
        assert not result.success
        assert list(result.mutations) == [Mutation("env_set", "a", "1")]

    def test_timeout(self):
        result = ScriptSandbox(timeout=0.2).run_pre_request("while True:\n    pass", _pre_context())
        assert not result.success
        assert "timed out" in result.error
        assert result.logs[-1].startswith("[ERROR]")

    def test_timeout_in_function(self):
        script = "def spin():\n    n = 0\n    while True:\n        n += 1\nspin()"
        result = ScriptSandbox(timeout=0.2).run_pre_request(script, _pre_context())
        assert not result.success
        assert "timed out" in result.error

    def test_import_blocked(self):
        result = run_pre_request("import os", _pre_context())
        assert not result.success
        assert "imports are not allowed" in result.error

    def test_underscore_names_blocked(self):
        result = run_pre_request("x = __builtins__", _pre_context())
        assert not result.success
        assert "__builtins__" in result.error

    def test_underscore_attributes_blocked(self):
        result = run_pre_request("console.__class__", _pre_context())
        assert not result.success

    def test_frame_walking_blocked(self):
        script = (
            "def walk():\n"
            "    yield g.gi_frame.f_back\n"
            "g = walk()\n"
            "frame = next(g)\n"
            "console.log(frame.f_globals)"
        )
        result = run_pre_request(script, _pre_context())
        assert not result.success
        assert "gi_frame" in result.error
        assert not any(line.startswith("[LOG]") for line in result.logs)

    def test_traceback_frames_blocked(self):
        script = (
            "try:\n"
            "    1 / 0\n"
            "except ZeroDivisionError as e:\n"
            "    tb = e.with_traceback(None)\n"
            "    console.log(tb.tb_frame)"
        )
        result = run_pre_request(script, _pre_context())
        assert not result.success
        assert "tb_frame" in result.error

    def test_open_not_available(self):
        result = run_pre_request("open('/etc/passwd')", _pre_context())
        assert not result.success
        assert result.error.startswith("NameError")

    def test_caller_context_untouched(self):
        context = _pre_context()
        run_pre_request("environment.set('token', 'changed')", context)
        assert context.environment["token"] == "abc"


# ── Pre-request capabilities ────────────────────────────────────────────


class TestPreRequest:
    def test_environment_set_stringifies(self):
        result = run_pre_request("environment.set('n', 5)", _pre_context())
        assert result.context.environment["n"] == "5"
        assert list(result.mutations) == [Mutation("env_set", "n", "5")]

    def test_environment_get_has_unset(self):
        script = (
            "console.log(environment.get('token'), environment.has('token'))\n"
            "environment.unset('token')\n"
            "console.log(environment.has('token'))"
        )
        result = run_pre_request(script, _pre_context())
        assert result.logs == ["[LOG] abc True", "[LOG] False"]
        assert list(result.mutations) == [Mutation("env_unset", "token")]

    def test_globals_keep_values(self):
        result = run_pre_request("globals.set('ids', [1, 2])", _pre_context())
        assert result.context.globals == {"ids": [1, 2]}

    def test_pm_namespace(self):
        result = run_pre_request("pm.environment.set('a', 'b')", _pre_context())
        assert result.context.environment["a"] == "b"

    def test_header_set_replaces_case_insensitively(self):
        context = _pre_context(headers={"authorization": "old"})
        result = run_pre_request(
            "request.headers.set('Authorization', 'Bearer ' + environment.get('token'))",
            context,
        )
        assert result.context.request["headers"] == {"Authorization": "Bearer abc"}
        assert list(result.mutations) == [Mutation("header_set", "Authorization", "Bearer abc")]

    def test_url_and_body_update(self):
        script = (
            "request.url = request.url + '?page=2'\n"
            "request.body.update({'x': 1})\n"
            "console.log(request.query_params())"
        )
        result = run_pre_request(script, _pre_context(method="POST"))
        kinds = [m.kind for m in result.mutations]
        assert kinds == ["url_update", "body_update"]
        assert result.context.request["body"] == '{"x": 1}'
        assert '"key": "page"' in result.logs[0]

    def test_response_is_none(self):
        result = run_pre_request("console.log(response is None)", _pre_context())
        assert result.logs == ["[LOG] True"]


# ── Test scripts ────────────────────────────────────────────────────────


class TestTestScripts:
    def test_pass_and_fail(self):
        script = (
            "test('status ok', lambda: expect(response.code).to.equal(200))\n"
            "test('wrong id', lambda: expect(response.json()['id']).to.equal(8))"
        )
        result = run_test(script, _test_context())
        assert result.success
        assert result.tests[0] == ("status ok", True, None)
        assert result.tests[1][0:2] == ("wrong id", False)
        assert result.logs[0] == "[TEST PASS] status ok"
        assert result.logs[1].startswith("[TEST FAIL] wrong id: AssertionError")
        assert [t[0] for t in result.failed_tests] == ["wrong id"]

    def test_expect_type_and_include(self):
        script = (
            "def checks():\n"
            "    expect(response.json()).to.be.an('object')\n"
            "    expect(response.code).to.be.a('number')\n"
            "    expect(response.text()).to.include('id')\n"
            "    expect(response.json()).to.eql({'id': 7})\n"
            "test('shape', checks)"
        )
        result = run_test(script, _test_context())
        assert result.tests == [("shape", True, None)]

    def test_bool_is_not_number(self):
        result = run_test("test('t', lambda: expect(True).to.be.a('number'))", _test_context())
        assert result.tests[0][1] is False

    def test_response_headers_case_insensitive(self):
        script = "console.log(response.headers.get('content-type'))"
        result = run_test(script, _test_context())
        assert result.logs == ["[LOG] application/json"]

    def test_request_read_only(self):
        result = run_test("request.headers.set('X', '1')", _test_context())
        assert not result.success
        assert result.error.startswith("TypeError")
        assert len(result.mutations) == 0

    def test_environment_writable(self):
        script = "environment.set('last_id', response.json()['id'])"
        result = run_test(script, _test_context())
        assert result.context.environment["last_id"] == "7"

    def test_response_time(self):
        result = run_test("console.log(response.response_time)", _test_context())
        assert result.logs == ["[LOG] 42.0"]


# ── Mutation replay ─────────────────────────────────────────────────────


class TestMutationReplay:
    def test_variable_mutations_in_order(self):
        log = MutationLog()
        log.record("env_set", "a", "1")
        log.record("global_set", "g", [1])
        log.record("env_unset", "a")
        log.record("env_set", "b", "2")
        env, glob = {"keep": "x"}, {}
        apply_variable_mutations(log, env, glob)
        assert env == {"keep": "x", "b": "2"}
        assert glob == {"g": [1]}

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            Mutation("explode")

    def test_request_mutations(self):
        definition = make_definition(
            method="POST",
            headers=[{"key": "authorization", "value": "old"}, {"key": "X-Drop", "value": "1"}],
            body_type="form-data",
            form_data=[{"key": "a", "value": "1"}],
        )
        log = MutationLog()
        log.record("header_set", "Authorization", "Bearer XYZ")
        log.record("header_remove", "x-drop")
        log.record("url_update", value="https://api.test/other")
        log.record("body_update", value="{}")
        apply_request_mutations(log.request_mutations(), definition)

        assert definition.header_map() == {"Authorization": "Bearer XYZ"}
        assert definition.url == "https://api.test/other"
        assert definition.body == "{}"
        assert definition.body_type == "raw"

    def test_body_update_keeps_text_type(self):
        definition = make_definition(method="POST", body_type="json", body="{}")
        apply_request_mutations([Mutation("body_update", value='{"a": 1}')], definition)
        assert definition.body_type == "json"
