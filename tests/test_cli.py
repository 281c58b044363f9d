"""CLI integration tests: listing, variables, history and saved requests."""

from unittest.mock import patch

import yaml

from reqflow.cli import main
from reqflow.errors import DispatchFailure
from tests.conftest import make_response


def _write_definition(path, **data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(data))


# ── --list-requests ─────────────────────────────────────────────────────


class TestListRequests:
    def test_no_requests_anywhere(self, runner, tmp_project, global_reqflow_dir):
        result = runner.invoke(main, ["--list-requests"])
        assert result.exit_code == 0
        assert "No requests directory found" in result.output

    def test_shows_directory_and_details(self, runner, tmp_project, global_reqflow_dir):
        rdir = tmp_project / "requests"
        _write_definition(
            rdir / "login.yaml",
            method="POST",
            url="{{host}}/login",
            body={"type": "json", "content": {"user": "{{user}}"}},
            auth={"type": "basic", "username": "u", "password": "p"},
            scripts={"test": "test('ok', lambda: None)"},
        )
        result = runner.invoke(main, ["--list-requests"])
        assert f"Requests from: {rdir.resolve()}" in result.output
        assert "login" in result.output
        assert "POST {{host}}/login | body: json | auth: basic | scripts: test" in result.output

    def test_requests_dir_override(self, runner, tmp_project, global_reqflow_dir):
        custom = tmp_project / "custom"
        _write_definition(custom / "alpha.yaml", url="/alpha")
        _write_definition(tmp_project / "requests" / "beta.yaml", url="/beta")
        result = runner.invoke(main, ["--requests-dir", str(custom), "--list-requests"])
        assert "alpha" in result.output
        assert "beta" not in result.output


# ── -r definition not found ─────────────────────────────────────────────


class TestDefinitionNotFound:
    def test_error_shows_searched_paths(self, runner, tmp_project, global_reqflow_dir):
        result = runner.invoke(main, ["-r", "status"])
        assert result.exit_code == 1
        assert "Request definition 'status' not found" in result.output
        assert "status.yaml" in result.output
        assert "reqflow GET <url>" in result.output

    def test_no_arguments_shows_help(self, runner, tmp_project, global_reqflow_dir):
        result = runner.invoke(main, [])
        assert result.exit_code == 1
        assert "Direct:" in result.output


# ── Variables ───────────────────────────────────────────────────────────


class TestVariables:
    def test_set_and_show(self, runner, tmp_project, global_reqflow_dir):
        runner.invoke(main, ["--set-var", "host=https://api.local"])
        runner.invoke(main, ["--set-var", "host=https://staging.local", "--env", "staging"])
        result = runner.invoke(main, ["--show-vars", "--env", "staging"])
        assert result.exit_code == 0
        assert "GLOBAL:\n  host = https://api.local" in result.output
        assert "ENVIRONMENT (staging):\n  host = https://staging.local" in result.output

        stored = yaml.safe_load((global_reqflow_dir / "data" / "variables.yaml").read_text())
        assert stored["environments"]["staging"] == {"host": "https://staging.local"}

    def test_unset(self, runner, tmp_project, global_reqflow_dir):
        runner.invoke(main, ["--set-var", "a=1", "--folder", "users"])
        result = runner.invoke(main, ["--unset-var", "a", "--folder", "users"])
        assert "Removed a from folder 'users'" in result.output
        result = runner.invoke(main, ["--unset-var", "a", "--folder", "users"])
        assert "a is not set in folder 'users'" in result.output

    @patch("reqflow.executor.Dispatcher.send")
    def test_stored_variable_used_in_request(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"ok": True})
        runner.invoke(main, ["--set-var", "host=https://c.test", "--env", "dev"])
        result = runner.invoke(main, ["GET", "{{host}}/items", "--env", "dev"])
        assert result.exit_code == 0
        assert mock_send.call_args.args[0].url == "https://c.test/items"

    @patch("reqflow.executor.Dispatcher.send")
    def test_one_off_var(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"ok": True})
        runner.invoke(main, ["GET", "https://api.test/items/{{id}}", "-v", "id=7"])
        assert mock_send.call_args.args[0].url == "https://api.test/items/7"

    @patch("reqflow.executor.Dispatcher.send")
    def test_check_warns_but_sends(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"ok": True})
        result = runner.invoke(main, ["GET", "https://{{nohost}}/x", "--check"])
        assert "WARNING: unresolved variables: nohost" in result.output
        assert mock_send.call_count == 1
        assert mock_send.call_args.args[0].url == "https://{{nohost}}/x"

    @patch("reqflow.executor.Dispatcher.send")
    def test_persist_env(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"token": "abc"})
        script = tmp_project / "save_token.py"
        script.write_text("environment.set('token', response.json()['token'])\n")
        runner.invoke(
            main,
            ["POST", "https://api.test/login", "--env", "dev", "--test-script", str(script),
             "--persist-env"],
        )
        result = runner.invoke(main, ["--show-vars", "--env", "dev"])
        assert "token = abc" in result.output


# ── History ─────────────────────────────────────────────────────────────


class TestHistory:
    def test_empty(self, runner, tmp_project, global_reqflow_dir):
        result = runner.invoke(main, ["--history"])
        assert "No request history." in result.output

    @patch("reqflow.executor.Dispatcher.send")
    def test_recorded_and_replayed(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"ok": True})
        runner.invoke(main, ["GET", "https://api.test/a"])
        runner.invoke(main, ["DELETE", "https://api.test/b"])

        result = runner.invoke(main, ["--history"])
        lines = result.output.splitlines()
        assert "[0] DELETE" in lines[2]
        assert "https://api.test/b" in lines[2]
        assert "[1] GET" in lines[3]

        runner.invoke(main, ["--replay", "1"])
        wire = mock_send.call_args.args[0]
        assert (wire.method, wire.url) == ("GET", "https://api.test/a")

    @patch("reqflow.executor.Dispatcher.send")
    def test_failed_request_in_history(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.side_effect = DispatchFailure("network", "Connection refused", code="ECONNREFUSED")
        runner.invoke(main, ["GET", "http://localhost:9/x"])
        result = runner.invoke(main, ["--history"])
        assert "GET    ERR" in result.output

    def test_replay_bad_index(self, runner, tmp_project, global_reqflow_dir):
        result = runner.invoke(main, ["--replay", "3"])
        assert result.exit_code == 1
        assert "Invalid index 3" in result.output

    @patch("reqflow.executor.Dispatcher.send")
    def test_clear(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"ok": True})
        runner.invoke(main, ["GET", "https://api.test/a"])
        assert "History cleared." in runner.invoke(main, ["--clear-history"]).output
        assert "No request history." in runner.invoke(main, ["--history"]).output


# ── Saved requests ──────────────────────────────────────────────────────


class TestSavedRequests:
    @patch("reqflow.executor.Dispatcher.send")
    def test_saved_once_per_content(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"ok": True})
        runner.invoke(main, ["POST", "https://api.test/items", "-b", '{"a": 1}'])
        runner.invoke(main, ["POST", "https://api.test/items", "-b", '{"a": 1}'])

        files = list((global_reqflow_dir / "data" / "requests").glob("*.json"))
        assert len(files) == 1
        result = runner.invoke(main, ["--saved"])
        assert "POST   https://api.test/items  (last: 200)" in result.output

    @patch("reqflow.executor.Dispatcher.send")
    def test_record_resend(self, mock_send, runner, tmp_project, global_reqflow_dir):
        mock_send.return_value = make_response(body={"ok": True})
        runner.invoke(main, ["PUT", "https://api.test/items/1", "-b", "plain"])
        record_file = next((global_reqflow_dir / "data" / "requests").glob("*.json"))
        record_id = record_file.stem

        mock_send.reset_mock()
        result = runner.invoke(main, ["--record", record_id])
        assert result.exit_code == 0
        wire = mock_send.call_args.args[0]
        assert (wire.method, wire.url, wire.body) == ("PUT", "https://api.test/items/1", "plain")

    def test_record_missing(self, runner, tmp_project, global_reqflow_dir):
        result = runner.invoke(main, ["--record", "nope"])
        assert result.exit_code == 1
        assert "Saved request 'nope' not found" in result.output

    def test_no_saved(self, runner, tmp_project, global_reqflow_dir):
        assert "No saved requests." in runner.invoke(main, ["--saved"]).output
