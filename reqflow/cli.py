"""reqflow CLI - templated, scripted HTTP requests from the terminal."""

import logging
import sys
from pathlib import Path

import click

TOOL_HELP = """\
reqflow — HTTP client with variables, scripts, history and saved requests.

Resolves {{variables}}, runs pre-request and test scripts, sends the
request, and records it in history and the saved-request store.

\b
MODES
─────
  Direct:       reqflow METHOD URL [options]
  Definition:   reqflow -r NAME [options]
  Curl import:  reqflow --import-curl "curl ..."
  Saved:        reqflow --record ID
  History:      reqflow --history | --replay INDEX | --clear-history

\b
DIRECT MODE
───────────
  reqflow GET https://api.example.com/users
  reqflow POST {{host}}/users -b '{"name": "{{user}}"}'
  reqflow POST /upload --form title=report --form file=@report.pdf

  If a .reqflow.yaml config has a base_url, relative paths work:
    reqflow GET /users

\b
REQUEST DEFINITIONS
───────────────────
  YAML files in the requests directory (./requests/, requests_dir from
  config, or ~/.reqflow/requests/):

    name: create-user
    method: POST
    url: "{{host}}/users"
    headers: {Accept: application/json}
    auth: {type: bearer, token: "{{token}}"}
    body:
      type: json
      content: {name: "{{user}}"}
    scripts:
      pre_request: |
        environment.set("user", "alice")
      test: |
        test("created", lambda: expect(response.code).to.equal(201))

  reqflow -r create-user --env staging
  reqflow --list-requests

\b
VARIABLES
─────────
  {{name}} placeholders resolve against three tiers, highest wins:
  environment > folder > global. Unbound placeholders are sent verbatim.

  reqflow --set-var host=https://api.local                 # global
  reqflow --set-var host=https://staging.local --env staging
  reqflow --set-var path=/users --folder users
  reqflow --show-vars --env staging
  reqflow -r create-user -v user=bob       # one-off, this run only
  reqflow -r create-user --check           # warn about unbound names

\b
SCRIPTS
───────
  Python snippets with a fixed API (also reachable as pm.*):
    environment / globals   .get .set .unset .has .to_object
    request                 .url .method .headers.get/set/remove
                            .body.raw .body.json() .body.update()
    response (tests only)   .code .status .headers.get .json() .text()
    test(name, fn)          expect(x).to.equal(y) / .to.be.a("string")
    console.log(...)        print(...)

  reqflow -r login --pre-script sign.py --test-script checks.py
  --persist-env writes script environment changes back to the store.

\b
OUTPUT
──────
  STATUS: 200 OK
  TIME: 142ms
  BODY:
  {...}
  LOGS:
    [TEST PASS] created

  --verbose adds response headers; --raw prints the body only.
  Exit code 1 on a failed request or a failed test.

\b
CONFIG
──────
  .reqflow.yaml in CWD, then ~/.reqflow/config.yaml:

    defaults:
      base_url: https://api.example.com
      env_file: .env
      timeout: 30000            # ms
      headers: {Accept: application/json}
      auth: {type: bearer, token: "${API_TOKEN}"}
      script_timeout: 5         # seconds
      history_limit: 1000
      environment: staging
      fail_on_http_error: false
"""


def _configure_logging(debug):
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    logger = logging.getLogger("reqflow")
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.argument("method", required=False)
@click.argument("url", required=False)
@click.option(
    "-r",
    "--request",
    "request_name",
    default=None,
    help="Request definition name or path. Use --list-requests to see available.",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .reqflow.yaml in CWD, then ~/.reqflow/config.yaml.",
)
@click.option(
    "--requests-dir",
    "requests_dir_override",
    default=None,
    help="Override the request definitions directory.",
)
@click.option(
    "--data-dir",
    "data_dir_override",
    default=None,
    help="Override the directory holding history, saved requests and variables.",
)
@click.option(
    "-H",
    "--header",
    multiple=True,
    help="HTTP header as 'Name: Value'. Repeatable; overrides definition headers.",
)
@click.option("-b", "--body", default=None, help="Request body text (JSON or raw).")
@click.option(
    "--body-type",
    type=click.Choice(["none", "json", "raw", "x-www-form-urlencoded", "form-data", "binary"]),
    default=None,
    help="Body type. Default: json if --body parses as JSON, else raw.",
)
@click.option(
    "-q",
    "--query",
    multiple=True,
    help="Query parameter as key=value. Repeatable.",
)
@click.option(
    "--form",
    "form_fields",
    multiple=True,
    help="Form field as KEY=VALUE or KEY=@FILE. Sends multipart/form-data unless "
    "--body-type x-www-form-urlencoded. Repeatable. Mutually exclusive with --body.",
)
@click.option(
    "-v",
    "--var",
    multiple=True,
    help="Variable as key=value for this run (environment tier). Repeatable.",
)
@click.option("--folder", "folder_id", default=None, help="Folder id for folder-scoped variables.")
@click.option("--env", "environment_id", default=None, help="Environment id to activate.")
@click.option(
    "--set-var",
    "set_vars",
    multiple=True,
    help="Store KEY=VALUE in the --env tier, else the --folder tier, else global.",
)
@click.option(
    "--unset-var",
    "unset_vars",
    multiple=True,
    help="Remove KEY from the --env tier, else the --folder tier, else global.",
)
@click.option("--show-vars", is_flag=True, default=False, help="Print the variable tiers.")
@click.option(
    "--persist-env",
    is_flag=True,
    default=False,
    help="Save environment changes made by scripts.",
)
@click.option(
    "--check",
    is_flag=True,
    default=False,
    help="Warn about placeholders with no binding before sending.",
)
@click.option(
    "--pre-script",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Pre-request script file. Overrides the definition's script.",
)
@click.option(
    "--test-script",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Test script file. Overrides the definition's script.",
)
@click.option(
    "--timeout",
    type=int,
    default=None,
    help="Request timeout in milliseconds. Default: 30000.",
)
@click.option(
    "--verbose",
    is_flag=True,
    default=False,
    help="Include response headers in output.",
)
@click.option(
    "--raw",
    is_flag=True,
    default=False,
    help="Output the response body only. Useful for piping.",
)
@click.option("--history", is_flag=True, default=False, help="Show request history.")
@click.option(
    "--replay",
    type=int,
    default=None,
    metavar="INDEX",
    help="Replay a request from history by index.",
)
@click.option("--clear-history", is_flag=True, default=False, help="Delete all history.")
@click.option("--saved", is_flag=True, default=False, help="List saved requests.")
@click.option(
    "--record",
    "record_id",
    default=None,
    metavar="ID",
    help="Send a saved request and update it in place.",
)
@click.option(
    "--import-curl",
    "import_curl",
    default=None,
    help="Parse and execute a curl command string.",
)
@click.option(
    "--to-curl",
    "print_curl",
    is_flag=True,
    default=False,
    help="Print the request as a curl command instead of sending it.",
)
@click.option(
    "--list-requests",
    "show_list_requests",
    is_flag=True,
    default=False,
    help="List request definition files.",
)
@click.option("--debug", is_flag=True, default=False, help="Log debug output to stderr.")
def main(
    method,
    url,
    request_name,
    config_file,
    requests_dir_override,
    data_dir_override,
    header,
    body,
    body_type,
    query,
    form_fields,
    var,
    folder_id,
    environment_id,
    set_vars,
    unset_vars,
    show_vars,
    persist_env,
    check,
    pre_script,
    test_script,
    timeout,
    verbose,
    raw,
    history,
    replay,
    clear_history,
    saved,
    record_id,
    import_curl,
    print_curl,
    show_list_requests,
    debug,
):
    """Send templated, scripted HTTP requests."""
    from reqflow.core import (
        apply_defaults,
        definition_search_paths,
        list_definitions,
        load_config,
        load_definition,
        load_env,
        parse_form_fields,
        parse_headers,
        parse_key_values,
        resolve_config_path,
        resolve_data_dir,
    )
    from reqflow.curl import parse_curl, to_curl
    from reqflow.errors import ReqflowError
    from reqflow.workspace import Workspace

    _configure_logging(debug)

    # --- Load config ---
    try:
        config = load_config(resolve_config_path(config_file))
    except ReqflowError as e:
        _fail(str(e))
    defaults = config.get("defaults", {})
    env = load_env(defaults.get("env_file"), config.get("_config_dir") or ".")
    variables = parse_key_values(var)

    # --- Validate mutually exclusive options ---
    if form_fields and body:
        _fail("--form and --body are mutually exclusive.")

    if show_list_requests:
        _cmd_list_requests(list_definitions, config, requests_dir_override)
        return

    data_dir = resolve_data_dir(data_dir_override, config)
    with Workspace.open(data_dir, config) as ws:
        if persist_env:
            ws.pipeline.persist_environment = True

        if set_vars or unset_vars:
            _cmd_set_vars(ws, set_vars, unset_vars, folder_id, environment_id)
            if not (show_vars or method or request_name or import_curl or record_id):
                return

        active_env = environment_id or ws.variables.active_environment or ws.default_environment

        if show_vars:
            _cmd_show_vars(ws, folder_id, active_env)
            return

        if history:
            _cmd_history(ws)
            return

        if clear_history:
            ws.history.clear()
            click.echo("History cleared.")
            return

        if saved:
            _cmd_saved(ws)
            return

        # --- Pick the definitions to run ---
        try:
            definitions = _select_definitions(
                ws,
                method,
                url,
                request_name,
                config,
                requests_dir_override,
                replay,
                record_id,
                import_curl,
                load_definition,
                definition_search_paths,
                parse_curl,
            )
            for definition in definitions:
                _apply_overrides(
                    definition,
                    header,
                    body,
                    body_type,
                    query,
                    form_fields,
                    timeout,
                    pre_script,
                    test_script,
                    parse_headers,
                    parse_key_values,
                    parse_form_fields,
                )
                apply_defaults(definition, config, env)
        except ReqflowError as e:
            _fail(str(e))

        if print_curl:
            for definition in definitions:
                click.echo(to_curl(definition))
            return

        failed = False
        for definition in definitions:
            if check:
                _warn_unresolved(ws, definition, folder_id, active_env, variables)
            result = ws.execute(
                definition,
                folder_id=folder_id,
                environment_id=active_env,
                selected_id=record_id,
                extra_vars=variables,
            )
            failed = _report(result, verbose, raw) or failed
        if failed:
            sys.exit(1)


# ── Subcommand implementations ──────────────────────────────────────────


def _fail(message):
    click.echo(f"ERROR: {message}", err=True)
    sys.exit(1)


def _cmd_list_requests(list_definitions_fn, config, requests_dir_override=None):
    rdir, definitions = list_definitions_fn(config, requests_dir_override)
    if not definitions:
        if rdir:
            click.echo(f"No request definitions found in: {rdir}")
        else:
            click.echo("No requests directory found.")
            click.echo("Searched: ./requests/, ~/.reqflow/requests/")
        return
    click.echo(f"Requests from: {rdir}\n")
    for definition in definitions:
        click.echo(f"  {definition.name}")
        details = [f"{definition.method} {definition.url}"]
        if definition.body_type != "none":
            details.append(f"body: {definition.body_type}")
        if definition.auth.get("type", "none") != "none":
            details.append(f"auth: {definition.auth['type']}")
        scripts = [s for s, text in (("pre-request", definition.pre_request_script),
                                     ("test", definition.test_script)) if text]
        if scripts:
            details.append(f"scripts: {', '.join(scripts)}")
        click.echo(f"    {' | '.join(details)}")
        click.echo()


def _cmd_set_vars(ws, set_vars, unset_vars, folder_id, environment_id):
    from reqflow.core import parse_key_values

    tier = f"environment '{environment_id}'" if environment_id else (
        f"folder '{folder_id}'" if folder_id else "global"
    )
    for key, value in parse_key_values(set_vars).items():
        ws.variables.set(key, value, folder_id=folder_id, environment_id=environment_id)
        click.echo(f"Set {key} in {tier}.", err=True)
    for key in unset_vars:
        if ws.variables.unset(key, folder_id=folder_id, environment_id=environment_id):
            click.echo(f"Removed {key} from {tier}.", err=True)
        else:
            click.echo(f"{key} is not set in {tier}.", err=True)


def _cmd_show_vars(ws, folder_id, environment_id):
    from reqflow.output import format_variables

    click.echo(format_variables(ws.variables.scopes(), folder_id, environment_id))


def _cmd_history(ws):
    from reqflow.output import format_history

    click.echo(format_history(ws.history.entries()))


def _cmd_saved(ws):
    from reqflow.output import format_records

    click.echo(format_records(ws.records.records()))


def _select_definitions(
    ws,
    method,
    url,
    request_name,
    config,
    requests_dir_override,
    replay,
    record_id,
    import_curl,
    load_definition,
    definition_search_paths,
    parse_curl,
):
    from reqflow.models import RequestDefinition

    if replay is not None:
        entry = ws.history.get(replay)
        if entry is None:
            _fail(f"Invalid index {replay}. Use --history to list.")
        return [RequestDefinition(method=entry.method, url=entry.url, name=entry.name or "")]

    if record_id:
        record = ws.records.get(record_id)
        if record is None:
            _fail(f"Saved request '{record_id}' not found. Use --saved to list.")
        return [record.to_definition()]

    if import_curl:
        parsed = parse_curl(import_curl)
        if not parsed:
            _fail("Could not parse curl command.")
        return parsed

    if request_name:
        definition = load_definition(request_name, config, requests_dir_override)
        if definition is None:
            searched = definition_search_paths(request_name, config, requests_dir_override)
            click.echo(
                f"Request definition '{request_name}' not found.\n"
                f"Searched:\n"
                + "\n".join(f"  - {p}" for p in searched)
                + "\nFor direct requests use: reqflow GET <url>",
                err=True,
            )
            sys.exit(1)
        return [definition]

    if method and url:
        return [RequestDefinition(method=method, url=url)]

    # Nothing matched — show help
    ctx = click.get_current_context()
    click.echo(ctx.get_help())
    ctx.exit(1)


def _apply_overrides(
    definition,
    header,
    body,
    body_type,
    query,
    form_fields,
    timeout,
    pre_script,
    test_script,
    parse_headers,
    parse_key_values,
    parse_form_fields,
):
    """Layer command-line options over a definition."""
    import json

    from reqflow.builder import switch_body_type

    for entry in parse_headers(header):
        definition.headers = [
            h for h in definition.headers if h["key"].lower() != entry["key"].lower()
        ]
        definition.headers.append(entry)

    for key, value in parse_key_values(query).items():
        definition.params = [p for p in definition.params if p["key"] != key]
        definition.params.append({"key": key, "value": value, "enabled": True})

    if body is not None:
        definition.body = body
        if body_type is None:
            try:
                json.loads(body)
                body_type = "json"
            except ValueError:
                body_type = "raw"
    if form_fields:
        definition.form_data = parse_form_fields(form_fields)
        if body_type is None:
            body_type = "form-data"
    if body_type is not None and body_type != definition.body_type:
        switch_body_type(definition, body_type)

    if timeout:
        definition.timeout_ms = timeout
    if pre_script:
        definition.pre_request_script = Path(pre_script).read_text()
    if test_script:
        definition.test_script = Path(test_script).read_text()


def _warn_unresolved(ws, definition, folder_id, environment_id, extra_vars):
    from reqflow.variables import unresolved_names

    scopes = ws.variables.get_scopes(folder_id or definition.folder_id, environment_id)
    scopes["environment"].update(extra_vars)
    texts = [definition.url, definition.body]
    texts += [h["value"] for h in definition.headers] + [p["value"] for p in definition.params]
    missing: list[str] = []
    for text in texts:
        for name in unresolved_names(text, scopes):
            if name not in missing:
                missing.append(name)
    if missing:
        click.echo(f"WARNING: unresolved variables: {', '.join(missing)}", err=True)


def _report(result, verbose, raw):
    """Print a result. Returns True when the run should exit non-zero."""
    from reqflow.output import format_output

    text = format_output(result, verbose=verbose, raw=raw)
    if text:
        click.echo(text)
    if result.error:
        click.echo(f"ERROR: {result.error}", err=True)
        return True
    failed = result.failed_tests
    if failed:
        for name, _, message in failed:
            click.echo(f"FAILED: {name}: {message}", err=True)
        return True
    return False
