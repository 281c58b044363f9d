"""Tests for wire request assembly, auth injection and Content-Type coupling."""

import base64

import pytest

from reqflow.builder import (
    build_request,
    decode_payload,
    merge_query,
    resolved_headers,
    switch_body_type,
    sync_content_type,
)
from reqflow.errors import RequestBuildError
from tests.conftest import make_definition


# ── Auth ────────────────────────────────────────────────────────────────


class TestAuth:
    def test_bearer(self):
        wire = build_request(make_definition(auth={"type": "bearer", "token": "XYZ"}))
        assert wire.headers["Authorization"] == "Bearer XYZ"

    def test_bearer_overrides_manual_header(self):
        definition = make_definition(
            headers={"authorization": "manual"},
            auth={"type": "bearer", "token": "XYZ"},
        )
        wire = build_request(definition)
        assert wire.headers == {"Authorization": "Bearer XYZ"}

    def test_basic(self):
        wire = build_request(
            make_definition(auth={"type": "basic", "username": "u", "password": "p"})
        )
        expected = base64.b64encode(b"u:p").decode()
        assert wire.headers["Authorization"] == f"Basic {expected}"

    def test_basic_needs_both_parts(self):
        wire = build_request(make_definition(auth={"type": "basic", "username": "u"}))
        assert "Authorization" not in wire.headers

    def test_oauth2_behaves_like_bearer(self):
        wire = build_request(make_definition(auth={"type": "oauth2", "access_token": "T"}))
        assert wire.headers["Authorization"] == "Bearer T"

    def test_apikey_header(self):
        wire = build_request(
            make_definition(auth={"type": "apikey", "key": "X-Api-Key", "value": "k1"})
        )
        assert wire.headers["X-Api-Key"] == "k1"

    def test_apikey_query(self):
        definition = make_definition(
            auth={"type": "apikey", "key": "api_key", "value": "k1", "location": "query"}
        )
        wire = build_request(definition)
        assert wire.url == "https://api.test/items?api_key=k1"

    def test_apikey_query_does_not_override_existing(self):
        definition = make_definition(
            url="https://api.test/items?api_key=mine",
            auth={"type": "apikey", "key": "api_key", "value": "k1", "location": "query"},
        )
        wire = build_request(definition)
        assert wire.url == "https://api.test/items?api_key=mine"

    def test_resolved_headers_include_auth(self):
        definition = make_definition(
            headers=[{"key": "Accept", "value": "*/*"}, {"key": "Off", "value": "x", "enabled": False}],
            auth={"type": "bearer", "token": "XYZ"},
        )
        assert resolved_headers(definition) == {"Accept": "*/*", "Authorization": "Bearer XYZ"}


# ── Query ───────────────────────────────────────────────────────────────


class TestQuery:
    def test_params_appended(self):
        definition = make_definition(
            url="https://api.test/items?a=1",
            params=[{"key": "b", "value": "2"}, {"key": "c", "value": "3", "enabled": False}],
        )
        assert build_request(definition).url == "https://api.test/items?a=1&b=2"

    def test_same_key_replaced(self):
        assert merge_query("https://x.test/p?a=1&b=2", [("a", "9")]) == "https://x.test/p?b=2&a=9"

    def test_relative_url(self):
        assert merge_query("/p", [("a", "1")]) == "/p?a=1"

    def test_no_pairs_leaves_url(self):
        assert merge_query("https://x.test/p?z", []) == "https://x.test/p?z"


# ── Body types ──────────────────────────────────────────────────────────


class TestBodies:
    def test_json_sets_content_type(self):
        wire = build_request(make_definition(method="POST", body_type="json", body='{"a": 1}'))
        assert wire.body == '{"a": 1}'
        assert wire.headers["Content-Type"] == "application/json"

    def test_json_keeps_explicit_content_type(self):
        wire = build_request(make_definition(
            method="POST",
            body_type="json",
            body="{}",
            headers={"content-type": "application/vnd.api+json"},
        ))
        assert wire.headers == {"content-type": "application/vnd.api+json"}

    def test_raw_has_no_default_content_type(self):
        wire = build_request(make_definition(method="POST", body_type="raw", body="hi"))
        assert wire.body == "hi"
        assert wire.header("Content-Type") is None

    def test_none_drops_content_type(self):
        wire = build_request(make_definition(headers={"Content-Type": "text/plain"}))
        assert wire.body is None
        assert wire.headers == {}

    def test_urlencoded(self):
        wire = build_request(make_definition(
            method="POST",
            body_type="x-www-form-urlencoded",
            form_data=[
                {"key": "a", "value": "1 2"},
                {"key": "b", "value": "x", "enabled": False},
                {"key": "c", "value": "&"},
            ],
        ))
        assert wire.body == "a=1+2&c=%26"
        assert wire.headers["Content-Type"] == "application/x-www-form-urlencoded"

    def test_form_data_with_file(self):
        payload = base64.b64encode(b"hello").decode()
        wire = build_request(make_definition(
            method="POST",
            body_type="form-data",
            headers={"Content-Type": "multipart/form-data"},
            form_data=[
                {"key": "name", "value": "n"},
                {"key": "doc", "value": f"data:text/plain;base64,{payload}", "type": "file"},
                {"key": "empty", "value": "", "type": "file"},
            ],
        ))
        assert wire.is_multipart
        assert wire.form_fields == [("name", "n")]
        assert wire.files == [("doc", ("doc", b"hello", "text/plain"))]
        assert wire.header("Content-Type") is None

    def test_form_data_bad_file(self):
        definition = make_definition(
            method="POST",
            body_type="form-data",
            form_data=[{"key": "doc", "value": "!!!", "type": "file"}],
        )
        with pytest.raises(RequestBuildError, match="doc"):
            build_request(definition)

    def test_binary(self):
        wire = build_request(make_definition(
            method="POST",
            body_type="binary",
            binary_data=base64.b64encode(b"\x00\x01").decode(),
        ))
        assert wire.body == b"\x00\x01"
        assert wire.headers["Content-Type"] == "application/octet-stream"

    def test_binary_invalid(self):
        definition = make_definition(method="POST", body_type="binary", binary_data="not base64!")
        with pytest.raises(RequestBuildError, match="Invalid binary data"):
            build_request(definition)

    def test_decode_data_url_mime(self):
        content, mime = decode_payload("data:image/png;base64," + base64.b64encode(b"png").decode())
        assert content == b"png"
        assert mime == "image/png"


# ── Content-Type coupling ───────────────────────────────────────────────


class TestContentTypeSync:
    def test_json_to_form_data_removes_only_content_type(self):
        headers = [
            {"key": "Content-Type", "value": "application/json", "enabled": True},
            {"key": "Accept", "value": "*/*", "enabled": True},
        ]
        assert sync_content_type(headers, "form-data", "json") == [
            {"key": "Accept", "value": "*/*", "enabled": True},
        ]

    def test_to_json_replaces_existing(self):
        headers = [{"key": "content-type", "value": "text/plain", "enabled": False}]
        assert sync_content_type(headers, "json", "raw") == [
            {"key": "content-type", "value": "application/json", "enabled": True},
        ]

    def test_to_urlencoded_adds(self):
        assert sync_content_type([], "x-www-form-urlencoded") == [
            {"key": "Content-Type", "value": "application/x-www-form-urlencoded", "enabled": True},
        ]

    def test_raw_drops_previous_automatic_value(self):
        headers = [{"key": "Content-Type", "value": "application/json", "enabled": True}]
        assert sync_content_type(headers, "raw", "json") == []

    def test_raw_keeps_custom_value(self):
        headers = [{"key": "Content-Type", "value": "text/csv", "enabled": True}]
        assert sync_content_type(headers, "raw", "json") == headers

    def test_input_not_mutated(self):
        headers = [{"key": "Content-Type", "value": "text/csv", "enabled": True}]
        sync_content_type(headers, "json")
        assert headers[0]["value"] == "text/csv"

    def test_switch_body_type(self):
        definition = make_definition(body_type="json", body="{}", headers={"Content-Type": "application/json"})
        switch_body_type(definition, "none")
        assert definition.body_type == "none"
        assert definition.headers == []
