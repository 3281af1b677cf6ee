"""Tests for the HTTP client, literal parsing and configuration."""
from __future__ import annotations

import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from DetaBaseHelper import (
    CHUNK_SIZE,
    ConflictError,
    DetaBaseError,
    DetaBaseService,
    MalformedItemsError,
    MalformedQueryError,
    NotFoundError,
    RemoteError,
    UnauthorizedError,
    Updates,
    create_service_from_env,
    load_items_from_file,
    load_project_key,
    parse_items,
    parse_query,
    parse_updates,
    put_items,
    resolve_query,
    save_project_key,
)

KEY = "a0abcyxz_secret"


def _response(status: int, body=None, method: str = "GET", url: str = "https://x") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.reason = "Reason"
    resp.url = url
    resp._content = b"" if body is None else json.dumps(body).encode()
    resp.request = requests.Request(method, url).prepare()
    return resp


class TestServiceBasics(unittest.TestCase):

    def test_project_id_and_base_url(self):
        svc = DetaBaseService(KEY)
        self.assertEqual(svc.project_id, "a0abcyxz")
        self.assertEqual(svc.base_url, "https://database.deta.sh/v1/a0abcyxz")
        self.assertEqual(svc.timeout, 30.0)

    def test_project_id_uses_first_underscore(self):
        self.assertEqual(DetaBaseService("id_sec_ret").project_id, "id")

    def test_key_without_underscore(self):
        with self.assertRaises(UnauthorizedError):
            DetaBaseService("nounderscore")

    def test_with_project_key_returns_new_client(self):
        svc = DetaBaseService(KEY, timeout=5)
        other = svc.with_project_key("b1_other")
        self.assertIsNot(svc, other)
        self.assertEqual(svc.project_id, "a0abcyxz")
        self.assertEqual(other.project_id, "b1")
        self.assertEqual(other.timeout, 5)


@patch("DetaBaseHelper.requests.request")
class TestServiceRequests(unittest.TestCase):

    def setUp(self):
        self.svc = DetaBaseService(KEY)

    def test_put(self, request):
        request.return_value = _response(
            207, {"processed": {"items": [{"key": "a", "v": 1}]}}, "PUT"
        )
        processed = self.svc.put("my db", [{"key": "a", "v": 1}])
        self.assertEqual(processed, [{"key": "a", "v": 1}])
        args, kwargs = request.call_args
        self.assertEqual(args, ("PUT", "https://database.deta.sh/v1/a0abcyxz/my%20db/items"))
        self.assertEqual(kwargs["json"], {"items": [{"key": "a", "v": 1}]})
        self.assertEqual(kwargs["headers"]["X-API-Key"], KEY)
        self.assertEqual(kwargs["timeout"], 30.0)

    def test_put_rejects_oversized_chunk(self, request):
        with self.assertRaises(ValueError):
            self.svc.put("db", [{}] * (CHUNK_SIZE + 1))
        request.assert_not_called()

    def test_insert_posts_each_item(self, request):
        request.side_effect = [
            _response(201, {"key": "a"}, "POST"),
            _response(201, {"key": "b"}, "POST"),
        ]
        inserted = self.svc.insert("db", [{"key": "a"}, {"key": "b"}])
        self.assertEqual(inserted, [{"key": "a"}, {"key": "b"}])
        self.assertEqual(request.call_args_list[0].kwargs["json"], {"item": {"key": "a"}})

    def test_insert_conflict(self, request):
        request.return_value = _response(409, {"errors": ["Key already exists"]}, "POST")
        with self.assertRaises(ConflictError) as ctx:
            self.svc.insert("db", [{"key": "a"}])
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.detail, {"errors": ["Key already exists"]})

    def test_get_not_found(self, request):
        request.return_value = _response(404, {"errors": ["Key not found"]})
        with self.assertRaises(NotFoundError):
            self.svc.get("db", "missing")
        self.assertEqual(
            request.call_args.args[1],
            "https://database.deta.sh/v1/a0abcyxz/db/items/missing",
        )

    def test_key_is_percent_encoded(self, request):
        request.return_value = _response(200, {"key": "a/b"})
        self.svc.get("db", "a/b")
        self.assertTrue(request.call_args.args[1].endswith("/db/items/a%2Fb"))

    def test_delete(self, request):
        request.return_value = _response(200, {"key": "a"}, "DELETE")
        self.assertIsNone(self.svc.delete("db", "a"))
        self.assertEqual(request.call_args.args[0], "DELETE")

    def test_update_payload(self, request):
        request.return_value = _response(200, {"key": "a"}, "PATCH")
        self.svc.update("db", "a", Updates(set={"x": 1}, delete=["y"]))
        self.assertEqual(request.call_args.kwargs["json"], {"set": {"x": 1}, "delete": ["y"]})

    def test_query_body_skips_unset_fields(self, request):
        request.return_value = _response(200, {"paging": {"size": 0}, "items": []}, "POST")
        self.svc.query("db")
        self.assertEqual(request.call_args.kwargs["json"], {})
        self.svc.query("db", [{"a": 1}], limit=10, last="k")
        self.assertEqual(
            request.call_args.kwargs["json"],
            {"query": [{"a": 1}], "limit": 10, "last": "k"},
        )

    def test_unauthorized(self, request):
        request.return_value = _response(401, {"errors": ["Unauthorized"]})
        with self.assertRaises(UnauthorizedError):
            self.svc.query("db")

    def test_server_error(self, request):
        request.return_value = _response(500, None)
        with self.assertRaises(RemoteError) as ctx:
            self.svc.query("db")
        self.assertEqual(ctx.exception.status_code, 500)

    def test_timeout_is_remote_error(self, request):
        request.side_effect = requests.Timeout("timed out")
        with self.assertRaises(RemoteError) as ctx:
            self.svc.get("db", "a")
        self.assertIsNone(ctx.exception.status_code)

    def test_non_json_body_is_remote_error(self, request):
        resp = _response(200, None, "PUT")
        resp._content = b"<html>proxy</html>"
        request.return_value = resp
        with self.assertRaises(RemoteError) as ctx:
            self.svc.put("db", [{"key": "a"}])
        self.assertEqual(ctx.exception.status_code, 200)
        self.assertEqual(ctx.exception.detail, "<html>proxy</html>")

    def test_non_json_body_fails_only_its_chunk(self, request):
        resp = _response(200, None, "PUT")
        resp._content = b"<html>proxy</html>"
        request.return_value = resp
        result = put_items(self.svc, "db", [{"key": str(i)} for i in range(30)])
        self.assertEqual(result.failed_chunks, 2)
        self.assertEqual(result.attempted, 30)


class TestParsing(unittest.TestCase):

    def test_parse_query_object(self):
        self.assertEqual(parse_query("{name: 'a', 'age?gt': 3}"), [{"name": "a", "age?gt": 3}])

    def test_parse_query_array(self):
        self.assertEqual(parse_query("[{a: 1}, {b: 2},]"), [{"a": 1}, {"b": 2}])

    def test_parse_query_empty(self):
        self.assertIsNone(parse_query(None))
        self.assertIsNone(parse_query("  "))

    def test_parse_query_scalar(self):
        for text in ("5", "'text'", "true", "null"):
            with self.assertRaises(MalformedQueryError):
                parse_query(text)

    def test_parse_query_never_evaluates(self):
        with self.assertRaises(MalformedQueryError):
            parse_query("__import__('os').system('true')")

    def test_resolve_query_warns_and_drops(self):
        with self.assertLogs("DetaBaseHelper", level="WARNING") as logs:
            self.assertIsNone(resolve_query("5"))
        self.assertIn("will be skipped", logs.output[0])

    def test_parse_items(self):
        self.assertEqual(parse_items("{key: 'a'}"), [{"key": "a"}])
        self.assertEqual(parse_items("[{a: 1}, {b: 2}]"), [{"a": 1}, {"b": 2}])
        for text in ("5", "[1, 2]", "{a:"):
            with self.assertRaises(MalformedItemsError):
                parse_items(text)

    def test_parse_updates(self):
        updates = parse_updates(set="{a: 1}", increment="{n: -1}", delete="['x', 'y']")
        self.assertEqual(
            updates.to_payload(),
            {"set": {"a": 1}, "increment": {"n": -1}, "delete": ["x", "y"]},
        )

    def test_parse_updates_bare_delete(self):
        self.assertEqual(parse_updates(delete="name").delete, ["name"])

    def test_parse_updates_rejects_non_object(self):
        with self.assertRaises(MalformedItemsError):
            parse_updates(set="[1]")

    def test_empty_updates_is_falsy(self):
        self.assertFalse(parse_updates())


class TestFiles(unittest.TestCase):

    def _write(self, content: str) -> str:
        fd, path = tempfile.mkstemp(suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        self.addCleanup(os.unlink, path)
        return path

    def test_load_items_list(self):
        path = self._write(json.dumps([{"key": "a"}]))
        self.assertEqual(load_items_from_file(path), [{"key": "a"}])

    def test_load_export_document(self):
        path = self._write(json.dumps({"paging": {"size": 1}, "items": [{"key": "a"}]}))
        self.assertEqual(load_items_from_file(path), [{"key": "a"}])

    def test_load_items_wrong_shape(self):
        path = self._write(json.dumps({"key": "a"}))
        with self.assertRaises(MalformedItemsError):
            load_items_from_file(path)

    def test_load_items_invalid_json(self):
        path = self._write("[{key: 'a'}]")
        with self.assertRaises(MalformedItemsError):
            load_items_from_file(path)

    def test_load_items_not_utf8(self):
        fd, path = tempfile.mkstemp(suffix=".json")
        with os.fdopen(fd, "wb") as f:
            f.write(b'[{"key": "\xff"}]')
        self.addCleanup(os.unlink, path)
        with self.assertRaises(MalformedItemsError):
            load_items_from_file(path)

    def test_load_items_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_items_from_file("/nonexistent/items.json")


@patch.dict(os.environ, {}, clear=True)
class TestConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config = os.path.join(self.tmp.name, "detabase-conf.json")
        self.env = os.path.join(self.tmp.name, ".env")

    def test_save_and_load(self):
        save_project_key(KEY, self.config)
        self.assertEqual(load_project_key(self.config, self.env), KEY)

    def test_save_rejects_invalid_key(self):
        with self.assertRaises(UnauthorizedError):
            save_project_key("invalid", self.config)
        self.assertFalse(os.path.exists(self.config))

    def test_missing_credentials(self):
        with self.assertRaises(UnauthorizedError):
            load_project_key(self.config, self.env)

    def test_corrupt_config(self):
        Path(self.config).write_text("not json", encoding="utf-8")
        with self.assertRaises(UnauthorizedError):
            load_project_key(self.config, self.env)

    def test_env_file_wins(self):
        save_project_key(KEY, self.config)
        Path(self.env).write_text("DETA_PROJECT_KEY=envid_secret\n", encoding="utf-8")
        self.assertEqual(load_project_key(self.config, self.env), "envid_secret")

    def test_create_service_from_env(self):
        save_project_key(KEY, self.config)
        Path(self.env).write_text(
            "DETABASE_TIMEOUT=5\nDETA_BASE_URL=http://localhost:8080/v1\n", encoding="utf-8"
        )
        svc = create_service_from_env(self.env, self.config)
        self.assertEqual(svc.timeout, 5.0)
        self.assertEqual(svc.base_url, "http://localhost:8080/v1/a0abcyxz")

    def test_invalid_timeout(self):
        save_project_key(KEY, self.config)
        Path(self.env).write_text("DETABASE_TIMEOUT=soon\n", encoding="utf-8")
        with self.assertRaises(DetaBaseError) as ctx:
            create_service_from_env(self.env, self.config)
        self.assertIn("DETABASE_TIMEOUT", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
