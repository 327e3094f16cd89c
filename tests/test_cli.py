"""Tests for llm_sessions.cli."""

import io
import os
import json
from urllib.error import HTTPError, URLError

import pytest

from llm_sessions import cli


class FakeResponse:
    def __init__(self, body):
        self._body = json.dumps(body).encode()

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def daemon(monkeypatch):
    """Replace urlopen; tests set ``reply`` to a dict or an exception."""
    state = {"requests": [], "reply": {}}

    def fake_urlopen(req, timeout=None):
        body = json.loads(req.data.decode()) if req.data else None
        state["requests"].append((req.get_method(), req.full_url, body, timeout))
        if isinstance(state["reply"], Exception):
            raise state["reply"]
        return FakeResponse(state["reply"])

    monkeypatch.setenv("LLMS_URL", "http://127.0.0.1:9999/")
    monkeypatch.setattr(cli.urlrequest, "urlopen", fake_urlopen)
    return state


def http_error(status, detail):
    body = io.BytesIO(json.dumps({"detail": detail}).encode())
    return HTTPError("http://127.0.0.1:9999", status, "error", {}, body)


class TestParser:
    def test_query_arguments(self):
        args = cli.build_parser().parse_args(
            ["query", "--model", "LLaMA-v2", "--text", "Hello", "--timeout", "30"]
        )
        assert args.func is cli.cmd_query
        assert args.model == "LLaMA-v2"
        assert args.text == "Hello"
        assert args.timeout == 30.0

    def test_model_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["start"])


class TestCommands:
    def test_query_prints_text(self, daemon, capsys):
        daemon["reply"] = {"text": "Hi there", "truncated": False}
        code = cli.main(["query", "--model", "LLaMA-v2", "--text", "Hello", "--id", "q1"])
        assert code == 0
        assert capsys.readouterr().out == "Hi there\n"
        method, url, body, _ = daemon["requests"][0]
        assert method == "POST"
        assert url == "http://127.0.0.1:9999/api/sessions/LLaMA-v2/query"
        assert body == {"text": "Hello", "query_id": "q1"}

    def test_query_reads_stdin(self, daemon, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("from stdin\n"))
        daemon["reply"] = {"text": "ok", "truncated": False}
        assert cli.main(["query", "--model", "LLaMA-v2"]) == 0
        assert daemon["requests"][0][2] == {"text": "from stdin\n"}

    def test_empty_query(self, daemon, capsys):
        assert cli.main(["query", "--model", "LLaMA-v2", "--text", "  "]) == cli.EXIT_USAGE
        assert daemon["requests"] == []
        assert capsys.readouterr().err.startswith("error: ")

    def test_truncated_response(self, daemon, capsys):
        daemon["reply"] = {"text": "half an ans", "truncated": True}
        assert cli.main(["query", "--model", "LLaMA-v2", "--text", "x"]) == 6
        captured = capsys.readouterr()
        assert captured.out == "half an ans\n"
        assert "truncated" in captured.err

    def test_model_name_quoted(self, daemon):
        daemon["reply"] = {"message": "Session started"}
        cli.main(["start", "--model", "my model/v2"])
        assert daemon["requests"][0][1].endswith("/api/sessions/my%20model%2Fv2/start")

    def test_list(self, daemon, capsys):
        daemon["reply"] = {"sessions": ["Alpaca-7B", "LLaMA-v2"]}
        assert cli.main(["list"]) == 0
        assert capsys.readouterr().out == "Alpaca-7B\nLLaMA-v2\n"

    def test_stop(self, daemon, capsys):
        daemon["reply"] = {"message": "Session was not running"}
        assert cli.main(["stop", "--model", "LLaMA-v2"]) == 0
        assert capsys.readouterr().out == "LLaMA-v2: Session was not running\n"

    def test_cancel_not_queued(self, daemon):
        daemon["reply"] = {"success": False, "message": "Query not queued"}
        assert cli.main(["cancel", "--model", "LLaMA-v2", "--id", "q1"]) == 1
        assert daemon["requests"][0][1].endswith("/api/sessions/LLaMA-v2/queries/q1/cancel")


class TestErrors:
    @pytest.mark.parametrize(
        "status,code,exit_code",
        [
            (404, "MODEL_NOT_FOUND", 3),
            (502, "SPAWN_FAILED", 4),
            (409, "CHANNEL_CLOSED", 5),
            (410, "PROCESS_TERMINATED", 6),
            (504, "RESPONSE_TIMEOUT", 7),
            (409, "QUERY_CANCELLED", 8),
        ],
    )
    def test_api_error_exit_codes(self, daemon, capsys, status, code, exit_code):
        daemon["reply"] = http_error(status, {"code": code, "message": "went wrong"})
        assert cli.main(["query", "--model", "LLaMA-v2", "--text", "x"]) == exit_code
        assert capsys.readouterr().err == "error: went wrong\n"

    def test_unknown_error_code(self, daemon):
        daemon["reply"] = http_error(500, {"code": "INTERNAL_ERROR", "message": "boom"})
        assert cli.main(["list"]) == 1

    def test_daemon_unreachable(self, daemon, capsys):
        daemon["reply"] = URLError("Connection refused")
        assert cli.main(["list"]) == 1
        assert "llm-sessions serve" in capsys.readouterr().err

    def test_client_timeout(self, daemon):
        daemon["reply"] = TimeoutError("timed out")
        assert cli.main(["query", "--model", "LLaMA-v2", "--text", "x", "--timeout", "1"]) == 7
        assert daemon["requests"][0][3] == 1.0


class TestServe:
    def test_runs_packaged_app(self, monkeypatch, tmp_path):
        import uvicorn

        from llm_sessions.app import app

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda *a, **kw: calls.append((a, kw)))
        # serve writes these; setting them here restores them afterwards
        monkeypatch.setenv("LLMS_CATALOG", "")
        monkeypatch.setenv("LLMS_LOG_LEVEL", "INFO")
        monkeypatch.delenv("LLMS_HOST", raising=False)
        catalog = tmp_path / "models.json"

        code = cli.main(["serve", "--port", "12399", "--catalog", str(catalog)])
        assert code == cli.EXIT_OK
        (args, kwargs), = calls
        assert args == (app,)
        assert kwargs["port"] == 12399
        assert kwargs["host"] == "127.0.0.1"
        assert os.environ["LLMS_CATALOG"] == str(catalog)
