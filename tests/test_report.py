"""Tests for helm.report: error reports and the telemetry report."""

import json

import pytest

from helm.report import (
    AgentError,
    ConfigError,
    RateLimitError,
    Telemetry,
    TransportError,
    UserCancelledError,
    report_error,
    set_error_report_dir,
)


@pytest.fixture
def report_dir(tmp_path):
    set_error_report_dir(str(tmp_path))
    yield tmp_path
    set_error_report_dir(None)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class TestErrors:
    def test_hierarchy(self):
        assert issubclass(ConfigError, AgentError)
        assert issubclass(RateLimitError, TransportError)
        assert not issubclass(UserCancelledError, AgentError)

    def test_rate_limit_status(self):
        assert RateLimitError("slow").status == 429
        assert TransportError("x", status=502).status == 502


# ---------------------------------------------------------------------------
# report_error
# ---------------------------------------------------------------------------


class TestReportError:
    def test_writes_json_with_context(self, report_dir):
        try:
            raise ValueError("bad thing")
        except ValueError as e:
            path = report_error(e, "it broke", {"history": [1, 2]}, "unit-test")

        assert path is not None
        assert "helm-client-error-unit-test-" in path
        data = json.loads(open(path, encoding="utf-8").read())
        assert data["error"]["type"] == "ValueError"
        assert data["error"]["message"] == "bad thing"
        assert "Traceback" in data["error"]["stack"]
        assert data["context"] == {"history": [1, 2]}

    def test_unwritable_dir_returns_none(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        set_error_report_dir(str(blocker / "sub"))
        try:
            assert report_error(RuntimeError("x"), "msg") is None
        finally:
            set_error_report_dir(None)


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class TestTelemetry:
    def test_empty_report(self):
        t = Telemetry()
        r = t.build_report(
            task="hello",
            model="m",
            provider="lmstudio",
            settings={},
            outcome="success",
            answer="done",
            exit_code=0,
            turns=0,
        )
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["api_requests"] == 0
        assert r["timeline"] == []

    def test_api_tracking(self):
        t = Telemetry()
        t.record_api_request("m", "p1", 100)
        t.record_api_response(
            "m", 1.5, prompt_id="p1", input_tokens=100, output_tokens=20, finish_reason="STOP"
        )
        t.record_api_request("m", "p1", 120)
        t.record_api_error("m", 0.5, RateLimitError("slow"), prompt_id="p1", status=429)
        assert t.api_requests == 2
        assert t.api_errors == 1
        assert t.total_api_time == pytest.approx(2.0)
        assert t.input_tokens == 100
        assert t.output_tokens == 20
        assert [e["type"] for e in t.events] == [
            "api_request",
            "api_response",
            "api_request",
            "api_error",
        ]
        assert t.events[-1]["error_type"] == "RateLimitError"

    def test_tool_stats(self):
        t = Telemetry()
        t.record_tool_call("read_file", "a", {"file_path": "x"}, "success", 0.1)
        t.record_tool_call("read_file", "b", {}, "error", 0.2, error="missing")
        t.record_tool_call("edit_file", "c", {}, "cancelled", 0.0, outcome="cancel")
        r = t.build_report(
            task="t",
            model="m",
            provider="p",
            settings={},
            outcome="success",
            answer=None,
            exit_code=0,
            turns=1,
        )
        assert r["stats"]["tool_calls_total"] == 3
        assert r["stats"]["tool_calls_succeeded"] == 1
        assert r["stats"]["tool_calls_failed"] == 1
        assert r["stats"]["tool_calls_cancelled"] == 1
        assert r["stats"]["tool_calls_by_name"]["read_file"] == {
            "succeeded": 1,
            "failed": 1,
            "cancelled": 0,
        }
        assert t.events[1]["error"] == "missing"
        assert t.events[2]["outcome"] == "cancel"

    def test_error_message_in_result(self):
        r = Telemetry().build_report(
            task="t",
            model="m",
            provider="p",
            settings={},
            outcome="error",
            answer=None,
            exit_code=1,
            turns=0,
            error_message="boom",
        )
        assert r["result"]["error_message"] == "boom"

    def test_write_requires_finalize(self, tmp_path):
        with pytest.raises(AgentError):
            Telemetry().write(str(tmp_path / "r.json"))

    def test_finalize_and_write(self, tmp_path):
        t = Telemetry()
        t.record_compression(1000, 200)
        t.finalize(
            task="t",
            model="m",
            provider="p",
            settings={"max_turns": 5},
            outcome="success",
            answer="a",
            exit_code=0,
            turns=2,
        )
        out = tmp_path / "report.json"
        t.write(str(out))
        data = json.loads(out.read_text())
        assert data["stats"]["compressions"] == 1
        assert data["settings"] == {"max_turns": 5}
        assert data["timeline"][0]["tokens_after"] == 200
