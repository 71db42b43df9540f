"""Tests for ReportCollector and JSON report output."""

import json

from agentbridge.report import ReportCollector, write_report


def _build(rc, **overrides):
    kwargs = dict(
        task="Why is x missing?",
        provider="codex",
        settings={"tools_enabled": True, "timeout": 300, "unsafe": False},
        outcome="success",
        reply="Because.",
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


class TestReportCollector:
    def test_empty_report(self):
        report = _build(ReportCollector())
        assert report["version"] == 1
        assert report["task"] == "Why is x missing?"
        assert report["result"] == {
            "outcome": "success",
            "reply": "Because.",
            "insert_text": None,
        }
        assert report["stats"]["llm_calls"] == 0
        assert report["timeline"] == []

    def test_llm_calls(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 1.23456, 800)
        rc.record_llm_call(2, 0.5, 900, error_kind="timeout")
        report = _build(rc, outcome="error", error_message="timed out")
        stats = report["stats"]
        assert stats["rounds"] == 2
        assert stats["llm_calls"] == 2
        assert stats["llm_failures"] == 1
        assert stats["total_llm_time_s"] == 1.735
        assert report["timeline"][0] == {
            "round": 1,
            "type": "llm_call",
            "duration_s": 1.235,
            "prompt_tokens_est": 800,
            "succeeded": True,
        }
        assert report["timeline"][1]["error_kind"] == "timeout"
        assert report["result"]["error_message"] == "timed out"

    def test_tool_calls(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "get_command_log_tail", {"n_lines": 3}, 21)
        rc.record_tool_call(1, "get_last_error", {}, 0)
        rc.record_tool_call(1, "get_last_error", {}, 0)
        rc.record_truncated_transcript(1, 40019)
        stats = _build(rc)["stats"]
        assert stats["tool_calls_total"] == 3
        assert stats["tool_calls_by_name"] == {"get_command_log_tail": 1, "get_last_error": 2}

    def test_written_report_round_trips(self, tmp_path):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.1, 10)
        path = tmp_path / "report.json"
        write_report(str(path), _build(rc, insert_text="ols y 0 x"))
        data = json.loads(path.read_text())
        assert data["result"]["insert_text"] == "ols y 0 x"
        assert data["stats"]["llm_calls"] == 1


class TestWriteReport:
    def test_writes_indented_json(self, tmp_path):
        path = tmp_path / "r.json"
        write_report(str(path), {"a": [1, 2]})
        text = path.read_text()
        assert text.endswith("\n")
        assert json.loads(text) == {"a": [1, 2]}
        assert '\n  "a"' in text
