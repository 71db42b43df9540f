"""Tests for prompt construction and the two-round agent loop."""

from io import StringIO
from unittest.mock import patch

import pytest
from rich.console import Console

from agentbridge import agent, fmt
from agentbridge.agent import (
    MAX_ROUNDS,
    build_followup_prompt,
    build_full_prompt,
    run_agent_loop,
)
from agentbridge.context import Snapshot
from agentbridge.provider import LLMTimeoutError, ProviderFailedError
from agentbridge.report import ReportCollector
from agentbridge.reply import PROPOSED_SCRIPT_LABEL


def _scripted(*replies):
    """A fake invoke() returning the given (reply, error) pairs in order."""
    calls = []

    def fake(provider, prompt, settings=None):
        calls.append({"provider": provider, "prompt": prompt})
        return replies[len(calls) - 1]

    fake.calls = calls
    return fake


def _ok(text):
    return (text, None)


TOOL_REQUEST = '{"assistant_text": "", "tool_calls": [{"name": "get_last_error"}]}'
FINAL = '{"assistant_text": "Fix the typo.", "proposed_insert": "ols y 0 x", "tool_calls": []}'


@pytest.fixture(autouse=True)
def _no_tiktoken(monkeypatch):
    monkeypatch.setattr(agent, "estimate_tokens", lambda text: len(text) // 4)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class TestBuildFullPrompt:
    def test_tools_schema_and_request(self):
        prompt = build_full_prompt("Why?", Snapshot(), tools_enabled=True)
        assert prompt.startswith(agent.ASSISTANT_PREAMBLE)
        assert "Return ONLY a single JSON object" in prompt
        assert "- get_command_log_tail (args:" in prompt
        assert prompt.endswith("User request:\nWhy?\n\n")

    def test_no_schema_without_tools(self):
        prompt = build_full_prompt("Why?", Snapshot(), tools_enabled=False)
        assert "JSON" not in prompt
        assert "get_dataset_summary" not in prompt

    def test_inlined_context(self):
        snap = Snapshot(dataset="nobs=10", last_error="bad", script_full="open x")
        prompt = build_full_prompt(
            "q",
            snap,
            tools_enabled=False,
            include_dataset=True,
            include_last_error=True,
            include_script=True,
        )
        assert "[Dataset]\nnobs=10\n" in prompt
        assert "[Last error]\nbad\n" in prompt
        assert "[Script] (full)\nopen x\n" in prompt
        assert prompt.index("User request:") < prompt.index("[Dataset]")

    def test_selection_preferred(self):
        snap = Snapshot(script_selection="sel", script_full="full")
        prompt = build_full_prompt("q", snap, tools_enabled=False, include_script=True)
        assert "[Script] (selection)\nsel\n" in prompt
        assert "full" not in prompt.split("User request:")[1]

    def test_missing_context(self):
        prompt = build_full_prompt(
            "q",
            Snapshot(),
            tools_enabled=False,
            include_dataset=True,
            include_last_error=True,
            include_script=True,
        )
        assert "[Dataset]\n(no dataset loaded)\n" in prompt
        assert "[Last error]\n(none)\n" in prompt
        assert "[Script]\n(no active script)\n" in prompt

    def test_context_excluded_by_default(self):
        prompt = build_full_prompt("q", Snapshot(dataset="nobs=10"), tools_enabled=True)
        assert "nobs=10" not in prompt

    def test_followup(self):
        out = build_followup_prompt("P", "--- tool:x ---\n(unavailable)\n--- end ---\n")
        assert out == (
            "P\n\nTool results:\n--- tool:x ---\n(unavailable)\n--- end ---\n"
            "\n\nNow respond using the JSON schema. Do not request any more tools.\n"
        )


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


class TestRunAgentLoop:
    def test_single_round_without_tool_calls(self):
        fake = _scripted(_ok('{"assistant_text":"hi","tool_calls":[]}'))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="codex")
        assert out.reply == "hi"
        assert out.rounds == 1
        assert out.error is None
        assert len(fake.calls) == 1

    def test_tool_round_trip(self):
        fake = _scripted(_ok(TOOL_REQUEST), _ok(FINAL))
        snap = Snapshot(last_error="undefined symbol x")
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", snap, provider="gemini")

        assert len(fake.calls) == 2
        second = fake.calls[1]["prompt"]
        assert second.startswith("P\n\nTool results:\n--- tool:get_last_error ---\n")
        assert "undefined symbol x" in second
        assert out.reply == "Fix the typo.\n\n" + PROPOSED_SCRIPT_LABEL + "ols y 0 x\n"
        assert out.insert_text == "ols y 0 x"
        assert out.rounds == 2

    def test_never_more_than_two_invocations(self):
        fake = _scripted(_ok(TOOL_REQUEST), _ok(TOOL_REQUEST), _ok(TOOL_REQUEST))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="codex")
        assert len(fake.calls) == MAX_ROUNDS == 2
        assert out.rounds == 2
        # Round 2 is finalized as-is: the raw reply is shown.
        assert out.reply == TOOL_REQUEST

    def test_tools_disabled_skips_tool_calls(self):
        fake = _scripted(_ok(TOOL_REQUEST))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="codex", tools_enabled=False)
        assert len(fake.calls) == 1
        assert out.rounds == 1

    def test_tools_disabled_still_decodes(self):
        fake = _scripted(_ok(FINAL))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="codex", tools_enabled=False)
        assert out.insert_text == "ols y 0 x"
        assert out.reply.startswith("Fix the typo.")

    def test_plain_prose_reply(self):
        fake = _scripted(_ok("Use the ols command."))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="codex")
        assert out.reply == "Use the ols command."
        assert out.insert_text is None

    def test_error_becomes_reply(self):
        err = LLMTimeoutError("codex timed out after 300s (set AGENTBRIDGE_LLM_TIMEOUT_SEC)")
        fake = _scripted((None, err))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="codex")
        assert out.reply == str(err)
        assert out.error == str(err)
        assert out.rounds == 1

    def test_error_in_second_round_keeps_earlier_insert(self):
        first = '{"proposed_insert": "draft", "tool_calls": [{"name": "get_last_error"}]}'
        fake = _scripted(_ok(first), (None, ProviderFailedError("gemini failed (exit status 1)")))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="gemini")
        assert out.reply == "gemini failed (exit status 1)"
        assert out.insert_text == "draft"

    def test_later_insert_overwrites_earlier(self):
        first = '{"proposed_insert": "draft", "tool_calls": [{"name": "get_last_error"}]}'
        fake = _scripted(_ok(first), _ok('{"proposed_insert": "final"}'))
        with patch.object(agent, "invoke", fake):
            out = run_agent_loop("P", Snapshot(), provider="codex")
        assert out.insert_text == "final"

    def test_none_provider_resolved_from_env(self, monkeypatch):
        monkeypatch.setenv("AGENTBRIDGE_LLM_PROVIDER", "gemini")
        fake = _scripted(_ok("ok"))
        with patch.object(agent, "invoke", fake):
            run_agent_loop("P", Snapshot(), provider="none")
        assert fake.calls[0]["provider"] == "gemini"

    def test_only_first_eight_tool_calls_run(self):
        calls = ",".join('{"name":"get_dataset_summary"}' for _ in range(10))
        fake = _scripted(_ok('{"tool_calls":[' + calls + "]}"), _ok("done"))
        with patch.object(agent, "invoke", fake):
            run_agent_loop("P", Snapshot(dataset="d"), provider="codex")
        assert fake.calls[1]["prompt"].count("--- tool:get_dataset_summary ---") == 8


class TestLoopReporting:
    def test_report_records_calls_and_tools(self):
        report = ReportCollector()
        fake = _scripted(_ok(TOOL_REQUEST), _ok(FINAL))
        with patch.object(agent, "invoke", fake):
            run_agent_loop("P", Snapshot(last_error="boom"), provider="codex", report=report)
        assert report.llm_calls == 2
        assert report.tool_stats == {"get_last_error": 1}
        tool_event = [e for e in report.events if e["type"] == "tool_call"][0]
        assert tool_event["round"] == 1
        assert tool_event["result_length"] == len("boom")

    def test_report_records_failure_kind(self):
        report = ReportCollector()
        fake = _scripted((None, LLMTimeoutError("slow")))
        with patch.object(agent, "invoke", fake):
            run_agent_loop("P", Snapshot(), provider="codex", report=report)
        assert report.llm_failures == 1
        assert report.events[0]["error_kind"] == "timeout"

    def test_verbose_diagnostics(self):
        buf = StringIO()
        old = fmt._console
        fmt._console = Console(file=buf, no_color=True, width=120)
        try:
            fake = _scripted(_ok(TOOL_REQUEST), _ok(FINAL))
            with patch.object(agent, "invoke", fake):
                run_agent_loop("P", Snapshot(), provider="codex", verbose=True)
        finally:
            fmt._console = old
        out = buf.getvalue()
        assert "Round 1/2 via codex" in out
        assert "Round 2/2 via codex" in out
        assert "get_last_error" in out
        assert "Assistant finished: 2 rounds" in out

    def test_quiet_makes_no_token_estimate(self, monkeypatch):
        def boom(text):
            raise AssertionError("token estimate not expected")

        monkeypatch.setattr(agent, "estimate_tokens", boom)
        fake = _scripted(_ok("ok"))
        with patch.object(agent, "invoke", fake):
            run_agent_loop("P", Snapshot(), provider="codex")
