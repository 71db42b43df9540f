"""Base exceptions and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the assistant or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown provider, bad config value, etc.)."""


class SessionBusyError(AgentError):
    """Raised when a session is asked a question while a job is still running."""


class ReportCollector:
    """Accumulates events during one job for JSON report output.

    Written to from the worker thread only; read once the job is delivered.
    """

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, int] = {}
        self.llm_calls = 0
        self.llm_failures = 0
        self.total_llm_time = 0.0
        self.max_round_seen = 0

    def record_llm_call(
        self,
        round_no: int,
        duration: float,
        prompt_tokens_est: int,
        *,
        error_kind: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if error_kind is not None:
            self.llm_failures += 1
        if round_no > self.max_round_seen:
            self.max_round_seen = round_no
        event = {
            "round": round_no,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": prompt_tokens_est,
            "succeeded": error_kind is None,
        }
        if error_kind is not None:
            event["error_kind"] = error_kind
        self.events.append(event)

    def record_tool_call(
        self,
        round_no: int,
        name: str,
        arguments: dict | None,
        result_length: int,
    ):
        self.tool_stats[name] = self.tool_stats.get(name, 0) + 1
        self.events.append(
            {
                "round": round_no,
                "type": "tool_call",
                "name": name,
                "arguments": arguments,
                "result_length": result_length,
            }
        )

    def record_truncated_transcript(self, round_no: int, length: int):
        self.events.append(
            {"round": round_no, "type": "truncated_transcript", "length": length}
        )

    def build_report(
        self,
        *,
        task: str,
        provider: str,
        settings: dict,
        outcome: str,
        reply: str | None,
        insert_text: str | None = None,
        error_message: str | None = None,
    ) -> dict:
        result: dict = {
            "outcome": outcome,
            "reply": reply,
            "insert_text": insert_text,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "rounds": self.max_round_seen,
                "llm_calls": self.llm_calls,
                "llm_failures": self.llm_failures,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "tool_calls_total": sum(self.tool_stats.values()),
                "tool_calls_by_name": dict(self.tool_stats),
            },
            "timeline": self.events,
        }


def write_report(path: str, report: dict) -> None:
    """Write an already-built report dict as indented JSON."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
        f.write("\n")
