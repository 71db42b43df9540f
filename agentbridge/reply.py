"""Structured view of a provider reply.

Replies are asked to follow a small JSON schema:

    {"assistant_text": "...", "proposed_insert": "...",
     "tool_calls": [{"name": "...", "args": {...}}]}

Models do not always comply, so decoding scrapes what it can and never fails.
"""

from dataclasses import dataclass, field

from . import minijson

MAX_TOOL_CALLS = 8
DEFAULT_TAIL_LINES = 50

TOOL_COMMAND_LOG_TAIL = "get_command_log_tail"
TOOL_LAST_MODEL_SUMMARY = "get_last_model_summary"

PROPOSED_SCRIPT_LABEL = "[Proposed script]\n"


@dataclass
class ToolCall:
    name: str
    n_lines: int = DEFAULT_TAIL_LINES
    style: str = "simple"

    def args_dict(self) -> dict:
        """Arguments that matter for this tool, for logs and reports."""
        if self.name == TOOL_COMMAND_LOG_TAIL:
            return {"n_lines": self.n_lines}
        if self.name == TOOL_LAST_MODEL_SUMMARY:
            return {"style": self.style}
        return {}


@dataclass
class LLMReply:
    assistant_text: str | None = None
    proposed_insert: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


def _decode_tool_call(obj: str) -> ToolCall | None:
    name = minijson.extract_string_field(obj, "name")
    if not name:
        return None

    call = ToolCall(name=name)
    span = minijson.extract_object_span(obj, "args")
    if span is None:
        return call

    args = obj[span[0] : span[1] + 1]
    if name == TOOL_COMMAND_LOG_TAIL:
        pos = minijson.find_field_value_start(args, "n_lines")
        if pos is not None:
            parsed = minijson.parse_int(args, pos)
            if parsed is not None:
                call.n_lines = parsed[0]
    elif name == TOOL_LAST_MODEL_SUMMARY:
        style = minijson.extract_string_field(args, "style")
        if style:
            call.style = style
    return call


def _decode_tool_calls(raw: str) -> list[ToolCall]:
    span = minijson.extract_array_span(raw, "tool_calls")
    if span is None:
        return []

    start, end = span
    calls: list[ToolCall] = []
    entries = 0
    pos = start + 1
    while pos < end and entries < MAX_TOOL_CALLS:
        pos = minijson.skip_whitespace(raw, pos)
        if pos >= end:
            break
        if raw[pos] == ",":
            pos += 1
            continue
        if raw[pos] != "{":
            break
        obj_end = minijson.match_closing(raw, pos, "{", "}")
        if obj_end is None or obj_end > end:
            break

        entries += 1
        call = _decode_tool_call(raw[pos : obj_end + 1])
        if call is not None:
            calls.append(call)
        pos = obj_end + 1

    return calls


def decode(raw_text: str | None) -> LLMReply:
    """Scrape the reply fields out of raw provider text."""
    if not raw_text:
        return LLMReply()
    return LLMReply(
        assistant_text=minijson.extract_string_field(raw_text, "assistant_text"),
        proposed_insert=minijson.extract_string_field(raw_text, "proposed_insert"),
        tool_calls=_decode_tool_calls(raw_text),
    )


def render_for_display(reply: LLMReply, raw_fallback: str | None) -> str:
    """Text to show the user; falls back to the raw reply for plain prose."""
    parts: list[str] = []
    if reply.assistant_text:
        parts.append(reply.assistant_text)

    if reply.proposed_insert:
        if parts:
            parts.append("\n\n")
        parts.append(PROPOSED_SCRIPT_LABEL)
        parts.append(reply.proposed_insert)
        if not reply.proposed_insert.endswith("\n"):
            parts.append("\n")

    if not parts:
        return raw_fallback or ""
    return "".join(parts)
