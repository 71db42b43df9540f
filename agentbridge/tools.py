"""Read-only tools the model may call before answering.

Every tool reads from the job's Snapshot; none touches live application
state, the filesystem or the network.
"""

from .context import Snapshot
from .reply import (
    DEFAULT_TAIL_LINES,
    MAX_TOOL_CALLS,
    TOOL_COMMAND_LOG_TAIL,
    TOOL_LAST_MODEL_SUMMARY,
    ToolCall,
)

MAX_TRANSCRIPT_CHARS = 40_000
MAX_TAIL_CHARS = 32_000
TRUNCATION_MARKER = "\n...[truncated]...\n"
UNAVAILABLE = "(unavailable)"

# Tool name -> Snapshot field, for tools that return a field verbatim.
_FIELD_TOOLS = {
    "get_dataset_summary": "dataset",
    "get_last_error": "last_error",
    "get_script_selection": "script_selection",
    "get_script_full": "script_full",
}

TOOL_NAMES = (
    "get_dataset_summary",
    "get_last_error",
    "get_script_selection",
    "get_script_full",
    TOOL_COMMAND_LOG_TAIL,
    TOOL_LAST_MODEL_SUMMARY,
)

_TOOL_ARG_HINTS = {
    TOOL_COMMAND_LOG_TAIL: f'(args: {{"n_lines": {DEFAULT_TAIL_LINES}}})',
    TOOL_LAST_MODEL_SUMMARY: '(args: {"style": "simple"|"full"})',
}


def describe_tools() -> str:
    """One line per tool, as listed in the tool-use instructions."""
    lines = []
    for name in TOOL_NAMES:
        hint = _TOOL_ARG_HINTS.get(name)
        lines.append(f"- {name} {hint}" if hint else f"- {name}")
    return "\n".join(lines) + "\n"


def tail_lines(text: str, n_lines: int) -> str:
    """Return the last n_lines lines of text (50 when n_lines is not positive)."""
    if n_lines <= 0:
        n_lines = DEFAULT_TAIL_LINES
    lines = text.splitlines(keepends=True)
    tail = "".join(lines[-n_lines:])
    return tail[:MAX_TAIL_CHARS]


def run_tool(call: ToolCall, snapshot: Snapshot) -> str | None:
    """Return the raw output of one tool, or None when nothing is available."""
    if call.name in _FIELD_TOOLS:
        return getattr(snapshot, _FIELD_TOOLS[call.name])
    if call.name == TOOL_COMMAND_LOG_TAIL:
        if not snapshot.command_log:
            return None
        return tail_lines(snapshot.command_log, call.n_lines)
    if call.name == TOOL_LAST_MODEL_SUMMARY:
        if call.style == "full":
            return snapshot.last_model_full
        return snapshot.last_model_simple
    return None


def format_block(name: str, body: str | None) -> str:
    if not body:
        body = UNAVAILABLE
    if not body.endswith("\n"):
        body += "\n"
    return f"--- tool:{name} ---\n{body}--- end ---\n"


def execute_tool_calls(tool_calls: list[ToolCall], snapshot: Snapshot) -> str | None:
    """Run up to MAX_TOOL_CALLS calls in order and return the framed transcript.

    Returns None when there is nothing to run. Unknown tools and empty fields
    show up as "(unavailable)" blocks rather than errors.
    """
    if not tool_calls:
        return None

    transcript = "".join(
        format_block(call.name, run_tool(call, snapshot))
        for call in tool_calls[:MAX_TOOL_CALLS]
    )
    if len(transcript) > MAX_TRANSCRIPT_CHARS:
        transcript = transcript[:MAX_TRANSCRIPT_CHARS] + TRUNCATION_MARKER
    return transcript
