"""Prompt construction, the two-round tool loop, and the command-line entry point."""

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import (
    _UNSET,
    _global_config_dir,
    apply_config_to_args,
    generate_config,
    load_config,
)
from .context import FileContext, Snapshot
from .provider import (
    MAX_TIMEOUT,
    PROVIDER_NONE,
    PROVIDERS,
    InvokerSettings,
    default_provider,
    invoke,
    parse_provider,
)
from .report import AgentError, ConfigError, ReportCollector, write_report
from .reply import MAX_TOOL_CALLS, decode, render_for_display
from .tools import (
    MAX_TRANSCRIPT_CHARS,
    describe_tools,
    execute_tool_calls,
    run_tool,
)

MAX_ROUNDS = 2

ASSISTANT_PREAMBLE = (
    "You are an assistant embedded in an interactive data-analysis application. "
    "Be concise. If you propose code, output plain script text without Markdown fences.\n\n"
)

SCHEMA_INSTRUCTIONS = (
    "Return ONLY a single JSON object with this schema:\n"
    '{"assistant_text": "...", "proposed_insert": "...", '
    '"tool_calls": [{"name":"...","args":{...}}]}\n'
    "If you do not need tools, set tool_calls to [].\n"
    "Available read-only tools:\n"
    "{tools}"
    "Do not include Markdown fences.\n\n"
)

FOLLOWUP_SUFFIX = (
    "\n\nNow respond using the JSON schema. Do not request any more tools.\n"
)

_encoder = None


def estimate_tokens(text: str) -> int:
    """Approximate prompt size with tiktoken; the encoding is loaded on first use."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return len(_encoder.encode(text, disallowed_special=()))


def effective_provider(provider: str) -> str:
    """Resolve "none" to the environment's default provider."""
    if provider == PROVIDER_NONE:
        return default_provider()
    return provider


# --- Prompts ---


def _section(header: str, body: str | None, missing: str) -> str:
    if not body:
        body = missing
    if not body.endswith("\n"):
        body += "\n"
    return f"{header}\n{body}\n"


def _script_section(snapshot: Snapshot) -> str:
    if snapshot.script_selection:
        return _section("[Script] (selection)", snapshot.script_selection, "")
    if snapshot.script_full:
        return _section("[Script] (full)", snapshot.script_full, "")
    return _section("[Script]", None, "(no active script)")


def build_full_prompt(
    user_prompt: str,
    snapshot: Snapshot,
    *,
    tools_enabled: bool,
    include_dataset: bool = False,
    include_last_error: bool = False,
    include_script: bool = False,
) -> str:
    """Assemble the round-1 prompt: preamble, tool schema, request, inlined context."""
    parts = [ASSISTANT_PREAMBLE]
    if tools_enabled:
        parts.append(SCHEMA_INSTRUCTIONS.replace("{tools}", describe_tools()))

    parts.append("User request:\n")
    parts.append(user_prompt or "")
    parts.append("\n\n")

    if include_dataset:
        parts.append(_section("[Dataset]", snapshot.dataset, "(no dataset loaded)"))
    if include_last_error:
        parts.append(_section("[Last error]", snapshot.last_error, "(none)"))
    if include_script:
        parts.append(_script_section(snapshot))

    return "".join(parts)


def build_followup_prompt(prompt: str, tool_log: str) -> str:
    return f"{prompt}\n\nTool results:\n{tool_log}{FOLLOWUP_SUFFIX}"


# --- Agent loop ---


@dataclass
class LoopOutcome:
    reply: str
    insert_text: str | None
    rounds: int
    error: str | None = None


def _args_desc(args: dict) -> str:
    return json.dumps(args) if args else ""


def _run_tools(tool_calls, snapshot, round_no, verbose, report) -> str:
    calls = tool_calls[:MAX_TOOL_CALLS]
    for call in calls:
        if verbose:
            fmt.tool_call(call.name, _args_desc(call.args_dict()))
        if report is not None:
            output = run_tool(call, snapshot)
            report.record_tool_call(
                round_no, call.name, call.args_dict(), len(output or "")
            )

    transcript = execute_tool_calls(calls, snapshot) or ""
    truncated = len(transcript) > MAX_TRANSCRIPT_CHARS
    if verbose:
        fmt.tool_transcript(len(calls), len(transcript), truncated)
    if truncated and report is not None:
        report.record_truncated_transcript(round_no, len(transcript))
    return transcript


def run_agent_loop(
    prompt: str,
    snapshot: Snapshot,
    *,
    provider: str,
    tools_enabled: bool = True,
    settings: InvokerSettings | None = None,
    verbose: bool = False,
    report: ReportCollector | None = None,
) -> LoopOutcome:
    """Ask the provider, run any requested tools once, and ask again.

    Never makes more than MAX_ROUNDS invocations. A provider error ends the
    loop and its message becomes the reply.
    """
    provider = effective_provider(provider)
    tool_log = ""
    insert_text = None

    for round_no in range(1, MAX_ROUNDS + 1):
        full_prompt = prompt if round_no == 1 else build_followup_prompt(prompt, tool_log)

        token_est = 0
        if verbose or report is not None:
            token_est = estimate_tokens(full_prompt)
        if verbose:
            fmt.round_header(round_no, MAX_ROUNDS, provider, token_est)

        t0 = time.monotonic()
        raw, err = invoke(provider, full_prompt, settings)
        elapsed = time.monotonic() - t0

        error_kind = err.kind if err is not None else None
        if verbose:
            fmt.llm_timing(provider, elapsed, error_kind)
        if report is not None:
            report.record_llm_call(round_no, elapsed, token_est, error_kind=error_kind)

        if err is not None:
            if verbose:
                fmt.completion(round_no, error_kind)
            return LoopOutcome(
                reply=str(err), insert_text=insert_text, rounds=round_no, error=str(err)
            )

        reply = decode(raw)
        if reply.proposed_insert:
            insert_text = reply.proposed_insert
            if verbose:
                fmt.proposed_insert(insert_text)

        if tools_enabled and reply.tool_calls and round_no < MAX_ROUNDS:
            tool_log += _run_tools(reply.tool_calls, snapshot, round_no, verbose, report)
            continue

        if verbose:
            fmt.completion(round_no, "ok")
        return LoopOutcome(
            reply=render_for_display(reply, raw),
            insert_text=insert_text,
            rounds=round_no,
        )

    # Unreachable: the last round always returns above.
    raise AssertionError("agent loop exceeded its round limit")


# --- CLI ---


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentbridge",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="Ask a command-line LLM (codex or gemini) about your analysis, "
        "with optional read-only access to its context.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question for the assistant."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM command-line provider (default: $AGENTBRIDGE_LLM_PROVIDER, else codex).",
    )
    parser.add_argument(
        "--tools",
        action=argparse.BooleanOptionalAction,
        help="Let the model request read-only context before answering (default: on).",
    )
    parser.add_argument(
        "--include-dataset",
        action=argparse.BooleanOptionalAction,
        help="Inline the dataset summary in the prompt (default: on).",
    )
    parser.add_argument(
        "--include-last-error",
        action=argparse.BooleanOptionalAction,
        help="Inline the last error message in the prompt.",
    )
    parser.add_argument(
        "--include-script",
        action=argparse.BooleanOptionalAction,
        help="Inline the script selection (or the full script) in the prompt.",
    )

    # Set after the fact so BooleanOptionalAction does not print the sentinel in --help.
    parser.set_defaults(
        tools=_UNSET,
        include_dataset=_UNSET,
        include_last_error=_UNSET,
        include_script=_UNSET,
    )

    ctx = parser.add_argument_group("context files")
    ctx.add_argument("--dataset", metavar="FILE", help="Dataset summary.")
    ctx.add_argument("--last-error", metavar="FILE", help="Last error message.")
    ctx.add_argument("--script", metavar="FILE", help="Full script text.")
    ctx.add_argument("--selection", metavar="FILE", help="Selected script text.")
    ctx.add_argument("--command-log", metavar="FILE", help="Command log.")
    ctx.add_argument("--model-summary", metavar="FILE", help="Last model summary.")
    ctx.add_argument(
        "--model-summary-full",
        metavar="FILE",
        help="Full last model summary (defaults to --model-summary).",
    )

    parser.add_argument(
        "--insert-out",
        metavar="FILE",
        default=None,
        help="Write the proposed script (or the reply when there is none) to FILE. "
        "The text is never executed.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=_UNSET,
        metavar="SECONDS",
        help=f"Wall-clock limit per provider call, 1..{MAX_TIMEOUT} (default: 300).",
    )
    parser.add_argument(
        "--unsafe",
        action="store_true",
        default=_UNSET,
        help="Run codex without its sandbox and approval prompts.",
    )
    parser.add_argument(
        "--codex-bin", default=_UNSET, metavar="PATH", help="codex executable."
    )
    parser.add_argument(
        "--gemini-bin", default=_UNSET, metavar="PATH", help="gemini executable."
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the reply.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a commented config template to the global config directory and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write ./agentbridge.toml instead.",
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("agentbridge")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        _handle_init_config(args)
        sys.exit(0)

    try:
        config = load_config(Path.cwd())
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if args.timeout is not None and not 0 < args.timeout <= MAX_TIMEOUT:
        parser.error(f"--timeout must be between 1 and {MAX_TIMEOUT}")

    fmt.init(color=args.color, no_color=args.no_color)

    try:
        code = _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    sys.exit(code)


def _handle_init_config(args) -> None:
    """Write a config template, refusing to overwrite an existing file."""
    if args.project:
        dest = Path.cwd() / "agentbridge.toml"
    else:
        dest = _global_config_dir() / "config.toml"

    if dest.exists():
        fmt.error(f"{dest} already exists; not overwriting")
        sys.exit(1)

    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(generate_config(project=args.project), encoding="utf-8")
    print(f"Wrote {dest}")


def _file_context(args) -> FileContext:
    return FileContext(
        dataset=args.dataset,
        last_error=args.last_error,
        script=args.script,
        selection=args.selection,
        command_log=args.command_log,
        model_summary=args.model_summary,
        model_summary_full=args.model_summary_full,
    )


def _print_reply(text: str) -> None:
    print(text, end="" if text.endswith("\n") else "\n")


def _wait(session, job, verbose: bool) -> None:
    """Pump completions until job is delivered.

    Requests cannot be cancelled: Ctrl-C only warns and keeps waiting.
    """
    while True:
        try:
            if verbose:
                with fmt.llm_spinner("Waiting for the assistant..."):
                    session.scheduler.wait_for(job)
            else:
                session.scheduler.wait_for(job)
            return
        except KeyboardInterrupt:
            fmt.warning(
                "requests cannot be cancelled; waiting for the provider to finish or time out"
            )


def _run_main(args) -> int:
    from .session import Session

    session = Session(
        provider=args.provider,
        tools=args.tools,
        include_dataset=args.include_dataset,
        include_last_error=args.include_last_error,
        include_script=args.include_script,
        context=_file_context(args),
        timeout=args.timeout,
        unsafe=args.unsafe,
        codex_bin=args.codex_bin,
        gemini_bin=args.gemini_bin,
        verbose=args.verbose,
        report=bool(args.report),
    )

    with session:
        if args.repl:
            repl_loop(session, initial=args.question)
            return 0

        job = session.ask(args.question)
        _wait(session, job, args.verbose)
        result = job.result()
        _print_reply(result.reply)

        if args.insert_out:
            try:
                Path(args.insert_out).write_text(session.text_to_insert(), encoding="utf-8")
            except OSError as e:
                fmt.error(f"Failed to write {args.insert_out}: {e}")
                return 1
            if args.verbose:
                fmt.info(f"Insertion text written to {args.insert_out}")

    if args.report and result.report is not None:
        try:
            write_report(args.report, result.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return 1
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    return 1 if result.error else 0


# --- REPL ---


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /provider [name]   Show or switch the provider (codex, gemini)\n"
        "  /tools on|off      Enable or disable read-only tools\n"
        "  /insert            Show the text that would be inserted\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_provider(session, arg: str) -> None:
    if not arg:
        fmt.info(f"provider: {effective_provider(session.provider)}")
        return
    try:
        session.provider = parse_provider(arg)
    except ConfigError as e:
        fmt.error(str(e))
        return
    fmt.info(f"provider: {effective_provider(session.provider)}")


def _repl_tools(session, arg: str) -> None:
    value = arg.strip().lower()
    if value not in ("on", "off"):
        fmt.warning(f"usage: /tools on|off (currently {'on' if session.tools else 'off'})")
        return
    session.tools = value == "on"
    fmt.info(f"tools {value}")


def _repl_insert(session) -> None:
    text = session.text_to_insert()
    if not text:
        fmt.info("nothing to insert yet")
        return
    _print_reply(text)


def _repl_ask(session, question: str) -> None:
    try:
        job = session.ask(question)
    except AgentError as e:
        fmt.error(str(e))
        return
    _wait(session, job, session.verbose)
    _print_reply(job.result().reply)


def repl_loop(session, initial: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(".agentbridge", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "agentbridge> ")])

    if session.verbose:
        fmt.repl_banner(effective_provider(session.provider), session.tools)

    if initial:
        _repl_ask(session, initial)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
        elif cmd == "/provider":
            _repl_provider(session, cmd_arg)
        elif cmd == "/tools":
            _repl_tools(session, cmd_arg)
        elif cmd == "/insert":
            _repl_insert(session)
        else:
            _repl_ask(session, line)


if __name__ == "__main__":
    main()
