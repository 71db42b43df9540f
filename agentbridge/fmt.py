"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Rounds ------------------------------------------------------------------


def round_header(n: int, max_n: int, provider: str, token_est: int) -> None:
    title = f"Round {n}/{max_n} via {provider} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(provider: str, elapsed: float, error_kind: str | None = None) -> None:
    style = "green" if error_kind is None else "yellow"
    text = Text()
    text.append(f"  {provider} responded in {elapsed:.1f}s", style=style)
    if error_kind is not None:
        text.append(f"  error={error_kind}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Working..."):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(rounds: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(
            Text(f"  \u2713 Assistant finished: {rounds} rounds", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Assistant finished: {rounds} rounds, {outcome}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_desc: str = "") -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    if args_desc:
        header.append(f"  {args_desc}", style="dim")
    _console.print(header)


def tool_transcript(n_calls: int, length: int, truncated: bool) -> None:
    line = Text()
    line.append(f"  \u2713 {n_calls} tool result(s)", style="green")
    line.append(f"  {length} chars", style="green")
    if truncated:
        line.append("  [truncated]", style="yellow")
    _console.print(line)


# -- Replies -----------------------------------------------------------------


def proposed_insert(text: str) -> None:
    header = Text()
    header.append("  [proposed script] ", style="blue")
    header.append(f"{len(text.splitlines())} lines", style="dim")
    _console.print(header)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(provider: str, tools_enabled: bool) -> None:
    tools = "on" if tools_enabled else "off"
    _console.print(
        Text(
            f"Interactive mode ({provider}, tools {tools}). "
            "Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
