"""Read-only application context handed to the assistant.

The application decides what each string contains; this module only fixes
the shape (a Snapshot) and provides a file-backed source for the CLI.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

MAX_SCRIPT_CHARS = 32_000
MAX_LOG_CHARS = 200_000
MAX_FIELD_CHARS = 32_000


@dataclass(frozen=True)
class Snapshot:
    """Context strings captured once, on the asking thread, per job."""

    dataset: str | None = None
    last_error: str | None = None
    script_selection: str | None = None
    script_full: str | None = None
    command_log: str | None = None
    last_model_simple: str | None = None
    last_model_full: str | None = None


EMPTY_SNAPSHOT = Snapshot()

# Called synchronously when a question is asked; must return fresh,
# already size-capped strings.
ContextProvider = Callable[[], Snapshot]


def _cap(text: str, limit: int) -> str:
    return text[:limit] if len(text) > limit else text


def _read_capped(path: str | None, limit: int) -> str | None:
    if not path:
        return None
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return _cap(text, limit)


class FileContext:
    """Context provider that re-reads a set of files on every call.

    Each argument is an optional path. Missing or unreadable files leave the
    corresponding Snapshot field empty, which the tools report as unavailable.
    """

    def __init__(
        self,
        *,
        dataset: str | None = None,
        last_error: str | None = None,
        script: str | None = None,
        selection: str | None = None,
        command_log: str | None = None,
        model_summary: str | None = None,
        model_summary_full: str | None = None,
    ):
        self.dataset = dataset
        self.last_error = last_error
        self.script = script
        self.selection = selection
        self.command_log = command_log
        self.model_summary = model_summary
        self.model_summary_full = model_summary_full

    def __call__(self) -> Snapshot:
        model_simple = _read_capped(self.model_summary, MAX_FIELD_CHARS)
        model_full = _read_capped(self.model_summary_full, MAX_FIELD_CHARS)
        return Snapshot(
            dataset=_read_capped(self.dataset, MAX_FIELD_CHARS),
            last_error=_read_capped(self.last_error, MAX_FIELD_CHARS),
            script_selection=_read_capped(self.selection, MAX_SCRIPT_CHARS),
            script_full=_read_capped(self.script, MAX_SCRIPT_CHARS),
            command_log=_read_capped(self.command_log, MAX_LOG_CHARS),
            last_model_simple=model_simple,
            # A single summary file serves both styles.
            last_model_full=model_full if model_full is not None else model_simple,
        )
