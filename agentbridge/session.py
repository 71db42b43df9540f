"""Public library API: Session, Job and Result."""

import itertools
from dataclasses import dataclass

from .agent import build_full_prompt, run_agent_loop
from .config import config_to_session_kwargs, load_config
from .context import EMPTY_SNAPSHOT, ContextProvider, Snapshot
from .provider import InvalidInputError, InvokerSettings, parse_provider
from .report import AgentError, ReportCollector, SessionBusyError
from .scheduler import RequestScheduler


@dataclass
class Result:
    """Outcome of one question."""

    reply: str
    insert_text: str | None
    rounds: int
    error: str | None
    report: dict | None


class Job:
    """One question in flight.

    Created on the asking thread, executed by exactly one worker, then
    handed back to the asking thread for delivery and release.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        *,
        question: str,
        prompt: str,
        provider: str,
        tools_enabled: bool,
        snapshot: Snapshot,
        settings: InvokerSettings,
        verbose: bool = False,
        report: ReportCollector | None = None,
    ):
        self.id = next(Job._ids)
        self.question = question
        self.prompt = prompt
        self.provider = provider
        self.tools_enabled = tools_enabled
        self.snapshot: Snapshot | None = snapshot
        self.settings = settings
        self.verbose = verbose
        self.report = report

        self.reply: str | None = None
        self.insert_text: str | None = None
        self.rounds = 0
        self.error: str | None = None
        self.report_dict: dict | None = None
        self.delivered = False

    def execute(self) -> None:
        """Run the agent loop. Worker thread only."""
        outcome = run_agent_loop(
            self.prompt,
            self.snapshot or EMPTY_SNAPSHOT,
            provider=self.provider,
            tools_enabled=self.tools_enabled,
            settings=self.settings,
            verbose=self.verbose,
            report=self.report,
        )
        self.reply = outcome.reply
        self.insert_text = outcome.insert_text
        self.rounds = outcome.rounds
        self.error = outcome.error
        self._finish_report()

    def fail(self, message: str) -> None:
        self.reply = message
        self.error = message
        self._finish_report()

    def _finish_report(self) -> None:
        if self.report is None:
            return
        self.report_dict = self.report.build_report(
            task=self.question,
            provider=self.provider,
            settings={
                "tools_enabled": self.tools_enabled,
                "timeout": self.settings.timeout,
                "unsafe": self.settings.unsafe,
            },
            outcome="error" if self.error else "success",
            reply=self.reply,
            insert_text=self.insert_text,
            error_message=self.error,
        )

    def result(self) -> Result:
        return Result(
            reply=self.reply or "",
            insert_text=self.insert_text,
            rounds=self.rounds,
            error=self.error,
            report=self.report_dict,
        )

    def release(self) -> None:
        """Drop the snapshot and report buffers."""
        self.snapshot = None
        self.report = None


class Session:
    """Programmatic interface to the assistant.

    Holds options as plain attributes plus the last reply and proposed
    insertion. At most one question is in flight at a time; ask() while busy
    raises SessionBusyError.
    """

    def __init__(
        self,
        *,
        provider: str = "none",
        tools: bool = True,
        include_dataset: bool = True,
        include_last_error: bool = False,
        include_script: bool = False,
        context: ContextProvider | None = None,
        timeout: int | None = None,
        unsafe: bool | None = None,
        codex_bin: str | None = None,
        gemini_bin: str | None = None,
        verbose: bool = False,
        report: bool = False,
        scheduler: RequestScheduler | None = None,
    ):
        self.provider = parse_provider(provider)
        self.tools = tools
        self.include_dataset = include_dataset
        self.include_last_error = include_last_error
        self.include_script = include_script
        self.context = context
        self.timeout = timeout
        self.unsafe = unsafe
        self.codex_bin = codex_bin
        self.gemini_bin = gemini_bin
        self.verbose = verbose
        self.report = report

        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None

        self.last_reply: str | None = None
        self.last_insert: str | None = None
        self.closed = False
        self._active: Job | None = None

    @classmethod
    def from_config(cls, base_dir=".", **overrides) -> "Session":
        """Build a session from the global and project config files.

        Keyword overrides win over config values. Raises ConfigError for an
        invalid config file.
        """
        kwargs = config_to_session_kwargs(load_config(base_dir))
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def scheduler(self) -> RequestScheduler:
        if self._scheduler is None:
            self._scheduler = RequestScheduler(max_workers=1)
        return self._scheduler

    @property
    def busy(self) -> bool:
        return self._active is not None

    def _invoker_settings(self) -> InvokerSettings:
        config = {
            "timeout": self.timeout,
            "unsafe": self.unsafe,
            "codex_bin": self.codex_bin,
            "gemini_bin": self.gemini_bin,
        }
        return InvokerSettings.from_env(
            config={k: v for k, v in config.items() if v is not None}
        )

    def _claim(self, job: Job) -> None:
        if self.closed:
            raise AgentError("session is closed")
        if self._active is not None:
            raise SessionBusyError(
                "the assistant is still working on the previous question"
            )
        self._active = job

    def _unclaim(self, job: Job) -> None:
        if self._active is job:
            self._active = None

    def accepts(self, job: Job) -> bool:
        """True while job's result is still wanted by this session."""
        return not self.closed and self._active is job

    def _finish(self, job: Job) -> None:
        self._active = None
        self.last_reply = job.reply or ""
        self.last_insert = job.insert_text or ""

    def capture_snapshot(self) -> Snapshot:
        if self.context is None:
            return EMPTY_SNAPSHOT
        return self.context()

    def ask(self, question: str, on_complete=None) -> Job:
        """Start answering question in the background and return its Job.

        The snapshot is captured here, on the calling thread. on_complete
        receives a Result once the scheduler delivers the job.
        """
        if self.closed:
            raise AgentError("session is closed")
        if not question or not question.strip():
            raise InvalidInputError("Missing prompt")
        if self.busy:
            raise SessionBusyError(
                "the assistant is still working on the previous question"
            )

        snapshot = self.capture_snapshot()
        prompt = build_full_prompt(
            question,
            snapshot,
            tools_enabled=self.tools,
            include_dataset=self.include_dataset,
            include_last_error=self.include_last_error,
            include_script=self.include_script,
        )
        job = Job(
            question=question,
            prompt=prompt,
            provider=self.provider,
            tools_enabled=self.tools,
            snapshot=snapshot,
            settings=self._invoker_settings(),
            verbose=self.verbose,
            report=ReportCollector() if self.report else None,
        )
        self.scheduler.submit(self, job, on_complete)
        return job

    def run(self, question: str) -> Result:
        """Ask and block until the answer has been delivered."""
        job = self.ask(question)
        self.scheduler.wait_for(job)
        return job.result()

    def text_to_insert(self) -> str:
        """The proposed insertion if the last reply had one, else the reply."""
        return self.last_insert or self.last_reply or ""

    def close(self) -> None:
        """Invalidate the session; results still in flight are discarded."""
        self.closed = True
        if self._owns_scheduler and self._scheduler is not None:
            self._scheduler.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
