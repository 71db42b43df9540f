"""Background execution of assistant jobs.

Jobs run on a worker pool; finished jobs are posted to a queue that only
the asking (interactive) thread drains. That thread checks the session is
still interested before touching it, and always releases the job.
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from .report import AgentError

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class RequestScheduler:
    """Runs jobs off the interactive thread, one in flight per session."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="agentbridge"
        )
        self._completions: queue.SimpleQueue = queue.SimpleQueue()
        # Guards posting against the final drain in shutdown().
        self._lock = threading.Lock()
        self._shut_down = False
        self._drained = False

    def submit(self, session, job, on_complete=None) -> None:
        """Start job for session. Raises SessionBusyError if one is running."""
        if self._shut_down:
            raise AgentError("request scheduler is shut down")
        session._claim(job)
        try:
            self._executor.submit(self._run_job, session, job, on_complete)
        except RuntimeError as e:
            session._unclaim(job)
            raise AgentError(f"cannot start request: {e}") from e

    def _run_job(self, session, job, on_complete) -> None:
        try:
            job.execute()
        except Exception as e:
            logger.exception("assistant job %d failed", job.id)
            job.fail(f"LLM call failed: {e}")
        with self._lock:
            if self._drained or (self._shut_down and session.closed):
                # Nobody will drain the queue for this job any more.
                logger.debug("dropping result of job %d: scheduler shut down", job.id)
                job.release()
                job.delivered = True
                return
            self._completions.put((session, job, on_complete))

    def _deliver(self, session, job, on_complete) -> None:
        try:
            if session.accepts(job):
                session._finish(job)
                if on_complete is not None:
                    on_complete(job.result())
            else:
                logger.debug("discarding result of job %d: session gone", job.id)
        finally:
            job.release()
            job.delivered = True

    def process_completions(self, timeout: float | None = 0) -> int:
        """Deliver finished jobs. Call from the interactive thread only.

        Waits up to timeout seconds for the first completion (forever when
        None, not at all when 0), then drains whatever else is ready.
        Returns the number of jobs delivered.
        """
        delivered = 0
        while True:
            try:
                if delivered == 0 and timeout != 0:
                    item = self._completions.get(timeout=timeout)
                else:
                    item = self._completions.get_nowait()
            except queue.Empty:
                return delivered
            self._deliver(*item)
            delivered += 1

    def wait_for(self, job, timeout: float | None = None) -> bool:
        """Pump completions until job has been delivered.

        Returns False if timeout expires first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not job.delivered:
            wait = _POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self.process_completions(timeout=wait)
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._shut_down = True
        self._executor.shutdown(wait=wait)
        with self._lock:
            self.process_completions()
            self._drained = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
