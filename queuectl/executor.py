"""Runs one attempt of one job as a child process."""
import logging
import os
import signal
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .models import Job, JobState, utc_now
from .storage import JobStorage

logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT = 10.0
KILL_GRACE_SECONDS = 2.0


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


def log_path_for(log_dir: Union[str, Path], job_id: str) -> Path:
    return Path(log_dir) / f"{job_id}.log"


def tail_log(log_dir: Union[str, Path], job_id: str, lines: Optional[int] = None) -> Optional[List[str]]:
    """Return the last ``lines`` lines of a job log, or None if there is no log.

    Trailing blank lines are dropped so the tail ends at the last attempt's final state.
    """
    path = log_path_for(log_dir, job_id)
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        content = f.read().rstrip().splitlines()
    if lines is None:
        return content
    return content[-lines:]


class JobExecutor:
    """Executes single attempts and records them in the store and the job log."""

    def __init__(
        self,
        storage: JobStorage,
        log_dir: Union[str, Path],
        default_timeout: float = DEFAULT_JOB_TIMEOUT,
        poll_interval: float = 0.1,
        stop_event: Optional[threading.Event] = None,
    ):
        self.storage = storage
        self.log_dir = Path(log_dir)
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def log_path(self, job_id: str) -> Path:
        return log_path_for(self.log_dir, job_id)

    def append_note(self, job_id: str, text: str) -> None:
        with open(self.log_path(job_id), "a", encoding="utf-8") as log:
            log.write(text.rstrip("\n") + "\n")

    def run_attempt(self, job: Job, timeout: Optional[float] = None) -> Job:
        """Run one attempt of ``job`` and return its updated copy."""
        claimed = self.storage.claim(job.id)
        if claimed is None:
            logger.warning("Job %s could not be claimed, skipping attempt", job.id)
            return self.storage.get_job(job.id) or job
        job = claimed
        timeout = timeout or job.timeout or self.default_timeout

        log_path = self.log_path(job.id)
        if job.attempts == 0:
            with open(log_path, "w", encoding="utf-8") as log:
                log.write(f"--- Log for Job {job.id} ---\nCommand: {job.command}\n\n")

        logger.info("Starting job %s (attempt %d, timeout: %gs)", job.id, job.attempts + 1, timeout)
        with open(log_path, "a", encoding="utf-8") as log:
            log.write(f"--- Attempt {job.attempts + 1} started {utc_now()} ---\n")
            log.flush()
            outcome, message = self._execute(job.command, timeout, log)

            if outcome == Outcome.SUCCESS:
                job.record_success()
                log.write("Exit code: 0\n")
                logger.info("Job %s completed successfully", job.id)
            else:
                job.record_failure(message)
                log.write(self._failure_note(outcome, message, timeout))
                logger.info("Job %s %s: %s", job.id, outcome.value, message)
                if job.state == JobState.DEAD:
                    logger.warning("Job %s moved to Dead Letter Queue", job.id)
            log.write(f"Final state: {job.state.value}\n\n")

        self.storage.upsert(job)
        return job

    @staticmethod
    def _failure_note(outcome: Outcome, message: str, timeout: float) -> str:
        if outcome == Outcome.TIMEOUT:
            return f"\nJob timed out after {timeout:g}s\n"
        if outcome == Outcome.INTERRUPTED:
            return "\nJob interrupted by worker shutdown\n"
        return f"ERROR: {message}\n"

    def _execute(self, command: str, timeout: float, log) -> Tuple[Outcome, str]:
        popen_kwargs = {}
        if os.name == "posix":
            # own process group so the shell and its children die together
            popen_kwargs["start_new_session"] = True
        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                **popen_kwargs,
            )
        except OSError as e:
            return Outcome.FAILURE, f"failed to launch: {e}"

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Job command exceeded timeout (%gs), terminating", timeout)
                self._terminate(process)
                return Outcome.TIMEOUT, f"timed out after {timeout:g}s"
            if self.stop_event.is_set():
                self._terminate(process)
                return Outcome.INTERRUPTED, "interrupted by worker shutdown"
            try:
                returncode = process.wait(timeout=min(self.poll_interval, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        if returncode == 0:
            return Outcome.SUCCESS, ""
        return Outcome.FAILURE, f"exited with code {returncode}"

    def _terminate(self, process: subprocess.Popen) -> None:
        """SIGTERM the process group, then SIGKILL it if it does not go away."""
        self._signal(process, signal.SIGTERM)
        try:
            process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            process.wait()

    @staticmethod
    def _signal(process: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            pass
