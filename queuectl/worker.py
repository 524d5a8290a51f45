"""Worker pool that drives eligible jobs to a terminal state."""
import logging
import os
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .backoff import backoff_delay_ms
from .config import QueueConfig
from .executor import JobExecutor
from .file_lock import FileLock
from .models import Job, JobState
from .storage import JobStorage, QueueError, StorageError

logger = logging.getLogger(__name__)


class WorkerAlreadyRunningError(QueueError):
    """Another worker pool owns this data directory."""


class WorkerPool:
    """Runs the retry loops of a batch of jobs with bounded concurrency."""

    def __init__(self, config: QueueConfig, storage: Optional[JobStorage] = None):
        self.config = config
        self.storage = storage or JobStorage.from_config(config)
        self.stop_event = threading.Event()
        self.executor = JobExecutor(
            self.storage,
            config.log_dir,
            default_timeout=config.job_timeout,
            poll_interval=config.poll_interval,
            stop_event=self.stop_event,
        )

    def stop(self) -> None:
        """Terminate in-flight commands and end backoff waits."""
        if not self.stop_event.is_set():
            logger.info("Stop requested, terminating running jobs...")
        self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def run(
        self,
        base_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        worker_count: Optional[int] = None,
    ) -> List[Job]:
        """Run the eligible jobs until each one is completed or dead.

        `max_retries` only applies, for this run, to records stored without
        their own budget. Returns the final copy of every job that was dispatched.
        """
        base_delay = self.config.base_delay if base_delay is None else base_delay
        worker_count = worker_count or self.config.worker_count
        saved_default = self.storage.default_max_retries
        if max_retries is not None:
            self.storage.default_max_retries = max_retries
        try:
            return self._dispatch(base_delay, worker_count)
        finally:
            self.storage.default_max_retries = saved_default

    def _dispatch(self, base_delay: float, worker_count: int) -> List[Job]:
        self.recover_interrupted()

        eligible = self.storage.get_eligible_jobs()
        batch = eligible if self.config.refill else eligible[:worker_count]
        logger.info(
            "Found %d eligible job(s), dispatching %d with %d worker(s)",
            len(eligible), len(batch), worker_count,
        )
        if not batch:
            return []

        results: Dict[str, Job] = {}
        # Per-job errors are recorded on the job; anything escaping a job loop
        # is an environment failure and ends the whole run.
        fatal: Optional[Exception] = None
        with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="Worker") as pool:
            futures = {pool.submit(self._run_job, job, base_delay): job for job in batch}
            for future in as_completed(futures):
                job = futures[future]
                try:
                    results[job.id] = future.result()
                except StorageError as e:
                    logger.error("Job store failure while running job %s: %s", job.id, e)
                    self.stop()
                    fatal = fatal or e
                except Exception as e:
                    logger.exception("Worker for job %s crashed", job.id)
                    self.stop()
                    fatal = fatal or e
        if fatal is not None:
            raise fatal
        return [results[job.id] for job in batch if job.id in results]

    def _run_job(self, job: Job, base_delay: float) -> Job:
        # Jobs a stop reaches before their first attempt stay eligible for the next run.
        while not self.stopped:
            attempts_before = job.attempts
            try:
                job = self.executor.run_attempt(job)
            except StorageError:
                raise
            except Exception as e:
                logger.exception("Attempt of job %s crashed", job.id)
                job = self._record_crash(job, e)
            if job.state != JobState.FAILED or job.attempts == attempts_before:
                return job
            if self.stopped:
                break

            delay_ms = backoff_delay_ms(base_delay, job.attempts)
            next_retry = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
            self.storage.set_next_retry(job.id, next_retry.isoformat().replace("+00:00", "Z"))
            logger.info("Retrying job %s after %gs", job.id, delay_ms / 1000)
            if self.stop_event.wait(delay_ms / 1000):
                break
        return self.storage.get_job(job.id) or job

    def _record_crash(self, job: Job, error: Exception) -> Job:
        """Count an attempt that raised as a failed one so it cannot stay `processing`."""
        current = self.storage.get_job(job.id) or job
        if current.state != JobState.PROCESSING:
            return current
        current.record_failure(f"Worker error: {error}")
        self.storage.upsert(current)
        return current

    def recover_interrupted(self) -> List[Job]:
        """Settle jobs a crashed run left in `processing`."""
        recovered = self.storage.recover_interrupted()
        for job in recovered:
            if self.executor.log_path(job.id).exists():
                self.executor.append_note(
                    job.id,
                    "Attempt interrupted (worker stopped unexpectedly)\n"
                    f"Final state: {job.state.value}\n",
                )
        return recovered

    def _setup_signal_handlers(self) -> dict:
        """Setup graceful shutdown handlers. Returns the handlers they replace."""
        previous = {}
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, self._handle_shutdown)
        return previous

    def _handle_shutdown(self, signum, frame) -> None:
        logger.info("Received signal %s, shutting down workers...", signum)
        self.stop()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_worker_pid(config: QueueConfig) -> Optional[int]:
    """Pid of the running worker pool, or None (stale pid files are ignored)."""
    try:
        pid = int(config.pid_path.read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if _pid_alive(pid) else None


def start_workers(config: QueueConfig, storage: Optional[JobStorage] = None) -> List[Job]:
    """Run one worker pool in the foreground until its batch is terminal or it is stopped.

    The worker lock is held for the pool's whole lifetime; the pid file only
    tells `worker stop` whom to signal.
    """
    pool = WorkerPool(config, storage)
    worker_lock = FileLock(str(config.worker_lock_path))
    try:
        config.data_dir.mkdir(parents=True, exist_ok=True)
        locked = worker_lock.acquire(blocking=False)
    except OSError as e:
        raise StorageError(f"Cannot lock {config.worker_lock_path}: {e}") from e
    if not locked:
        running = read_worker_pid(config)
        owner = f"pid {running}" if running is not None else "another process"
        raise WorkerAlreadyRunningError(f"A worker pool is already running ({owner})")

    previous_handlers = {}
    try:
        config.pid_path.write_text(str(os.getpid()))
        if threading.current_thread() is threading.main_thread():
            previous_handlers = pool._setup_signal_handlers()
        return pool.run()
    finally:
        for signum, handler in previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        config.pid_path.unlink(missing_ok=True)
        worker_lock.release()


def stop_workers(config: QueueConfig) -> Optional[int]:
    """Ask the running worker pool to stop. Returns its pid, or None if none is running."""
    pid = read_worker_pid(config)
    if pid is None:
        return None
    os.kill(pid, signal.SIGTERM)
    return pid
