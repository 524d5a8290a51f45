"""Persistent job storage in a single JSON document."""
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from .file_lock import FileLock
from .models import Job, JobState

logger = logging.getLogger(__name__)


class QueueError(Exception):
    """Base class for queue errors."""


class StorageError(QueueError):
    """The job document could not be written."""


class DuplicateJobError(QueueError):
    """A job with the same id already exists."""


class InvalidTransitionError(QueueError):
    """The requested state change is not allowed from the job's current state."""


class _PathLock:
    """In-process RLock plus a cross-process FileLock for one store path.

    The file lock is only taken by the outermost holder; flock is not
    re-entrant across file descriptors of the same process.
    """

    def __init__(self, lock_path: str):
        self.rlock = threading.RLock()
        self.file_lock = FileLock(lock_path)
        self.depth = 0

    @contextmanager
    def hold(self) -> Iterator[None]:
        with self.rlock:
            if self.depth == 0:
                try:
                    self.file_lock.acquire()
                except OSError as e:
                    raise StorageError(f"Cannot lock {self.file_lock.lock_path}: {e}") from e
            self.depth += 1
            try:
                yield
            finally:
                self.depth -= 1
                if self.depth == 0:
                    self.file_lock.release()


_path_locks: Dict[str, _PathLock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(store_path: Path) -> _PathLock:
    key = str(store_path.resolve())
    with _path_locks_guard:
        if key not in _path_locks:
            _path_locks[key] = _PathLock(key + ".lock")
        return _path_locks[key]


class JobStorage:
    """JSON-file job collection with serialized read-modify-write."""

    def __init__(self, store_path: Union[str, Path], default_max_retries: int = 3):
        self.store_path = Path(store_path)
        self.default_max_retries = default_max_retries
        self._ensure_dir()
        self._lock = _lock_for(self.store_path)

    @classmethod
    def from_config(cls, config) -> "JobStorage":
        return cls(config.store_path, default_max_retries=config.max_retries)

    def _ensure_dir(self) -> None:
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create store directory {self.store_path.parent}: {e}") from e

    # ---------------- Document ----------------

    def load_all(self) -> List[Job]:
        """Read the whole collection. Missing or corrupt documents read as empty."""
        if not self.store_path.exists():
            return []
        try:
            with open(self.store_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("top-level value is not a list")
            return [Job.from_dict(item, self.default_max_retries) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Job store %s is unreadable, treating it as empty: %s", self.store_path, e)
            return []

    def save_all(self, jobs: List[Job]) -> None:
        """Replace the whole collection atomically."""
        tmp = self.store_path.with_name(self.store_path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump([job.to_dict() for job in jobs], f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.store_path)
        except OSError as e:
            raise StorageError(f"Cannot write job store {self.store_path}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[List[Job]]:
        """Yield a freshly loaded collection and save it when the block exits cleanly."""
        with self._lock.hold():
            jobs = self.load_all()
            yield jobs
            self.save_all(jobs)

    def upsert(self, job: Job) -> bool:
        """Replace the stored record with the same id. Returns False if there is none."""
        with self.transaction() as jobs:
            for index, existing in enumerate(jobs):
                if existing.id == job.id:
                    jobs[index] = job.copy()
                    return True
        logger.warning("Job %s is no longer in the store, update dropped", job.id)
        return False

    # ---------------- Queries ----------------

    def add_job(self, job: Job) -> None:
        """Add a new job to the queue."""
        with self.transaction() as jobs:
            if any(existing.id == job.id for existing in jobs):
                raise DuplicateJobError(f"Job {job.id} already exists")
            jobs.append(job.copy())
        logger.debug("Enqueued job %s: %s", job.id, job.command)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Retrieve a job by ID."""
        for job in self.load_all():
            if job.id == job_id:
                return job
        return None

    def get_all_jobs(self) -> List[Job]:
        return self.load_all()

    def get_jobs_by_state(self, state: Union[str, JobState]) -> List[Job]:
        """Get all jobs with a specific state."""
        state = JobState(state)
        return [job for job in self.load_all() if job.state == state]

    def get_eligible_jobs(self) -> List[Job]:
        """Pending and retryable jobs in creation order."""
        return [job for job in self.load_all() if job.is_eligible]

    def get_dlq_jobs(self) -> List[Job]:
        return self.get_jobs_by_state(JobState.DEAD)

    def count_jobs_by_state(self) -> dict:
        """Count jobs in each state."""
        counts = {state.value: 0 for state in JobState}
        for job in self.load_all():
            counts[job.state.value] += 1
        return counts

    # ---------------- Transitions ----------------

    def claim(self, job_id: str) -> Optional[Job]:
        """Move an eligible job to `processing`. Returns None if it cannot be claimed."""
        with self.transaction() as jobs:
            for job in jobs:
                if job.id != job_id:
                    continue
                if not job.is_eligible:
                    logger.debug("Job %s is %s, not claimable", job_id, job.state.value)
                    return None
                job.state = JobState.PROCESSING
                job.next_retry_at = None
                job.touch()
                return job.copy()
        return None

    def resurrect(self, job_id: str) -> Optional[Job]:
        """Send a dead job back to `pending` with a fresh retry budget.

        Returns None for an unknown id.
        """
        with self.transaction() as jobs:
            for job in jobs:
                if job.id != job_id:
                    continue
                if job.state != JobState.DEAD:
                    raise InvalidTransitionError(
                        f"Job {job_id} is {job.state.value}, only dead jobs can be retried"
                    )
                job.state = JobState.PENDING
                job.attempts = 0
                job.error_message = None
                job.next_retry_at = None
                job.touch()
                return job.copy()
        return None

    def recover_interrupted(self) -> List[Job]:
        """Settle jobs left in `processing` by a run that died mid-attempt.

        Each one is counted as a failed attempt and ends up `failed` or `dead`.
        """
        recovered = []
        with self.transaction() as jobs:
            for job in jobs:
                if job.state == JobState.PROCESSING:
                    job.record_failure("Interrupted while processing")
                    recovered.append(job.copy())
        for job in recovered:
            logger.warning("Recovered interrupted job %s -> %s", job.id, job.state.value)
        return recovered

    def set_next_retry(self, job_id: str, next_retry_at: Optional[str]) -> None:
        with self.transaction() as jobs:
            for job in jobs:
                if job.id == job_id:
                    job.next_retry_at = next_retry_at

    def delete_job(self, job_id: str) -> bool:
        """Delete a job from the queue."""
        with self.transaction() as jobs:
            for index, job in enumerate(jobs):
                if job.id == job_id:
                    del jobs[index]
                    return True
        return False
