"""Data models for job queue system."""
from enum import Enum
from datetime import datetime, timezone
from typing import Optional
import json
import uuid

from pydantic import BaseModel, ConfigDict, StrictStr, confloat, conint, constr, field_validator


class JobState(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


# A failed job always has retry budget left, so it is picked up like a pending one.
ELIGIBLE_STATES = (JobState.PENDING, JobState.FAILED)
TERMINAL_STATES = (JobState.COMPLETED, JobState.DEAD)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_job_id() -> str:
    return uuid.uuid4().hex[:8]


class Job:
    """Represents a background job."""

    def __init__(
        self,
        id: str,
        command: str,
        state: str = JobState.PENDING,
        attempts: int = 0,
        max_retries: int = 3,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
        timeout: Optional[float] = None,
        next_retry_at: Optional[str] = None,
        error_message: Optional[str] = None,
    ):
        self.id = id
        self.command = command
        self.state = JobState(state)
        self.attempts = attempts
        self.max_retries = max_retries
        self.created_at = created_at or utc_now()
        self.updated_at = updated_at or self.created_at
        self.timeout = timeout
        self.next_retry_at = next_retry_at
        self.error_message = error_message

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_eligible(self) -> bool:
        return self.state in ELIGIBLE_STATES

    def touch(self) -> None:
        self.updated_at = utc_now()

    def record_failure(self, error_message: str) -> None:
        """Count a failed attempt and pick `failed` or `dead`."""
        self.attempts += 1
        self.error_message = error_message
        self.state = JobState.DEAD if self.attempts > self.max_retries else JobState.FAILED
        self.touch()

    def record_success(self) -> None:
        self.attempts += 1
        self.error_message = None
        self.state = JobState.COMPLETED
        self.touch()

    def to_dict(self) -> dict:
        """Convert job to dictionary."""
        return {
            "id": self.id,
            "command": self.command,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "timeout": self.timeout,
            "next_retry_at": self.next_retry_at,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict, default_max_retries: int = 3) -> "Job":
        """Create job from dictionary.

        Unknown keys are ignored so documents written by older versions still load.
        """
        max_retries = data.get("max_retries")
        return cls(
            id=str(data["id"]),
            command=data["command"],
            state=data.get("state") or JobState.PENDING,
            attempts=int(data.get("attempts") or 0),
            max_retries=default_max_retries if max_retries is None else int(max_retries),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            timeout=data.get("timeout"),
            next_retry_at=data.get("next_retry_at"),
            error_message=data.get("error_message"),
        )

    def copy(self) -> "Job":
        return Job.from_dict(self.to_dict())

    def to_json(self) -> str:
        """Convert job to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "Job":
        """Create job from JSON string."""
        return cls.from_dict(json.loads(json_str))

    def __repr__(self) -> str:
        return f"Job(id={self.id}, state={self.state.value}, attempts={self.attempts})"


JOB_ID_PATTERN = r"^[A-Za-z0-9._-]+$"


class JobSubmission(BaseModel):
    """Client input for a new job, checked before it reaches the store."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[constr(strict=True, pattern=JOB_ID_PATTERN, max_length=128)] = None
    command: StrictStr
    max_retries: Optional[conint(strict=True, ge=0)] = None
    timeout: Optional[confloat(gt=0, allow_inf_nan=False)] = None

    @field_validator("command")
    @classmethod
    def command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        return value

    @field_validator("timeout", mode="before")
    @classmethod
    def timeout_is_number(cls, value):
        if isinstance(value, (str, bool)):
            raise ValueError("timeout must be a number of seconds")
        return value

    def to_job(self, default_max_retries: int = 3) -> Job:
        return Job(
            id=self.id or new_job_id(),
            command=self.command,
            max_retries=default_max_retries if self.max_retries is None else self.max_retries,
            timeout=self.timeout,
        )
