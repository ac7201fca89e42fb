from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobType(str, Enum):
    TASK_STATUS_UPDATE = "task-status-update"
    OVERDUE_TASKS_NOTIFICATION = "overdue-tasks-notification"


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1)
    backoff_delay_ms: int = Field(default=0, ge=0)
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    retain_completed_for: int = 3600  # seconds
    retain_failed_for: int = 86400  # seconds

    def backoff(self, attempt: int) -> int:
        """Delay in milliseconds before retrying after the given failed attempt (1-based)."""
        if self.backoff_type is BackoffType.FIXED:
            return self.backoff_delay_ms
        return self.backoff_delay_ms * 2 ** (attempt - 1)


class Job(BaseModel):
    id: str
    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)
    attempts_made: int = 0  # runs that already failed

    @property
    def attempt(self) -> int:
        """1-based number of the run currently in progress."""
        return self.attempts_made + 1

    @property
    def attempt_info(self) -> str:
        return f"(attempt {self.attempt}/{self.options.max_attempts})"

    def attempts_left(self) -> int:
        return max(self.options.max_attempts - self.attempt, 0)


class JobRecord(BaseModel):
    """Terminal state of a job, kept for the retention period of that state."""

    id: str
    name: str
    state: JobState
    attempts: int
    result: Any = None
    error: str | None = None


def next_retry_delay(job: Job) -> int | None:
    """
    Decide what happens after the current attempt failed.

    Returns the delay in milliseconds before the job runs again, or None
    once max_attempts is reached and the job is terminally failed.
    """
    if job.attempts_left() <= 0:
        return None
    return job.options.backoff(job.attempt)
