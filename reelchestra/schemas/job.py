"""
Job schema - the unit of work, its state machine and reported outcomes.

Lifecycle:

    pending --(all deps completed)--> eligible --(claim)--> in_progress
    pending --(any dep failed/blocked)--> blocked
    in_progress --> completed | retrying | failed
    retrying --(backoff elapsed, claim)--> in_progress

completed, failed and blocked are terminal. Blocked jobs are retained for
audit, never deleted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from reelchestra.errors import InvalidTransitionError

from .job_types import JobType
from .payloads import JobPayload, parse_payload, payload_to_dict
from .retry import RetryPolicy


class JobStatus(str, Enum):
    """Status of a job."""
    PENDING = "pending"
    ELIGIBLE = "eligible"
    IN_PROGRESS = "in_progress"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.BLOCKED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.ELIGIBLE, JobStatus.BLOCKED}),
    JobStatus.ELIGIBLE: frozenset({JobStatus.IN_PROGRESS}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.RETRYING, JobStatus.FAILED}),
    JobStatus.RETRYING: frozenset({JobStatus.IN_PROGRESS}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.BLOCKED: frozenset(),
}


def check_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
    """
    Validate a status change against the state machine.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(job_id, current.value, target.value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Job:
    """
    A single unit of work within a manifest.

    Attributes:
        job_id: Deterministic id, unique within the manifest
        job_type: Kind of work; selects the worker runtime
        payload: Typed payload variant for job_type
        manifest_id: Owning manifest (None only before insert)
        priority: Higher is dispatched first
        depends_on: Job ids within the same manifest that must complete first
        retry_policy: Bounded attempts and backoff
        attempts: Number of times the job has been claimed
        status: Current state machine status
        worker_id: Worker holding the current claim
        claimed_at: When the current claim was taken
        heartbeat_at: Last liveness signal for the current claim
        next_attempt_at: When a retrying job becomes claimable again
        completed_at: When the job reached a terminal status
        result: Processor output for completed jobs
        error: Error details for failed/retrying jobs
        warnings: Non-fatal problems recorded against the job
        blocked_by: Failed ancestor that blocked this job
        seq: Creation order within the manifest
    """
    job_id: str
    job_type: JobType
    payload: JobPayload
    manifest_id: Optional[str] = None
    priority: int = 0
    depends_on: tuple[str, ...] = ()
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    attempts: int = 0
    status: JobStatus = JobStatus.PENDING
    worker_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None
    warnings: tuple[str, ...] = ()
    blocked_by: Optional[str] = None
    seq: int = 0

    def __post_init__(self):
        if self.job_id in self.depends_on:
            raise ValueError(f"Job '{self.job_id}' cannot depend on itself")
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")

    @property
    def key(self) -> str:
        """Globally unique key: manifest id plus job id."""
        return f"{self.manifest_id}/{self.job_id}"

    @property
    def scene_id(self) -> Optional[str]:
        return getattr(self.payload, "scene_id", None)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "manifest_id": self.manifest_id,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "priority": self.priority,
            "depends_on": list(self.depends_on),
            "payload": payload_to_dict(self.payload),
            "retry_policy": self.retry_policy.to_dict(),
            "attempts": self.attempts,
            "seq": self.seq,
        }
        optional = {
            "worker_id": self.worker_id,
            "claimed_at": _iso(self.claimed_at),
            "heartbeat_at": _iso(self.heartbeat_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "completed_at": _iso(self.completed_at),
            "result": self.result,
            "error": self.error,
            "blocked_by": self.blocked_by,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Deserialize from dictionary."""
        job_type = JobType.from_string(data["job_type"])
        return cls(
            job_id=data["job_id"],
            job_type=job_type,
            payload=parse_payload(job_type, data["payload"]),
            manifest_id=data.get("manifest_id"),
            priority=data.get("priority", 0),
            depends_on=tuple(data.get("depends_on", ())),
            retry_policy=RetryPolicy.from_dict(data.get("retry_policy", {})),
            attempts=data.get("attempts", 0),
            status=JobStatus(data.get("status", "pending")),
            worker_id=data.get("worker_id"),
            claimed_at=_parse_dt(data.get("claimed_at")),
            heartbeat_at=_parse_dt(data.get("heartbeat_at")),
            next_attempt_at=_parse_dt(data.get("next_attempt_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            result=data.get("result"),
            error=data.get("error"),
            warnings=tuple(data.get("warnings", ())),
            blocked_by=data.get("blocked_by"),
            seq=data.get("seq", 0),
        )


class OutcomeKind(str, Enum):
    """What a worker reports back for a claimed job."""
    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True)
class JobOutcome:
    """
    Outcome reported for one claimed attempt.

    Attributes:
        kind: completed, retry (transient failure) or failed (terminal)
        worker_id: Worker that held the claim
        attempt: Attempt number the outcome belongs to (claim fencing token)
        result: Output for completed jobs
        error: Error details for retry/failed outcomes
        retry_delay_s: Backoff before the job becomes claimable again
    """
    kind: OutcomeKind
    worker_id: str
    attempt: int
    result: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None
    retry_delay_s: float = 0.0

    @classmethod
    def completed(cls, worker_id: str, attempt: int, result: dict[str, Any]) -> "JobOutcome":
        return cls(OutcomeKind.COMPLETED, worker_id, attempt, result=result)

    @classmethod
    def retry(
        cls, worker_id: str, attempt: int, error: dict[str, Any], delay_s: float
    ) -> "JobOutcome":
        return cls(OutcomeKind.RETRY, worker_id, attempt, error=error, retry_delay_s=delay_s)

    @classmethod
    def failed(cls, worker_id: str, attempt: int, error: dict[str, Any]) -> "JobOutcome":
        return cls(OutcomeKind.FAILED, worker_id, attempt, error=error)


@dataclass(frozen=True)
class JobStats:
    """Job count for one (job type, status) pair across every manifest."""
    job_type: JobType
    status: JobStatus
    count: int
    max_attempts_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_type": self.job_type.value,
            "status": self.status.value,
            "count": self.count,
            "max_attempts_used": self.max_attempts_used,
        }

    @classmethod
    def from_jobs(cls, jobs: Iterable["Job"]) -> list["JobStats"]:
        """Group jobs by (type, status), ordered by type then status."""
        counts: dict[tuple[JobType, JobStatus], list[int]] = {}
        for job in jobs:
            entry = counts.setdefault((job.job_type, job.status), [0, 0])
            entry[0] += 1
            entry[1] = max(entry[1], job.attempts)
        return [
            cls(job_type, status, count, max_attempts)
            for (job_type, status), (count, max_attempts) in sorted(
                counts.items(), key=lambda item: (item[0][0].value, item[0][1].value)
            )
        ]
