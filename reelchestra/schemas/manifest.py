"""
Manifest schema - one compiled production plan and its derived status.

A Manifest is written exactly once, together with its jobs. Afterwards only
its status changes, and that status is always recomputed from job states.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from .constraints import CreativeProfile
from .job import Job, JobStatus


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ManifestStatus(str, Enum):
    """Status of a manifest, derived from its jobs."""
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Manifest:
    """
    A compiled production plan.

    Attributes:
        manifest_id: ULID assigned by the ledger (None before insert)
        user_id: Owning user
        payload: Title, scene summaries, output constraints, audio arc
        profile: Creative guardrails, immutable once created
        status: Derived from job states
        warnings: Soft validation warnings from compilation
        created_at: When the manifest was created
        updated_at: When the derived status last changed
    """
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    manifest_id: Optional[str] = None
    profile: Optional[CreativeProfile] = None
    status: ManifestStatus = ManifestStatus.PLANNING
    warnings: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "manifest_id": self.manifest_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }
        if self.profile is not None:
            result["profile"] = self.profile.to_dict()
        if self.warnings:
            result["warnings"] = list(self.warnings)
        if self.updated_at is not None:
            result["updated_at"] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        """Deserialize from dictionary."""
        return cls(
            manifest_id=data.get("manifest_id"),
            user_id=data["user_id"],
            payload=data.get("payload", {}),
            profile=CreativeProfile.from_dict(data["profile"]) if data.get("profile") else None,
            status=ManifestStatus(data.get("status", "planning")),
            warnings=list(data.get("warnings", [])),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
        )


def derive_manifest_status(jobs: Iterable[Job]) -> ManifestStatus:
    """
    Derive a manifest's status from its jobs.

    - completed: every job completed
    - failed: some job failed or blocked; the final render can no longer
      complete, though sibling branches may still run to completion
    - planning: no job has been claimed and none is terminal
    - in_progress: anything else
    """
    jobs = list(jobs)
    if not jobs:
        return ManifestStatus.PLANNING

    statuses = [j.status for j in jobs]
    if all(s == JobStatus.COMPLETED for s in statuses):
        return ManifestStatus.COMPLETED

    if any(s in (JobStatus.FAILED, JobStatus.BLOCKED) for s in statuses):
        return ManifestStatus.FAILED

    untouched = all(
        j.attempts == 0 and j.status in (JobStatus.PENDING, JobStatus.ELIGIBLE)
        for j in jobs
    )
    if untouched:
        return ManifestStatus.PLANNING

    return ManifestStatus.IN_PROGRESS


@dataclass(frozen=True)
class ManifestSummary:
    """
    Per-job view of a manifest's progress.

    Keeps a partially complete manifest representable: completed branches and
    failed/blocked branches are listed side by side.
    """
    manifest_id: str
    status: ManifestStatus
    counts: dict[str, int]
    completed_jobs: tuple[str, ...] = ()
    failed_jobs: tuple[str, ...] = ()
    blocked_jobs: tuple[str, ...] = ()

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def is_partial(self) -> bool:
        """Some jobs completed while others failed or were blocked."""
        return bool(self.completed_jobs) and bool(self.failed_jobs or self.blocked_jobs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest_id": self.manifest_id,
            "status": self.status.value,
            "counts": dict(self.counts),
            "total": self.total,
            "is_partial": self.is_partial,
            "failed_jobs": list(self.failed_jobs),
            "blocked_jobs": list(self.blocked_jobs),
        }

    @classmethod
    def from_jobs(cls, manifest_id: str, jobs: Iterable[Job]) -> "ManifestSummary":
        jobs = list(jobs)
        counts = Counter(j.status.value for j in jobs)
        return cls(
            manifest_id=manifest_id,
            status=derive_manifest_status(jobs),
            counts={s.value: counts.get(s.value, 0) for s in JobStatus},
            completed_jobs=tuple(j.job_id for j in jobs if j.status == JobStatus.COMPLETED),
            failed_jobs=tuple(j.job_id for j in jobs if j.status == JobStatus.FAILED),
            blocked_jobs=tuple(j.job_id for j in jobs if j.status == JobStatus.BLOCKED),
        )
