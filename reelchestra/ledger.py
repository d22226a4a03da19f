"""
JobLedger - durable store of manifests and jobs.

The ledger owns the job state machine. Everything that changes a job's
status goes through it:

- create_manifest_with_jobs: atomic insert of one manifest and its DAG
- claim_next_job: exclusive claim of the best eligible job of a type
- report_job_outcome: completed / retry / failed, fenced by the claim
- reclaim_stale_jobs: liveness sweep for claims whose heartbeat went quiet

After every transition the ledger promotes dependents whose dependencies
all completed, blocks the transitive dependents of a failed job and
recomputes the manifest's derived status.

Storage backends:
- In-memory (for testing)
- SQLite (durable, safe across threads and processes)
"""

import json
import logging
import random
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from reelchestra.errors import (
    ClaimLostError,
    PersistenceError,
    ValidationError,
)
from reelchestra.schemas import (
    CreativeProfile,
    Job,
    JobOutcome,
    JobStats,
    JobStatus,
    JobType,
    Manifest,
    ManifestStatus,
    ManifestSummary,
    OutcomeKind,
    RetryPolicy,
    check_transition,
    derive_manifest_status,
    parse_payload,
    payload_to_dict,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    alphabet = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(alphabet[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(alphabet) for _ in range(16))

    return timestamp_part + random_part


# =============================================================================
# State machine helpers shared by every backend
# =============================================================================


def _prepare_jobs(manifest_id: str, jobs: Iterable[Job]) -> list[Job]:
    """
    Validate a job DAG and stamp it for insert.

    Raises:
        ValidationError: Duplicate job ids or dangling dependencies
        PayloadValidationError: A payload does not match its job type
    """
    jobs = list(jobs)
    ids = [j.job_id for j in jobs]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate job ids: {', '.join(duplicates)}")

    known = set(ids)
    errors = [
        f"Job '{j.job_id}' depends on unknown job '{dep}'"
        for j in jobs
        for dep in j.depends_on
        if dep not in known
    ]
    if errors:
        raise ValidationError("Dangling job dependencies", errors)

    prepared = []
    for seq, job in enumerate(jobs):
        prepared.append(replace(
            job,
            manifest_id=manifest_id,
            payload=parse_payload(job.job_type, job.payload),
            status=JobStatus.PENDING if job.depends_on else JobStatus.ELIGIBLE,
            attempts=0,
            worker_id=None,
            claimed_at=None,
            heartbeat_at=None,
            next_attempt_at=None,
            completed_at=None,
            result=None,
            error=None,
            blocked_by=None,
            seq=seq,
        ))
    return prepared


def _is_claimable(job: Job, now: datetime) -> bool:
    if not job.retry_policy.has_attempts_left(job.attempts):
        return False
    if job.status == JobStatus.ELIGIBLE:
        return True
    if job.status == JobStatus.RETRYING:
        return job.next_attempt_at is None or job.next_attempt_at <= now
    return False


def _claimed(job: Job, worker_id: str, now: datetime) -> Job:
    check_transition(job.job_id, job.status, JobStatus.IN_PROGRESS)
    return replace(
        job,
        status=JobStatus.IN_PROGRESS,
        attempts=job.attempts + 1,
        worker_id=worker_id,
        claimed_at=now,
        heartbeat_at=now,
        next_attempt_at=None,
    )


def _check_claim(job: Job, worker_id: str, attempt: int) -> None:
    if job.status != JobStatus.IN_PROGRESS or job.worker_id != worker_id or job.attempts != attempt:
        raise ClaimLostError(
            f"Job '{job.job_id}' attempt {attempt} is no longer held by {worker_id} "
            f"(status={job.status.value}, worker={job.worker_id}, attempts={job.attempts})"
        )


def _apply_outcome(job: Job, outcome: JobOutcome, now: datetime) -> Job:
    """
    Return the job after applying a worker's outcome.

    A retry request for a job that has used its whole budget becomes a
    terminal failure.

    Raises:
        ClaimLostError: The reporting worker no longer holds the claim
    """
    _check_claim(job, outcome.worker_id, outcome.attempt)

    if outcome.kind == OutcomeKind.COMPLETED:
        check_transition(job.job_id, job.status, JobStatus.COMPLETED)
        return replace(
            job,
            status=JobStatus.COMPLETED,
            result=outcome.result or {},
            error=None,
            completed_at=now,
        )

    if outcome.kind == OutcomeKind.RETRY and job.retry_policy.has_attempts_left(job.attempts):
        check_transition(job.job_id, job.status, JobStatus.RETRYING)
        return replace(
            job,
            status=JobStatus.RETRYING,
            error=outcome.error,
            next_attempt_at=now + timedelta(seconds=max(outcome.retry_delay_s, 0.0)),
        )

    check_transition(job.job_id, job.status, JobStatus.FAILED)
    error = dict(outcome.error or {})
    if outcome.kind == OutcomeKind.RETRY:
        error.setdefault("retries_exhausted", True)
    return replace(job, status=JobStatus.FAILED, error=error, completed_at=now)


def _cascade(jobs: dict[str, Job], changed: Job, now: datetime) -> list[Job]:
    """
    Propagate a job's terminal status to its dependents.

    Completion promotes pending dependents whose dependencies all completed.
    Failure blocks every transitive dependent that has not started.

    Returns:
        Dependents whose status changed
    """
    updated: list[Job] = []

    if changed.status == JobStatus.COMPLETED:
        for job in jobs.values():
            if job.status != JobStatus.PENDING or changed.job_id not in job.depends_on:
                continue
            if all(jobs[dep].status == JobStatus.COMPLETED for dep in job.depends_on):
                check_transition(job.job_id, job.status, JobStatus.ELIGIBLE)
                promoted = replace(job, status=JobStatus.ELIGIBLE)
                jobs[job.job_id] = promoted
                updated.append(promoted)

    elif changed.status == JobStatus.FAILED:
        dependents: dict[str, list[str]] = {}
        for job in jobs.values():
            for dep in job.depends_on:
                dependents.setdefault(dep, []).append(job.job_id)

        queue = deque([changed.job_id])
        seen = {changed.job_id}
        while queue:
            for child_id in dependents.get(queue.popleft(), []):
                if child_id in seen:
                    continue
                seen.add(child_id)
                queue.append(child_id)
                child = jobs[child_id]
                if child.status != JobStatus.PENDING:
                    continue
                check_transition(child.job_id, child.status, JobStatus.BLOCKED)
                blocked = replace(
                    child,
                    status=JobStatus.BLOCKED,
                    blocked_by=changed.job_id,
                    completed_at=now,
                )
                jobs[child_id] = blocked
                updated.append(blocked)

    return updated


def _liveness_outcome(job: Job, timeout_s: float) -> JobOutcome:
    return JobOutcome.retry(
        worker_id=job.worker_id or "",
        attempt=job.attempts,
        error={
            "type": "LivenessTimeout",
            "message": f"No heartbeat from {job.worker_id} for more than {timeout_s:g}s",
            "retryable": True,
        },
        delay_s=job.retry_policy.delay_for(job.attempts),
    )


def _job_order(job: Job) -> tuple[int, int]:
    return (-job.priority, job.seq)


def _claim_order(job: Job) -> tuple:
    return (job.claimed_at, job.manifest_id or "", job.seq)


# =============================================================================
# Interface
# =============================================================================


class JobLedger(ABC):
    """
    Abstract base class for manifest and job storage.

    Implementations must provide:
    - An all-or-nothing insert of a manifest with its jobs
    - An exclusive claim: two concurrent claimers never receive the same job
    - Outcome reporting fenced by (worker_id, attempt)
    """

    @abstractmethod
    def create_manifest_with_jobs(self, manifest: Manifest, jobs: list[Job]) -> str:
        """
        Insert a manifest and its job DAG atomically.

        Args:
            manifest: The manifest; a ULID is assigned when manifest_id is None
            jobs: Jobs with deterministic ids, unique within the manifest

        Returns:
            The manifest id

        Raises:
            ValidationError: Duplicate ids, dangling deps or bad payloads
            PersistenceError: Storage failure or duplicate manifest id
        """
        pass

    @abstractmethod
    def claim_next_job(self, job_type: JobType, worker_id: str) -> Optional[Job]:
        """
        Claim the highest-priority claimable job of a type.

        Claimable means eligible, or retrying with its backoff elapsed, and
        with attempts left. The claim increments attempts.

        Returns:
            The claimed job (status in_progress), or None if nothing is claimable
        """
        pass

    @abstractmethod
    def report_job_outcome(self, manifest_id: str, job_id: str, outcome: JobOutcome) -> Job:
        """
        Record the outcome of a claimed attempt.

        Returns:
            The job after the transition

        Raises:
            ClaimLostError: The worker no longer holds the claim
            KeyError: Unknown job
        """
        pass

    @abstractmethod
    def heartbeat(self, manifest_id: str, job_id: str, worker_id: str, attempt: int) -> None:
        """
        Refresh the liveness timestamp of a held claim.

        Raises:
            ClaimLostError: The worker no longer holds the claim
        """
        pass

    @abstractmethod
    def reclaim_stale_jobs(self, timeout_s: float, job_type: Optional[JobType] = None) -> list[Job]:
        """
        Treat in-progress jobs without a recent heartbeat as transient failures.

        Returns:
            The reclaimed jobs after the transition (retrying or failed)
        """
        pass

    @abstractmethod
    def get_manifest(self, manifest_id: str) -> Optional[Manifest]:
        pass

    @abstractmethod
    def list_manifests(self, user_id: Optional[str] = None) -> list[Manifest]:
        """Manifests, newest first, optionally for one user."""
        pass

    @abstractmethod
    def get_job(self, manifest_id: str, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def get_jobs_by_manifest(self, manifest_id: str) -> list[Job]:
        """Jobs of a manifest, priority descending then creation order."""
        pass

    @abstractmethod
    def patch_job_payload(self, manifest_id: str, job_id: str, payload: Any) -> Job:
        """
        Replace the payload of a job that has not been claimed yet.

        Raises:
            PersistenceError: Unknown job, or job already claimed
            PayloadValidationError: Payload does not match the job type
        """
        pass

    @abstractmethod
    def add_job_warning(self, manifest_id: str, job_id: str, message: str) -> None:
        pass

    @abstractmethod
    def job_stats(self) -> list[JobStats]:
        """Job counts per (job type, status) across every manifest."""
        pass

    @abstractmethod
    def active_jobs(self, job_type: Optional[JobType] = None) -> list[Job]:
        """Every in_progress job, oldest claim first, with its worker and heartbeat."""
        pass

    def summarize_manifest(self, manifest_id: str) -> Optional[ManifestSummary]:
        """Per-job progress summary, or None for an unknown manifest."""
        if self.get_manifest(manifest_id) is None:
            return None
        return ManifestSummary.from_jobs(manifest_id, self.get_jobs_by_manifest(manifest_id))


# =============================================================================
# In-memory backend
# =============================================================================


class InMemoryJobLedger(JobLedger):
    """
    In-memory implementation of JobLedger for testing.

    A single lock serializes every operation, which makes claims exclusive
    across threads. All data is lost when the instance is garbage collected.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._manifests: dict[str, Manifest] = {}
        self._jobs: dict[str, dict[str, Job]] = {}  # manifest_id -> job_id -> job

    def create_manifest_with_jobs(self, manifest: Manifest, jobs: list[Job]) -> str:
        manifest_id = manifest.manifest_id or generate_ulid()
        prepared = _prepare_jobs(manifest_id, jobs)
        now = self._clock()

        with self._lock:
            if manifest_id in self._manifests:
                raise PersistenceError(f"Manifest already exists: {manifest_id}")
            self._jobs[manifest_id] = {j.job_id: j for j in prepared}
            self._manifests[manifest_id] = replace(
                manifest,
                manifest_id=manifest_id,
                status=derive_manifest_status(prepared),
                warnings=list(manifest.warnings),
                created_at=now,
                updated_at=now,
            )

        logger.info(f"Created manifest {manifest_id} with {len(prepared)} jobs")
        return manifest_id

    def claim_next_job(self, job_type: JobType, worker_id: str) -> Optional[Job]:
        with self._lock:
            now = self._clock()
            candidates = [
                (self._manifests[mid].created_at, job)
                for mid, jobs in self._jobs.items()
                for job in jobs.values()
                if job.job_type == job_type and _is_claimable(job, now)
            ]
            if not candidates:
                return None

            _, best = min(candidates, key=lambda c: (-c[1].priority, c[0], c[1].seq))
            claimed = _claimed(best, worker_id, now)
            self._jobs[best.manifest_id][best.job_id] = claimed
            self._refresh_status(best.manifest_id, now)
            return claimed

    def report_job_outcome(self, manifest_id: str, job_id: str, outcome: JobOutcome) -> Job:
        with self._lock:
            now = self._clock()
            jobs = self._jobs_for(manifest_id)
            if job_id not in jobs:
                raise KeyError(f"Job not found: {manifest_id}/{job_id}")
            updated = _apply_outcome(jobs[job_id], outcome, now)
            jobs[job_id] = updated
            _cascade(jobs, updated, now)
            self._refresh_status(manifest_id, now)
            return updated

    def heartbeat(self, manifest_id: str, job_id: str, worker_id: str, attempt: int) -> None:
        with self._lock:
            jobs = self._jobs_for(manifest_id)
            if job_id not in jobs:
                raise KeyError(f"Job not found: {manifest_id}/{job_id}")
            _check_claim(jobs[job_id], worker_id, attempt)
            jobs[job_id] = replace(jobs[job_id], heartbeat_at=self._clock())

    def reclaim_stale_jobs(self, timeout_s: float, job_type: Optional[JobType] = None) -> list[Job]:
        reclaimed = []
        with self._lock:
            now = self._clock()
            cutoff = now - timedelta(seconds=timeout_s)
            for manifest_id, jobs in self._jobs.items():
                stale = [
                    j for j in jobs.values()
                    if j.status == JobStatus.IN_PROGRESS
                    and (job_type is None or j.job_type == job_type)
                    and (j.heartbeat_at or j.claimed_at or now) < cutoff
                ]
                for job in stale:
                    updated = _apply_outcome(job, _liveness_outcome(job, timeout_s), now)
                    jobs[job.job_id] = updated
                    _cascade(jobs, updated, now)
                    reclaimed.append(updated)
                if stale:
                    self._refresh_status(manifest_id, now)

        for job in reclaimed:
            logger.warning(f"Reclaimed stale job {job.key} -> {job.status.value}")
        return reclaimed

    def get_manifest(self, manifest_id: str) -> Optional[Manifest]:
        with self._lock:
            manifest = self._manifests.get(manifest_id)
            return replace(manifest, warnings=list(manifest.warnings)) if manifest else None

    def list_manifests(self, user_id: Optional[str] = None) -> list[Manifest]:
        with self._lock:
            manifests = [
                replace(m, warnings=list(m.warnings)) for m in self._manifests.values()
                if user_id is None or m.user_id == user_id
            ]
        return sorted(manifests, key=lambda m: m.created_at, reverse=True)

    def get_job(self, manifest_id: str, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(manifest_id, {}).get(job_id)

    def get_jobs_by_manifest(self, manifest_id: str) -> list[Job]:
        with self._lock:
            jobs = list(self._jobs.get(manifest_id, {}).values())
        return sorted(jobs, key=_job_order)

    def job_stats(self) -> list[JobStats]:
        with self._lock:
            jobs = [j for jobs in self._jobs.values() for j in jobs.values()]
        return JobStats.from_jobs(jobs)

    def active_jobs(self, job_type: Optional[JobType] = None) -> list[Job]:
        with self._lock:
            active = [
                j for jobs in self._jobs.values() for j in jobs.values()
                if j.status == JobStatus.IN_PROGRESS and (job_type is None or j.job_type == job_type)
            ]
        return sorted(active, key=_claim_order)

    def patch_job_payload(self, manifest_id: str, job_id: str, payload: Any) -> Job:
        with self._lock:
            job = self._jobs.get(manifest_id, {}).get(job_id)
            if job is None:
                raise PersistenceError(f"Job not found: {manifest_id}/{job_id}")
            if job.attempts > 0 or job.status not in (JobStatus.PENDING, JobStatus.ELIGIBLE):
                raise PersistenceError(
                    f"Job {job.key} already claimed (status={job.status.value}); payload is frozen"
                )
            patched = replace(job, payload=parse_payload(job.job_type, payload))
            self._jobs[manifest_id][job_id] = patched
            return patched

    def add_job_warning(self, manifest_id: str, job_id: str, message: str) -> None:
        with self._lock:
            job = self._jobs.get(manifest_id, {}).get(job_id)
            if job is None:
                raise PersistenceError(f"Job not found: {manifest_id}/{job_id}")
            self._jobs[manifest_id][job_id] = replace(job, warnings=job.warnings + (message,))

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._manifests.clear()
            self._jobs.clear()

    def _jobs_for(self, manifest_id: str) -> dict[str, Job]:
        if manifest_id not in self._jobs:
            raise KeyError(f"Manifest not found: {manifest_id}")
        return self._jobs[manifest_id]

    def _refresh_status(self, manifest_id: str, now: datetime) -> None:
        """Recompute the derived manifest status. Caller holds the lock."""
        manifest = self._manifests[manifest_id]
        status = derive_manifest_status(self._jobs[manifest_id].values())
        if status != manifest.status:
            logger.info(f"Manifest {manifest_id}: {manifest.status.value} -> {status.value}")
            manifest.status = status
            manifest.updated_at = now


# =============================================================================
# SQLite backend
# =============================================================================

_SCHEMA = """
CREATE TABLE IF NOT EXISTS manifests (
    manifest_id TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    status      TEXT NOT NULL,
    payload     TEXT NOT NULL,
    profile     TEXT,
    warnings    TEXT NOT NULL,
    created_at  REAL NOT NULL,
    updated_at  REAL
);

CREATE TABLE IF NOT EXISTS jobs (
    manifest_id     TEXT NOT NULL REFERENCES manifests(manifest_id),
    job_id          TEXT NOT NULL,
    job_type        TEXT NOT NULL,
    status          TEXT NOT NULL,
    priority        INTEGER NOT NULL,
    depends_on      TEXT NOT NULL,
    payload         TEXT NOT NULL,
    retry_policy    TEXT NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 0,
    worker_id       TEXT,
    claimed_at      REAL,
    heartbeat_at    REAL,
    next_attempt_at REAL,
    completed_at    REAL,
    result          TEXT,
    error           TEXT,
    warnings        TEXT NOT NULL,
    blocked_by      TEXT,
    seq             INTEGER NOT NULL,
    created_at      REAL NOT NULL,
    PRIMARY KEY (manifest_id, job_id)
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim
    ON jobs (job_type, status, priority DESC, created_at, seq);
"""

_JOB_COLUMNS = (
    "manifest_id, job_id, job_type, status, priority, depends_on, payload, retry_policy, "
    "attempts, worker_id, claimed_at, heartbeat_at, next_attempt_at, completed_at, "
    "result, error, warnings, blocked_by, seq, created_at"
)


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _dt(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


def _row_to_job(row: sqlite3.Row) -> Job:
    job_type = JobType.from_string(row["job_type"])
    return Job(
        job_id=row["job_id"],
        job_type=job_type,
        payload=parse_payload(job_type, json.loads(row["payload"])),
        manifest_id=row["manifest_id"],
        priority=row["priority"],
        depends_on=tuple(json.loads(row["depends_on"])),
        retry_policy=RetryPolicy.from_dict(json.loads(row["retry_policy"])),
        attempts=row["attempts"],
        status=JobStatus(row["status"]),
        worker_id=row["worker_id"],
        claimed_at=_dt(row["claimed_at"]),
        heartbeat_at=_dt(row["heartbeat_at"]),
        next_attempt_at=_dt(row["next_attempt_at"]),
        completed_at=_dt(row["completed_at"]),
        result=_loads(row["result"]),
        error=_loads(row["error"]),
        warnings=tuple(json.loads(row["warnings"])),
        blocked_by=row["blocked_by"],
        seq=row["seq"],
    )


def _row_to_manifest(row: sqlite3.Row) -> Manifest:
    profile = _loads(row["profile"])
    return Manifest(
        manifest_id=row["manifest_id"],
        user_id=row["user_id"],
        payload=json.loads(row["payload"]),
        profile=CreativeProfile.from_dict(profile) if profile else None,
        status=ManifestStatus(row["status"]),
        warnings=json.loads(row["warnings"]),
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


class SqliteJobLedger(JobLedger):
    """
    SQLite implementation of JobLedger.

    Each operation opens its own connection, so one ledger instance can be
    shared by a worker's thread pool and several worker processes can share
    one database file. Multi-row writes run inside BEGIN IMMEDIATE
    transactions; the claim itself is a conditional single-row UPDATE whose
    row count tells the claimer whether it won.

    Timestamps are stored as epoch seconds.
    """

    def __init__(self, path: Path | str, clock: Optional[Clock] = None, timeout_s: float = 30.0):
        self.path = Path(path).expanduser()
        self._clock = clock or _utcnow
        self._timeout_s = timeout_s
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self._timeout_s, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create_manifest_with_jobs(self, manifest: Manifest, jobs: list[Job]) -> str:
        manifest_id = manifest.manifest_id or generate_ulid()
        prepared = _prepare_jobs(manifest_id, jobs)
        now = _ts(self._clock())

        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO manifests (manifest_id, user_id, status, payload, profile, "
                    "warnings, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        manifest_id,
                        manifest.user_id,
                        derive_manifest_status(prepared).value,
                        json.dumps(manifest.payload),
                        _dumps(manifest.profile.to_dict() if manifest.profile else None),
                        json.dumps(list(manifest.warnings)),
                        now,
                        now,
                    ),
                )
                conn.executemany(
                    f"INSERT INTO jobs ({_JOB_COLUMNS}) VALUES "
                    f"({', '.join('?' * 20)})",
                    [self._job_values(job, now) for job in prepared],
                )
        except sqlite3.IntegrityError as e:
            raise PersistenceError(f"Manifest {manifest_id} could not be inserted: {e}") from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Ledger write failed for manifest {manifest_id}: {e}") from e

        logger.info(f"Created manifest {manifest_id} with {len(prepared)} jobs")
        return manifest_id

    def claim_next_job(self, job_type: JobType, worker_id: str) -> Optional[Job]:
        now = self._clock()
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs "
                "WHERE job_type = ? AND (status = ? OR (status = ? AND "
                "(next_attempt_at IS NULL OR next_attempt_at <= ?))) "
                "ORDER BY priority DESC, created_at ASC, seq ASC",
                (job_type.value, JobStatus.ELIGIBLE.value, JobStatus.RETRYING.value, _ts(now)),
            ).fetchall()

        for row in rows:
            job = _row_to_job(row)
            if not _is_claimable(job, now):
                continue
            claimed = _claimed(job, worker_id, now)
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE jobs SET status = ?, attempts = ?, worker_id = ?, claimed_at = ?, "
                    "heartbeat_at = ?, next_attempt_at = NULL "
                    "WHERE manifest_id = ? AND job_id = ? AND status = ? AND attempts = ?",
                    (
                        claimed.status.value,
                        claimed.attempts,
                        worker_id,
                        _ts(now),
                        _ts(now),
                        job.manifest_id,
                        job.job_id,
                        job.status.value,
                        job.attempts,
                    ),
                )
                if cursor.rowcount != 1:
                    # Another claimer won this row; try the next candidate
                    continue
                self._refresh_status(conn, job.manifest_id, now)
            return claimed
        return None

    def report_job_outcome(self, manifest_id: str, job_id: str, outcome: JobOutcome) -> Job:
        with self._transaction() as conn:
            now = self._clock()
            jobs = self._load_jobs(conn, manifest_id)
            if job_id not in jobs:
                raise KeyError(f"Job not found: {manifest_id}/{job_id}")
            updated = _apply_outcome(jobs[job_id], outcome, now)
            jobs[job_id] = updated
            for job in [updated, *_cascade(jobs, updated, now)]:
                self._write_job(conn, job)
            self._refresh_status(conn, manifest_id, now, jobs.values())
            return updated

    def heartbeat(self, manifest_id: str, job_id: str, worker_id: str, attempt: int) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET heartbeat_at = ? WHERE manifest_id = ? AND job_id = ? "
                "AND status = ? AND worker_id = ? AND attempts = ?",
                (
                    _ts(self._clock()),
                    manifest_id,
                    job_id,
                    JobStatus.IN_PROGRESS.value,
                    worker_id,
                    attempt,
                ),
            )
            if cursor.rowcount != 1:
                raise ClaimLostError(
                    f"Job '{job_id}' attempt {attempt} is no longer held by {worker_id}"
                )

    def reclaim_stale_jobs(self, timeout_s: float, job_type: Optional[JobType] = None) -> list[Job]:
        reclaimed = []
        with self._transaction() as conn:
            now = self._clock()
            cutoff = _ts(now - timedelta(seconds=timeout_s))
            query = (
                "SELECT DISTINCT manifest_id FROM jobs WHERE status = ? "
                "AND COALESCE(heartbeat_at, claimed_at) < ?"
            )
            params: list[Any] = [JobStatus.IN_PROGRESS.value, cutoff]
            if job_type is not None:
                query += " AND job_type = ?"
                params.append(job_type.value)
            manifest_ids = [r["manifest_id"] for r in conn.execute(query, params)]

            for manifest_id in manifest_ids:
                jobs = self._load_jobs(conn, manifest_id)
                stale = [
                    j for j in jobs.values()
                    if j.status == JobStatus.IN_PROGRESS
                    and (job_type is None or j.job_type == job_type)
                    and _ts(j.heartbeat_at or j.claimed_at or now) < cutoff
                ]
                for job in stale:
                    updated = _apply_outcome(job, _liveness_outcome(job, timeout_s), now)
                    jobs[job.job_id] = updated
                    for changed in [updated, *_cascade(jobs, updated, now)]:
                        self._write_job(conn, changed)
                    reclaimed.append(updated)
                self._refresh_status(conn, manifest_id, now, jobs.values())

        for job in reclaimed:
            logger.warning(f"Reclaimed stale job {job.key} -> {job.status.value}")
        return reclaimed

    def patch_job_payload(self, manifest_id: str, job_id: str, payload: Any) -> Job:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE manifest_id = ? AND job_id = ?",
                (manifest_id, job_id),
            ).fetchone()
            if row is None:
                raise PersistenceError(f"Job not found: {manifest_id}/{job_id}")
            job = _row_to_job(row)
            if job.attempts > 0 or job.status not in (JobStatus.PENDING, JobStatus.ELIGIBLE):
                raise PersistenceError(
                    f"Job {job.key} already claimed (status={job.status.value}); payload is frozen"
                )
            patched = replace(job, payload=parse_payload(job.job_type, payload))
            conn.execute(
                "UPDATE jobs SET payload = ? WHERE manifest_id = ? AND job_id = ? AND attempts = 0",
                (json.dumps(payload_to_dict(patched.payload)), manifest_id, job_id),
            )
            return patched

    def add_job_warning(self, manifest_id: str, job_id: str, message: str) -> None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT warnings FROM jobs WHERE manifest_id = ? AND job_id = ?",
                (manifest_id, job_id),
            ).fetchone()
            if row is None:
                raise PersistenceError(f"Job not found: {manifest_id}/{job_id}")
            warnings = json.loads(row["warnings"]) + [message]
            conn.execute(
                "UPDATE jobs SET warnings = ? WHERE manifest_id = ? AND job_id = ?",
                (json.dumps(warnings), manifest_id, job_id),
            )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_manifest(self, manifest_id: str) -> Optional[Manifest]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM manifests WHERE manifest_id = ?", (manifest_id,)
            ).fetchone()
        return _row_to_manifest(row) if row else None

    def list_manifests(self, user_id: Optional[str] = None) -> list[Manifest]:
        query = "SELECT * FROM manifests"
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY created_at DESC, manifest_id DESC"
        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_manifest(r) for r in rows]

    def get_job(self, manifest_id: str, job_id: str) -> Optional[Job]:
        with self._reader() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE manifest_id = ? AND job_id = ?",
                (manifest_id, job_id),
            ).fetchone()
        return _row_to_job(row) if row else None

    def get_jobs_by_manifest(self, manifest_id: str) -> list[Job]:
        with self._reader() as conn:
            return sorted(self._load_jobs(conn, manifest_id).values(), key=_job_order)

    def job_stats(self) -> list[JobStats]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT job_type, status, COUNT(*) AS count, MAX(attempts) AS max_attempts "
                "FROM jobs GROUP BY job_type, status ORDER BY job_type, status"
            ).fetchall()
        return [
            JobStats(
                job_type=JobType.from_string(row["job_type"]),
                status=JobStatus(row["status"]),
                count=row["count"],
                max_attempts_used=row["max_attempts"],
            )
            for row in rows
        ]

    def active_jobs(self, job_type: Optional[JobType] = None) -> list[Job]:
        query = f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status = ?"
        params: tuple = (JobStatus.IN_PROGRESS.value,)
        if job_type is not None:
            query += " AND job_type = ?"
            params += (job_type.value,)
        query += " ORDER BY claimed_at, manifest_id, seq"
        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(r) for r in rows]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _job_values(job: Job, created_at: float) -> tuple:
        return (
            job.manifest_id,
            job.job_id,
            job.job_type.value,
            job.status.value,
            job.priority,
            json.dumps(list(job.depends_on)),
            json.dumps(payload_to_dict(job.payload)),
            json.dumps(job.retry_policy.to_dict()),
            job.attempts,
            job.worker_id,
            _ts(job.claimed_at),
            _ts(job.heartbeat_at),
            _ts(job.next_attempt_at),
            _ts(job.completed_at),
            _dumps(job.result),
            _dumps(job.error),
            json.dumps(list(job.warnings)),
            job.blocked_by,
            job.seq,
            created_at,
        )

    @staticmethod
    def _load_jobs(conn: sqlite3.Connection, manifest_id: str) -> dict[str, Job]:
        rows = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE manifest_id = ? ORDER BY seq",
            (manifest_id,),
        ).fetchall()
        return {row["job_id"]: _row_to_job(row) for row in rows}

    @staticmethod
    def _write_job(conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            "UPDATE jobs SET status = ?, attempts = ?, worker_id = ?, claimed_at = ?, "
            "heartbeat_at = ?, next_attempt_at = ?, completed_at = ?, result = ?, error = ?, "
            "blocked_by = ? WHERE manifest_id = ? AND job_id = ?",
            (
                job.status.value,
                job.attempts,
                job.worker_id,
                _ts(job.claimed_at),
                _ts(job.heartbeat_at),
                _ts(job.next_attempt_at),
                _ts(job.completed_at),
                _dumps(job.result),
                _dumps(job.error),
                job.blocked_by,
                job.manifest_id,
                job.job_id,
            ),
        )

    def _refresh_status(
        self,
        conn: sqlite3.Connection,
        manifest_id: str,
        now: datetime,
        jobs: Optional[Iterable[Job]] = None,
    ) -> None:
        """Recompute the derived manifest status inside the caller's transaction."""
        if jobs is None:
            jobs = self._load_jobs(conn, manifest_id).values()
        status = derive_manifest_status(jobs)
        row = conn.execute(
            "SELECT status FROM manifests WHERE manifest_id = ?", (manifest_id,)
        ).fetchone()
        if row is not None and row["status"] != status.value:
            logger.info(f"Manifest {manifest_id}: {row['status']} -> {status.value}")
            conn.execute(
                "UPDATE manifests SET status = ?, updated_at = ? WHERE manifest_id = ?",
                (status.value, _ts(now), manifest_id),
            )
