"""Tests for the job ledger (in-memory and SQLite backends).

Tests cover:
- Atomic manifest + job insert
- Exclusive claims, priority ordering and retry backoff
- Outcome fencing by (worker_id, attempt)
- Promotion of dependents and transitive blocking
- Liveness reclaim
- Job counts per type and status, active claims
- Derived manifest status
"""

import threading
from datetime import timedelta

import pytest

from reelchestra.errors import (
    ClaimLostError,
    PayloadValidationError,
    PersistenceError,
    ValidationError,
)
from reelchestra.ledger import SqliteJobLedger, generate_ulid
from reelchestra.schemas import (
    CompositionPayload,
    FinalRenderPayload,
    Job,
    JobOutcome,
    JobStats,
    JobStatus,
    JobType,
    Manifest,
    ManifestStatus,
    MusicPayload,
    NarrationPayload,
    RetryPolicy,
)


FAST_RETRY = RetryPolicy(max_retries=2, base_delay_s=10.0, max_delay_s=100.0)
FAST_RETRY_DELAY = timedelta(seconds=10)


def _narration(job_id, priority=0, depends_on=(), retry_policy=FAST_RETRY):
    return Job(
        job_id=job_id,
        job_type=JobType.NARRATION_SYNTHESIS,
        payload=NarrationPayload(scene_id=job_id, text="hello"),
        priority=priority,
        depends_on=tuple(depends_on),
        retry_policy=retry_policy,
    )


def _composition(job_id, depends_on=()):
    return Job(
        job_id=job_id,
        job_type=JobType.COMPOSITION,
        payload=CompositionPayload(scene_id=job_id, scene_index=0, start_at_s=0.0, duration_s=10.0),
        depends_on=tuple(depends_on),
        retry_policy=FAST_RETRY,
    )


def _render(depends_on=()):
    return Job(
        job_id="render",
        job_type=JobType.FINAL_RENDER,
        payload=FinalRenderPayload(aspect_ratio="16:9", platform="youtube", resolution="1920x1080"),
        depends_on=tuple(depends_on),
        retry_policy=FAST_RETRY,
    )


def _diamond(ledger, manifest_id="m1"):
    """
    a --> comp_a --+
                   +--> render
    b --> comp_b --+
    """
    return ledger.create_manifest_with_jobs(
        Manifest(user_id="u1", manifest_id=manifest_id),
        [
            _narration("a"),
            _narration("b"),
            _composition("comp_a", ["a"]),
            _composition("comp_b", ["b"]),
            _render(["comp_a", "comp_b"]),
        ],
    )


def _complete(ledger, job):
    return ledger.report_job_outcome(
        job.manifest_id, job.job_id,
        JobOutcome.completed(job.worker_id, job.attempts, {"output_ref": f"ref://{job.job_id}"}),
    )


def _fail(ledger, job, message="boom"):
    return ledger.report_job_outcome(
        job.manifest_id, job.job_id,
        JobOutcome.failed(job.worker_id, job.attempts, {"message": message}),
    )


def _claim(ledger, job_type, job_id, worker="w1"):
    """Claim the next job of a type and check it is the expected one."""
    job = ledger.claim_next_job(job_type, worker)
    assert job is not None and job.job_id == job_id, job
    return job


# =============================================================================
# Ids
# =============================================================================


class TestGenerateUlid:
    """Tests for manifest id generation."""

    def test_format(self):
        """ULIDs are 26 Crockford base32 characters."""
        ulid = generate_ulid()
        assert len(ulid) == 26
        assert set(ulid) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")

    def test_unique(self):
        """Consecutive ULIDs differ."""
        assert len({generate_ulid() for _ in range(100)}) == 100


# =============================================================================
# Create
# =============================================================================


class TestCreateManifest:
    """Tests for create_manifest_with_jobs."""

    def test_assigns_id_and_initial_status(self, ledger):
        """A ULID is assigned; jobs without deps are eligible, others pending."""
        manifest_id = ledger.create_manifest_with_jobs(
            Manifest(user_id="u1"), [_narration("a"), _composition("c", ["a"])]
        )
        assert len(manifest_id) == 26

        assert ledger.get_job(manifest_id, "a").status == JobStatus.ELIGIBLE
        assert ledger.get_job(manifest_id, "c").status == JobStatus.PENDING
        assert ledger.get_manifest(manifest_id).status == ManifestStatus.PLANNING

    def test_jobs_belong_to_manifest(self, ledger):
        """Every inserted job carries the manifest id and a creation sequence."""
        manifest_id = _diamond(ledger)
        jobs = ledger.get_jobs_by_manifest(manifest_id)
        assert {j.manifest_id for j in jobs} == {manifest_id}
        assert sorted(j.seq for j in jobs) == [0, 1, 2, 3, 4]

    def test_duplicate_job_ids_rejected(self, ledger):
        """Duplicate job ids fail the whole insert."""
        with pytest.raises(ValidationError, match="Duplicate job ids"):
            ledger.create_manifest_with_jobs(
                Manifest(user_id="u1", manifest_id="m1"), [_narration("a"), _narration("a")]
            )
        assert ledger.get_manifest("m1") is None

    def test_dangling_dependency_rejected(self, ledger):
        """Dependencies must name jobs of the same manifest."""
        with pytest.raises(ValidationError) as exc_info:
            ledger.create_manifest_with_jobs(
                Manifest(user_id="u1", manifest_id="m1"), [_composition("c", ["missing"])]
            )
        assert "depends on unknown job 'missing'" in exc_info.value.errors[0]
        assert ledger.get_manifest("m1") is None

    def test_mismatched_payload_rejected(self, ledger):
        """A payload variant that does not match the job type is rejected."""
        bad = Job(
            job_id="x",
            job_type=JobType.COMPOSITION,
            payload=MusicPayload(mood="calm", structure="loop", duration_seconds=10),
        )
        with pytest.raises(PayloadValidationError):
            ledger.create_manifest_with_jobs(Manifest(user_id="u1", manifest_id="m1"), [bad])
        assert ledger.get_manifest("m1") is None

    def test_duplicate_manifest_id_is_atomic(self, ledger):
        """Re-inserting a manifest id fails and leaves the first insert untouched."""
        _diamond(ledger)
        with pytest.raises(PersistenceError):
            ledger.create_manifest_with_jobs(
                Manifest(user_id="u2", manifest_id="m1"), [_narration("other")]
            )
        assert ledger.get_manifest("m1").user_id == "u1"
        assert ledger.get_job("m1", "other") is None
        assert len(ledger.get_jobs_by_manifest("m1")) == 5

    def test_list_manifests_by_user(self, ledger):
        """list_manifests filters by owner."""
        _diamond(ledger, "m1")
        ledger.create_manifest_with_jobs(Manifest(user_id="u2", manifest_id="m2"), [_narration("a")])

        assert {m.manifest_id for m in ledger.list_manifests()} == {"m1", "m2"}
        assert [m.manifest_id for m in ledger.list_manifests(user_id="u2")] == ["m2"]

    def test_listed_manifests_are_copies(self, ledger):
        """Mutating a listed manifest does not change what the ledger stores."""
        ledger.create_manifest_with_jobs(
            Manifest(user_id="u1", manifest_id="m1", warnings=["short scene"]), [_narration("a")]
        )

        ledger.list_manifests()[0].warnings.append("injected")

        assert ledger.list_manifests()[0].warnings == ["short scene"]
        assert ledger.get_manifest("m1").warnings == ["short scene"]


# =============================================================================
# Claim
# =============================================================================


class TestClaim:
    """Tests for claim_next_job."""

    def test_claim_moves_to_in_progress(self, ledger, clock):
        """A claim records the worker, increments attempts and stamps the heartbeat."""
        _diamond(ledger)
        job = ledger.claim_next_job(JobType.NARRATION_SYNTHESIS, "w1")

        assert job.status == JobStatus.IN_PROGRESS
        assert job.worker_id == "w1"
        assert job.attempts == 1
        assert job.heartbeat_at == clock.now
        assert ledger.get_job("m1", job.job_id).status == JobStatus.IN_PROGRESS
        assert ledger.get_manifest("m1").status == ManifestStatus.IN_PROGRESS

    def test_only_matching_type(self, ledger):
        """Workers only see jobs of their own type."""
        _diamond(ledger)
        assert ledger.claim_next_job(JobType.MUSIC_GENERATION, "w1") is None

    def test_pending_jobs_not_claimable(self, ledger):
        """Jobs waiting on dependencies are never claimed."""
        _diamond(ledger)
        assert ledger.claim_next_job(JobType.COMPOSITION, "w1") is None

    def test_priority_then_creation_order(self, ledger):
        """Higher priority first; ties go to the job created first."""
        ledger.create_manifest_with_jobs(
            Manifest(user_id="u1", manifest_id="m1"),
            [_narration("low", priority=1), _narration("tie1", priority=5), _narration("tie2", priority=5)],
        )
        claimed = [ledger.claim_next_job(JobType.NARRATION_SYNTHESIS, "w1").job_id for _ in range(3)]
        assert claimed == ["tie1", "tie2", "low"]
        assert ledger.claim_next_job(JobType.NARRATION_SYNTHESIS, "w1") is None

    def test_concurrent_claims_are_exclusive(self, ledger):
        """Many threads racing for jobs never receive the same job twice."""
        jobs = [_narration(f"j{i}") for i in range(20)]
        ledger.create_manifest_with_jobs(Manifest(user_id="u1", manifest_id="m1"), jobs)

        claimed = []
        lock = threading.Lock()

        def worker(worker_id):
            while True:
                job = ledger.claim_next_job(JobType.NARRATION_SYNTHESIS, worker_id)
                if job is None:
                    return
                with lock:
                    claimed.append(job.job_id)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(j.job_id for j in jobs)
        assert len(claimed) == len(set(claimed))

    def test_sqlite_claims_across_instances(self, tmp_path, clock):
        """Two ledger instances over one database file share claims."""
        path = tmp_path / "shared.db"
        first = SqliteJobLedger(path, clock=clock)
        second = SqliteJobLedger(path, clock=clock)
        first.create_manifest_with_jobs(Manifest(user_id="u1", manifest_id="m1"), [_narration("only")])

        assert second.claim_next_job(JobType.NARRATION_SYNTHESIS, "w2").job_id == "only"
        assert first.claim_next_job(JobType.NARRATION_SYNTHESIS, "w1") is None


# =============================================================================
# Outcomes
# =============================================================================


class TestOutcomes:
    """Tests for report_job_outcome and its cascade."""

    def test_completion_promotes_dependents(self, ledger):
        """A dependent becomes eligible once all of its deps complete."""
        _diamond(ledger)
        a = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        done = _complete(ledger, a)

        assert done.status == JobStatus.COMPLETED
        assert done.result == {"output_ref": "ref://a"}
        assert ledger.get_job("m1", "comp_a").status == JobStatus.ELIGIBLE
        assert ledger.get_job("m1", "render").status == JobStatus.PENDING

    def test_render_waits_for_all_compositions(self, ledger):
        """Fan-in jobs stay pending until every dependency completes."""
        _diamond(ledger)
        for job_id in ("a", "b"):
            _complete(ledger, _claim(ledger, JobType.NARRATION_SYNTHESIS, job_id))
        _complete(ledger, _claim(ledger, JobType.COMPOSITION, "comp_a"))
        assert ledger.get_job("m1", "render").status == JobStatus.PENDING

        _complete(ledger, _claim(ledger, JobType.COMPOSITION, "comp_b"))
        assert ledger.get_job("m1", "render").status == JobStatus.ELIGIBLE

    def test_failure_blocks_transitively(self, ledger):
        """A failed job blocks its dependents and theirs, recording the culprit."""
        _diamond(ledger)
        a = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        _fail(ledger, a)

        comp_a = ledger.get_job("m1", "comp_a")
        render = ledger.get_job("m1", "render")
        assert comp_a.status == JobStatus.BLOCKED
        assert render.status == JobStatus.BLOCKED
        assert comp_a.blocked_by == "a"
        assert render.blocked_by == "a"
        # The sibling branch is untouched
        assert ledger.get_job("m1", "b").status == JobStatus.ELIGIBLE
        assert ledger.get_job("m1", "comp_b").status == JobStatus.PENDING

    def test_blocked_jobs_are_never_claimed(self, ledger):
        """Blocked jobs stay in the ledger but are not claimable."""
        _diamond(ledger)
        _fail(ledger, _claim(ledger, JobType.NARRATION_SYNTHESIS, "a"))
        _complete(ledger, _claim(ledger, JobType.NARRATION_SYNTHESIS, "b"))

        assert _claim(ledger, JobType.COMPOSITION, "comp_b").job_id == "comp_b"
        assert ledger.claim_next_job(JobType.COMPOSITION, "w1") is None
        assert len(ledger.get_jobs_by_manifest("m1")) == 5

    def test_retry_waits_for_backoff(self, ledger, clock):
        """A retrying job is claimable again only after its delay."""
        _diamond(ledger)
        a = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        retried = ledger.report_job_outcome(
            "m1", "a", JobOutcome.retry("w1", 1, {"message": "rate limited"}, delay_s=10.0)
        )
        assert retried.status == JobStatus.RETRYING
        assert retried.error == {"message": "rate limited"}

        # Only "b" is claimable while "a" backs off
        assert _claim(ledger, JobType.NARRATION_SYNTHESIS, "b").job_id == "b"
        assert ledger.claim_next_job(JobType.NARRATION_SYNTHESIS, "w1") is None

        clock.advance(10)
        again = ledger.claim_next_job(JobType.NARRATION_SYNTHESIS, "w2")
        assert again.job_id == "a"
        assert again.attempts == 2
        assert again.worker_id == "w2"

    def test_retry_past_budget_fails(self, ledger, clock):
        """A retry request on the last allowed attempt becomes a failure."""
        _diamond(ledger)
        for attempt in (1, 2, 3):
            job = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
            assert job.attempts == attempt
            last = ledger.report_job_outcome(
                "m1", "a", JobOutcome.retry("w1", attempt, {"message": "flaky"}, delay_s=0)
            )

        assert last.status == JobStatus.FAILED
        assert last.attempts == 3
        assert last.error["retries_exhausted"] is True
        assert ledger.get_job("m1", "comp_a").status == JobStatus.BLOCKED

    def test_stale_claim_cannot_report(self, ledger):
        """Outcomes from a worker that lost its claim are rejected."""
        _diamond(ledger)
        a = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")

        with pytest.raises(ClaimLostError):
            ledger.report_job_outcome("m1", "a", JobOutcome.completed("intruder", a.attempts, {}))
        with pytest.raises(ClaimLostError):
            ledger.report_job_outcome("m1", "a", JobOutcome.completed("w1", a.attempts + 1, {}))

        _complete(ledger, a)
        with pytest.raises(ClaimLostError):
            _complete(ledger, a)

    def test_unknown_job(self, ledger):
        """Reporting on an unknown job raises KeyError."""
        _diamond(ledger)
        with pytest.raises(KeyError):
            ledger.report_job_outcome("m1", "nope", JobOutcome.completed("w1", 1, {}))


# =============================================================================
# Liveness
# =============================================================================


class TestLiveness:
    """Tests for heartbeat and reclaim_stale_jobs."""

    def test_heartbeat_keeps_claim_alive(self, ledger, clock):
        """A fresh heartbeat protects a long-running job from reclaim."""
        _diamond(ledger)
        a = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        clock.advance(50)
        ledger.heartbeat("m1", "a", "w1", a.attempts)
        clock.advance(50)

        assert ledger.reclaim_stale_jobs(timeout_s=60) == []
        assert ledger.get_job("m1", "a").status == JobStatus.IN_PROGRESS

    def test_stale_job_goes_to_retry(self, ledger, clock):
        """A quiet claim is treated as a transient failure."""
        _diamond(ledger)
        _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        clock.advance(61)

        reclaimed = ledger.reclaim_stale_jobs(timeout_s=60)

        assert [j.job_id for j in reclaimed] == ["a"]
        job = ledger.get_job("m1", "a")
        assert job.status == JobStatus.RETRYING
        assert job.error["type"] == "LivenessTimeout"
        assert job.next_attempt_at == clock.now + FAST_RETRY_DELAY

    def test_reclaimed_worker_loses_claim(self, ledger, clock):
        """The original worker's heartbeat and outcome are rejected after reclaim."""
        _diamond(ledger)
        a = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        clock.advance(61)
        ledger.reclaim_stale_jobs(timeout_s=60)

        with pytest.raises(ClaimLostError):
            ledger.heartbeat("m1", "a", "w1", a.attempts)
        with pytest.raises(ClaimLostError):
            _complete(ledger, a)

    def test_reclaim_filters_by_type(self, ledger, clock):
        """A sweep limited to one job type leaves other types alone."""
        _diamond(ledger)
        _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        clock.advance(61)

        assert ledger.reclaim_stale_jobs(timeout_s=60, job_type=JobType.COMPOSITION) == []
        assert len(ledger.reclaim_stale_jobs(timeout_s=60, job_type=JobType.NARRATION_SYNTHESIS)) == 1

    def test_reclaim_on_last_attempt_fails_and_blocks(self, ledger, clock):
        """A hung job with no attempts left fails and blocks its dependents."""
        ledger.create_manifest_with_jobs(
            Manifest(user_id="u1", manifest_id="m1"),
            [
                _narration("a", retry_policy=RetryPolicy(max_retries=0, base_delay_s=1.0)),
                _composition("comp", ["a"]),
            ],
        )
        _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        clock.advance(61)

        reclaimed = ledger.reclaim_stale_jobs(timeout_s=60)

        assert reclaimed[0].status == JobStatus.FAILED
        assert ledger.get_job("m1", "comp").status == JobStatus.BLOCKED
        assert ledger.get_manifest("m1").status == ManifestStatus.FAILED


# =============================================================================
# Payload patch and warnings
# =============================================================================


class TestPatchAndWarnings:
    """Tests for patch_job_payload and add_job_warning."""

    def test_patch_before_claim(self, ledger):
        """An unclaimed job's payload can be replaced."""
        _diamond(ledger)
        patched = ledger.patch_job_payload(
            "m1", "render",
            FinalRenderPayload(aspect_ratio="16:9", platform="youtube", resolution="1920x1080", manifest_id="m1"),
        )
        assert patched.payload.manifest_id == "m1"
        assert ledger.get_job("m1", "render").payload.manifest_id == "m1"

    def test_patch_after_claim_rejected(self, ledger):
        """A claimed job's payload is frozen."""
        _diamond(ledger)
        _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")
        with pytest.raises(PersistenceError, match="already claimed"):
            ledger.patch_job_payload("m1", "a", NarrationPayload(scene_id="a", text="changed"))

    def test_patch_unknown_job(self, ledger):
        """Patching a missing job is a persistence error."""
        _diamond(ledger)
        with pytest.raises(PersistenceError):
            ledger.patch_job_payload("m1", "nope", NarrationPayload(scene_id="a", text="x"))

    def test_patch_checks_payload_type(self, ledger):
        """The patched payload must still match the job type."""
        _diamond(ledger)
        with pytest.raises(PayloadValidationError):
            ledger.patch_job_payload("m1", "a", MusicPayload(mood="x", structure="y", duration_seconds=1))

    def test_add_job_warning(self, ledger):
        """Warnings accumulate on the job."""
        _diamond(ledger)
        ledger.add_job_warning("m1", "render", "first")
        ledger.add_job_warning("m1", "render", "second")
        assert ledger.get_job("m1", "render").warnings == ("first", "second")


# =============================================================================
# Observability
# =============================================================================


class TestJobStats:
    """Tests for job_stats and active_jobs."""

    def test_empty_ledger(self, ledger):
        assert ledger.job_stats() == []
        assert ledger.active_jobs() == []

    def test_counts_per_type_and_status(self, ledger):
        """Counts are grouped by (job type, status) across manifests."""
        _diamond(ledger, "m1")
        ledger.create_manifest_with_jobs(Manifest(user_id="u2", manifest_id="m2"), [_narration("a")])
        _claim(ledger, JobType.NARRATION_SYNTHESIS, "a")

        assert ledger.job_stats() == [
            JobStats(JobType.COMPOSITION, JobStatus.PENDING, 2, 0),
            JobStats(JobType.FINAL_RENDER, JobStatus.PENDING, 1, 0),
            JobStats(JobType.NARRATION_SYNTHESIS, JobStatus.ELIGIBLE, 2, 0),
            JobStats(JobType.NARRATION_SYNTHESIS, JobStatus.IN_PROGRESS, 1, 1),
        ]

    def test_active_jobs_carry_claim(self, ledger, clock):
        """Every in-progress job is listed with its worker and heartbeat, oldest claim first."""
        _diamond(ledger)
        first = _claim(ledger, JobType.NARRATION_SYNTHESIS, "a", worker="w1")
        clock.advance(5)
        second = _claim(ledger, JobType.NARRATION_SYNTHESIS, "b", worker="w2")
        clock.advance(5)
        ledger.heartbeat("m1", "a", "w1", first.attempts)

        active = ledger.active_jobs()
        assert [(j.job_id, j.worker_id) for j in active] == [("a", "w1"), ("b", "w2")]
        assert active[0].heartbeat_at == clock.now
        assert active[1].heartbeat_at == second.claimed_at

        _complete(ledger, second)
        assert [j.job_id for j in ledger.active_jobs()] == ["a"]
        assert ledger.active_jobs(job_type=JobType.COMPOSITION) == []


# =============================================================================
# Manifest status
# =============================================================================


class TestManifestStatus:
    """Tests for the derived manifest status and summary."""

    def test_completed_when_all_jobs_complete(self, ledger):
        """A manifest completes when its last job completes."""
        _diamond(ledger)
        for job_type, job_id in [
            (JobType.NARRATION_SYNTHESIS, "a"),
            (JobType.NARRATION_SYNTHESIS, "b"),
            (JobType.COMPOSITION, "comp_a"),
            (JobType.COMPOSITION, "comp_b"),
            (JobType.FINAL_RENDER, "render"),
        ]:
            _complete(ledger, _claim(ledger, job_type, job_id))

        assert ledger.get_manifest("m1").status == ManifestStatus.COMPLETED
        summary = ledger.summarize_manifest("m1")
        assert summary.counts["completed"] == 5
        assert not summary.is_partial

    def test_mixed_outcome(self, ledger):
        """The first failure fails the manifest; sibling branches still run and report per job."""
        _diamond(ledger)
        _fail(ledger, _claim(ledger, JobType.NARRATION_SYNTHESIS, "a"))
        assert ledger.get_manifest("m1").status == ManifestStatus.FAILED
        assert ledger.get_job("m1", "b").status == JobStatus.ELIGIBLE

        _complete(ledger, _claim(ledger, JobType.NARRATION_SYNTHESIS, "b"))
        _complete(ledger, _claim(ledger, JobType.COMPOSITION, "comp_b"))

        assert ledger.get_manifest("m1").status == ManifestStatus.FAILED
        summary = ledger.summarize_manifest("m1")
        assert summary.status == ManifestStatus.FAILED
        assert summary.is_partial
        assert set(summary.completed_jobs) == {"b", "comp_b"}
        assert summary.failed_jobs == ("a",)
        assert set(summary.blocked_jobs) == {"comp_a", "render"}

    def test_summary_for_unknown_manifest(self, ledger):
        """Summaries of unknown manifests are None."""
        assert ledger.summarize_manifest("missing") is None
