"""
WorkerRuntime - claim, execute and report jobs of one job type.

One runtime serves exactly one job type. Each cycle it:
1. Sweeps the ledger for claims whose heartbeat went quiet (liveness)
2. Reaps jobs that finished since the last cycle
3. Claims jobs until `concurrency` are in flight and hands each to a
   thread pool

Execution of a single job (execute) is synchronous and never raises:

    processor.process(job, context)
        -> ProcessResult        => completed
        -> TransientError       => retrying (if attempts left) else failed
        -> any other exception  => same as TransientError
        -> PermanentError       => failed (dependents are blocked by the ledger)

Between cycles the runtime sleeps for poll_interval_s, or less when a
dispatch notification arrives. Polling alone is enough for correctness.
"""

import logging
import os
import socket
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Optional

from reelchestra.errors import ClaimLostError, PermanentError
from reelchestra.ledger import JobLedger
from reelchestra.notifier import DispatchEvent, DispatchNotifier
from reelchestra.processors.base import JobContext, Processor
from reelchestra.schemas import Job, JobOutcome, JobType

logger = logging.getLogger(__name__)


def default_worker_id(job_type: JobType) -> str:
    """Worker id unique per process: "<job_type>-<host>-<pid>-<random>"."""
    return f"{job_type.value}-{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _error_info(error: Exception, attempt: int, retryable: bool) -> dict[str, Any]:
    info: dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error),
        "attempt": attempt,
        "retryable": retryable,
    }
    code = getattr(error, "code", None)
    if code:
        info["code"] = code
    return info


class WorkerRuntime:
    """
    Claim/execute/retry harness for one job type.

    Usage:
        runtime = WorkerRuntime(ledger, JobType.NARRATION_SYNTHESIS, processor)
        runtime.run_once(wait=True)     # one synchronous cycle
        runtime.run_forever()           # poll loop until stop()
    """

    def __init__(
        self,
        ledger: JobLedger,
        job_type: JobType,
        processor: Processor,
        concurrency: int = 3,
        worker_id: Optional[str] = None,
        poll_interval_s: float = 5.0,
        liveness_timeout_s: float = 600.0,
        notifier: Optional[DispatchNotifier] = None,
    ):
        """
        Initialize the runtime.

        Args:
            ledger: Job ledger to claim from and report to
            job_type: The only job type this runtime serves
            processor: Processor for job_type
            concurrency: Maximum jobs in flight
            worker_id: Claim identity (generated if not given)
            poll_interval_s: Sleep between cycles when idle
            liveness_timeout_s: Heartbeat age after which a claim is reclaimed
            notifier: Optional dispatch notifier used to wake early
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if getattr(processor, "job_type", job_type) != job_type:
            raise ValueError(
                f"Processor serves {processor.job_type.value}, runtime serves {job_type.value}"
            )

        self.ledger = ledger
        self.job_type = job_type
        self.processor = processor
        self.concurrency = concurrency
        self.worker_id = worker_id or default_worker_id(job_type)
        self.poll_interval_s = poll_interval_s
        self.liveness_timeout_s = liveness_timeout_s
        self.notifier = notifier

        self._pool: Optional[ThreadPoolExecutor] = None
        self._active: dict[str, Future] = {}  # "<manifest>/<job>#<attempt>" -> future
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._running = False
        self.stats = {"claimed": 0, "completed": 0, "retrying": 0, "failed": 0}

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run_once(self, wait: bool = False) -> int:
        """
        Run one dispatch cycle.

        Args:
            wait: Block until every job in flight has finished

        Returns:
            Number of jobs claimed in this cycle
        """
        self.sweep()
        self._reap()

        claimed = 0
        while self.active_count < self.concurrency:
            job = self.ledger.claim_next_job(self.job_type, self.worker_id)
            if job is None:
                break
            claimed += 1
            logger.info(f"[{self.worker_id}] Claimed {job.key} (attempt {job.attempts})")
            future = self._get_pool().submit(self.execute, job)
            with self._lock:
                self.stats["claimed"] += 1
                # One entry per attempt; a fast retry may be claimed before the previous future is reaped
                self._active[f"{job.key}#{job.attempts}"] = future

        if wait:
            self.drain()
        return claimed

    def sweep(self) -> list[Job]:
        """Reclaim jobs of this type whose heartbeat is older than the liveness timeout."""
        return self.ledger.reclaim_stale_jobs(self.liveness_timeout_s, job_type=self.job_type)

    def drain(self) -> None:
        """Wait for every job in flight, then reap."""
        with self._lock:
            futures = list(self._active.values())
        if futures:
            wait_futures(futures)
        self._reap()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def _reap(self) -> None:
        with self._lock:
            done = [key for key, future in self._active.items() if future.done()]
            for key in done:
                del self._active[key]

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.concurrency,
                thread_name_prefix=f"reelchestra-{self.job_type.value}",
            )
        return self._pool

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute(self, job: Job) -> Job:
        """
        Process one claimed job and report its outcome.

        Never raises. Returns the job as recorded in the ledger afterwards
        (or the claimed job if the outcome could not be recorded).
        """
        attempt = job.attempts

        try:
            context = self._build_context(job)
            result = self.processor.process(job, context)
            outcome = JobOutcome.completed(self.worker_id, attempt, result.to_dict())
        except ClaimLostError as e:
            logger.warning(f"[{self.worker_id}] Lost claim on {job.key} while processing: {e}")
            return self.ledger.get_job(job.manifest_id, job.job_id) or job
        except PermanentError as e:
            logger.error(f"[{self.worker_id}] {job.key} failed permanently: {e}")
            outcome = JobOutcome.failed(self.worker_id, attempt, _error_info(e, attempt, False))
        except Exception as e:
            outcome = self._retry_or_fail(job, attempt, e)

        try:
            updated = self.ledger.report_job_outcome(job.manifest_id, job.job_id, outcome)
        except ClaimLostError as e:
            logger.warning(f"[{self.worker_id}] Outcome for {job.key} discarded: {e}")
            return self.ledger.get_job(job.manifest_id, job.job_id) or job
        except Exception:
            logger.exception(f"[{self.worker_id}] Could not record outcome for {job.key}")
            return job

        with self._lock:
            self.stats[updated.status.value] = self.stats.get(updated.status.value, 0) + 1
        logger.info(f"[{self.worker_id}] {job.key} -> {updated.status.value} (attempt {attempt})")
        return updated

    def _retry_or_fail(self, job: Job, attempt: int, error: Exception) -> JobOutcome:
        policy = job.retry_policy
        if policy.has_attempts_left(attempt):
            delay = policy.delay_for(attempt)
            logger.warning(
                f"[{self.worker_id}] {job.key} attempt {attempt}/{policy.max_attempts} failed "
                f"({type(error).__name__}: {error}); retrying in {delay:g}s"
            )
            return JobOutcome.retry(
                self.worker_id, attempt, _error_info(error, attempt, True), delay
            )

        logger.error(
            f"[{self.worker_id}] {job.key} failed after {attempt} attempt(s): "
            f"{type(error).__name__}: {error}"
        )
        info = _error_info(error, attempt, True)
        info["retries_exhausted"] = True
        return JobOutcome.failed(self.worker_id, attempt, info)

    def _build_context(self, job: Job) -> JobContext:
        upstream = {}
        for dep in job.depends_on:
            dep_job = self.ledger.get_job(job.manifest_id, dep)
            if dep_job is not None:
                upstream[dep] = dep_job

        def heartbeat() -> None:
            self.ledger.heartbeat(job.manifest_id, job.job_id, self.worker_id, job.attempts)

        return JobContext(
            worker_id=self.worker_id,
            attempt=job.attempts,
            manifest=self.ledger.get_manifest(job.manifest_id),
            upstream=upstream,
            heartbeat=heartbeat,
        )

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """
        Poll until stop() is called (or max_cycles cycles have run).

        Jobs in flight are drained before returning.
        """
        self._running = True
        self._stop.clear()
        unsubscribe = self.notifier.subscribe(self._on_dispatch) if self.notifier else None
        logger.info(
            f"[{self.worker_id}] Worker started: job_type={self.job_type.value}, "
            f"concurrency={self.concurrency}, poll_interval={self.poll_interval_s:g}s"
        )

        cycles = 0
        try:
            while not self._stop.is_set():
                try:
                    self.run_once()
                except Exception:
                    logger.exception(f"[{self.worker_id}] Dispatch cycle failed")
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self._wake.wait(self.poll_interval_s)
                self._wake.clear()
        finally:
            self.drain()
            if unsubscribe is not None:
                unsubscribe()
            self.close()
            self._running = False
            logger.info(f"[{self.worker_id}] Worker stopped after {cycles} cycle(s)")

    def stop(self) -> None:
        """Ask run_forever to return after the current cycle."""
        self._stop.set()
        self._wake.set()

    def close(self) -> None:
        """Shut down the thread pool, waiting for jobs in flight."""
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def _on_dispatch(self, event: DispatchEvent) -> None:
        logger.debug(f"[{self.worker_id}] Woken by {event.event_type} for {event.manifest_id}")
        self._wake.set()

    def status(self) -> dict[str, Any]:
        with self._lock:
            active = sorted(self._active)
        return {
            "worker_id": self.worker_id,
            "job_type": self.job_type.value,
            "running": self._running,
            "active_jobs": len(active),
            "active_job_keys": active,
            "max_concurrency": self.concurrency,
            "stats": dict(self.stats),
        }
