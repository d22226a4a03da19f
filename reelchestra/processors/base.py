"""Base protocols and interfaces for reelchestra processors.

This module defines the core abstractions:
- JobContext: What a processor sees besides the job itself
- ProcessResult: Success-only output of a processor
- Processor: Protocol for job processors (one per job type)
- GenerationProcessor: Base class for processors that call providers
- ProcessorRegistry: Dispatch mechanism for job_type -> processor
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from reelchestra.conflicts import apply_conflict_resolution
from reelchestra.errors import PermanentError
from reelchestra.providers import ProviderRegistry, invoke_provider
from reelchestra.schemas import CreativeProfile, Job, JobStatus, JobType, Manifest

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Context passed to processors during execution.

    Contains the owning manifest, its creative profile and the completed
    upstream jobs whose outputs this job consumes.
    """

    worker_id: str
    attempt: int
    manifest: Optional[Manifest] = None
    upstream: dict[str, Job] = field(default_factory=dict)
    heartbeat: Callable[[], None] = lambda: None

    @property
    def profile(self) -> Optional[CreativeProfile]:
        return self.manifest.profile if self.manifest else None

    def upstream_ref(self, job_id: str) -> str:
        """Output reference of a completed upstream job.

        Raises:
            PermanentError: If the upstream job or its output is missing
        """
        job = self.upstream.get(job_id)
        if job is None or job.status != JobStatus.COMPLETED:
            raise PermanentError(f"Upstream job '{job_id}' has not completed")
        ref = (job.result or {}).get("output_ref")
        if not ref:
            raise PermanentError(f"Upstream job '{job_id}' completed without an output_ref")
        return ref


@dataclass
class ProcessResult:
    """Result of processing one job. Success only; failures are exceptions.

    Attributes:
        output_ref: Reference to the job's final output artifact
        outputs: Raw provider output per stage
        enhancements: Effective enhancement values after conflict resolution
        conflict_warnings: Clamps applied by the conflict resolver
        dropped_enhancements: Items the conflict resolver removed
    """

    output_ref: str
    outputs: dict[str, Any] = field(default_factory=dict)
    enhancements: dict[str, Any] = field(default_factory=dict)
    conflict_warnings: list[str] = field(default_factory=list)
    dropped_enhancements: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "output_ref": self.output_ref,
            "outputs": self.outputs,
        }
        if self.enhancements:
            result["enhancements"] = self.enhancements
        if self.conflict_warnings:
            result["conflict_warnings"] = list(self.conflict_warnings)
        if self.dropped_enhancements:
            result["dropped_enhancements"] = list(self.dropped_enhancements)
        return result


@runtime_checkable
class Processor(Protocol):
    """Protocol for job processors.

    Each processor handles exactly one job type.
    """

    job_type: JobType

    def process(self, job: Job, context: JobContext) -> ProcessResult:
        """Execute the job.

        Args:
            job: The claimed job
            context: Execution context

        Returns:
            ProcessResult on success

        Raises:
            TransientError: Failure that may succeed on retry
            PermanentError: Failure that will not succeed on retry
        """
        ...


class GenerationProcessor:
    """Base class for processors that run one or more provider stages.

    Subclasses build an enhancement proposal, reconcile it with the
    manifest's creative profile, then call providers in sequence.
    """

    job_type: JobType

    def __init__(self, providers: ProviderRegistry):
        self.providers = providers

    def resolve(
        self, proposal: dict[str, Any], job: Job, context: JobContext, result: ProcessResult
    ) -> dict[str, Any]:
        """Clamp a proposal to the creative profile and record the outcome."""
        effective, resolution = apply_conflict_resolution(
            proposal, context.profile, context=f"{job.manifest_id}/{job.job_id}"
        )
        result.enhancements.update(effective)
        result.conflict_warnings.extend(resolution.warnings)
        result.dropped_enhancements.extend(resolution.dropped_enhancements)
        return effective

    def call(
        self,
        operation: str,
        input: dict[str, Any],
        context: JobContext,
        result: ProcessResult,
    ) -> str:
        """Run one provider stage and return its output reference."""
        context.heartbeat()
        output = invoke_provider(self.providers, operation, input)
        result.outputs[operation] = output
        ref = output.get("output_ref")
        if not ref:
            raise PermanentError(f"{operation} returned no output_ref")
        return ref


class ProcessorRegistry:
    """Registry for dispatching jobs to processors by job_type."""

    def __init__(self) -> None:
        self._processors: dict[JobType, Processor] = {}

    def register(self, processor: Processor) -> None:
        """Register a processor under its job type."""
        self._processors[processor.job_type] = processor

    def get(self, job_type: JobType) -> Processor:
        """Get processor for a job type.

        Raises:
            KeyError: If job_type not registered
        """
        if job_type not in self._processors:
            registered = [t.value for t in self._processors]
            raise KeyError(f"Unknown job_type: {job_type.value}. Registered: {registered}")
        return self._processors[job_type]

    def list_types(self) -> list[JobType]:
        """List registered job types."""
        return list(self._processors.keys())

    @classmethod
    def create_default(cls, providers: Optional[ProviderRegistry] = None) -> "ProcessorRegistry":
        """Registry with the built-in processor for every job type.

        Args:
            providers: Provider registry (NoOp providers if not given)
        """
        from reelchestra.processors.assets import AssetPrepProcessor
        from reelchestra.processors.composition import CompositionProcessor
        from reelchestra.processors.lip_sync import LipSyncProcessor
        from reelchestra.processors.music import MusicProcessor
        from reelchestra.processors.narration import NarrationProcessor
        from reelchestra.processors.render import FinalRenderProcessor

        providers = providers or ProviderRegistry.with_noop()
        registry = cls()
        for processor_cls in (
            AssetPrepProcessor,
            NarrationProcessor,
            LipSyncProcessor,
            MusicProcessor,
            CompositionProcessor,
            FinalRenderProcessor,
        ):
            registry.register(processor_cls(providers))
        return registry
