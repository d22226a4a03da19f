"""
JobType enum defining the kinds of work a manifest decomposes into.

Job types are grouped by their position in the DAG:
- content: asset_prep, narration_synthesis, music_generation (no upstream jobs
  except each other)
- assembly: lip_sync, composition (per scene, consume content outputs)
- render: final_render (one per manifest, consumes every composition)
"""

from enum import Enum

from .retry import BackoffStrategy, RetryPolicy


class JobType(str, Enum):
    """
    Enumeration of all job types.

    Each job type is served by exactly one kind of worker runtime.
    """
    ASSET_PREP = "asset_prep"
    NARRATION_SYNTHESIS = "narration_synthesis"
    LIP_SYNC = "lip_sync"
    MUSIC_GENERATION = "music_generation"
    COMPOSITION = "composition"
    FINAL_RENDER = "final_render"

    @property
    def stage(self) -> str:
        """DAG stage of this job type: content, assembly or render."""
        if self in (JobType.LIP_SYNC, JobType.COMPOSITION):
            return "assembly"
        if self == JobType.FINAL_RENDER:
            return "render"
        return "content"

    @property
    def default_retry_policy(self) -> RetryPolicy:
        """Retry policy used when config does not override it."""
        max_retries, base_delay_s = _DEFAULT_RETRY[self]
        return RetryPolicy(
            max_retries=max_retries,
            backoff=BackoffStrategy.EXPONENTIAL,
            base_delay_s=base_delay_s,
        )

    @classmethod
    def from_string(cls, value: str) -> "JobType":
        """Parse a JobType from its string value."""
        for job_type in cls:
            if job_type.value == value:
                return job_type
        raise ValueError(f"Unknown job type: {value}")


# (max_retries, base_delay_s)
_DEFAULT_RETRY = {
    JobType.ASSET_PREP: (2, 60.0),
    JobType.NARRATION_SYNTHESIS: (3, 30.0),
    JobType.LIP_SYNC: (2, 90.0),
    JobType.MUSIC_GENERATION: (2, 60.0),
    JobType.COMPOSITION: (2, 60.0),
    JobType.FINAL_RENDER: (3, 120.0),
}
