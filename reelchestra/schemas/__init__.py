"""
reelchestra.schemas - Schema definitions for the orchestration layer.

This module defines the core data structures for reelchestra:

Treatment -> Manifest + Job DAG -> JobOutcome

Lifecycle:
1. Treatment: Ordered scenes, visual elements, narration, audio arc
2. Manifest: One compiled production plan, status derived from its jobs
3. Job: Typed unit of work with dependencies, priority and retry policy
4. JobOutcome: What a worker reports for one claimed attempt
5. CreativeProfile: Hard constraints processors reconcile enhancements against
"""

from .retry import BackoffStrategy, RetryPolicy
from .job_types import JobType
from .payloads import (
    AssetPrepPayload,
    NarrationPayload,
    LipSyncPayload,
    MusicPayload,
    CompositionPayload,
    FinalRenderPayload,
    JobPayload,
    PAYLOAD_TYPES,
    bind_manifest,
    parse_payload,
    payload_to_dict,
)
from .job import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Job,
    JobOutcome,
    JobStats,
    JobStatus,
    OutcomeKind,
    check_transition,
)
from .manifest import (
    Manifest,
    ManifestStatus,
    ManifestSummary,
    derive_manifest_status,
)
from .constraints import (
    AudioStyleConstraints,
    ConflictResolutionResult,
    CreativeProfile,
    EffectsConstraints,
    EnforcementMode,
    EnhancementPolicy,
    HardConstraints,
    PacingConstraints,
    ProfileContext,
    StyleConstraints,
)
from .treatment import (
    AudioArc,
    OutputConstraints,
    Scene,
    Treatment,
    VisualElement,
)

__all__ = [
    # Retry
    "BackoffStrategy",
    "RetryPolicy",
    # Job types and payloads
    "JobType",
    "AssetPrepPayload",
    "NarrationPayload",
    "LipSyncPayload",
    "MusicPayload",
    "CompositionPayload",
    "FinalRenderPayload",
    "JobPayload",
    "PAYLOAD_TYPES",
    "bind_manifest",
    "parse_payload",
    "payload_to_dict",
    # Job
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "Job",
    "JobOutcome",
    "JobStats",
    "JobStatus",
    "OutcomeKind",
    "check_transition",
    # Manifest
    "Manifest",
    "ManifestStatus",
    "ManifestSummary",
    "derive_manifest_status",
    # Creative profile
    "AudioStyleConstraints",
    "ConflictResolutionResult",
    "CreativeProfile",
    "EffectsConstraints",
    "EnforcementMode",
    "EnhancementPolicy",
    "HardConstraints",
    "PacingConstraints",
    "ProfileContext",
    "StyleConstraints",
    # Treatment
    "AudioArc",
    "OutputConstraints",
    "Scene",
    "Treatment",
    "VisualElement",
]
