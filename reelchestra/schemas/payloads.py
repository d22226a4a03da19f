"""
Job payload variants - one dataclass per job type.

Payloads are a tagged union keyed by JobType. They are parsed and checked
once, at the ledger boundary, so processors receive a typed payload instead
of re-validating loose dictionaries.

Payloads never embed the manifest id as a substitute for the job's own
manifest_id field. The one variant that forwards it to a provider
(FinalRenderPayload) declares requires_manifest_id and is bound by an explicit
post-insert patch.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Optional, Union

from reelchestra.errors import PayloadValidationError

from .job_types import JobType


@dataclass(frozen=True)
class AssetPrepPayload:
    """Generate or prepare one visual element of a scene."""
    scene_id: str
    element_id: str
    description: str
    prompt: str
    resolution: str
    quality: Optional[float] = None
    style_hints: dict[str, Any] = field(default_factory=dict)

    job_type = JobType.ASSET_PREP
    requires_manifest_id = False


@dataclass(frozen=True)
class NarrationPayload:
    """Synthesize the narration of a scene."""
    scene_id: str
    text: str
    language: str = "en"
    tone: Optional[str] = None
    audio_cues: tuple[str, ...] = ()

    job_type = JobType.NARRATION_SYNTHESIS
    requires_manifest_id = False


@dataclass(frozen=True)
class LipSyncPayload:
    """Compose a presenter's lip movement over the scene narration."""
    scene_id: str
    narration_job_id: str
    asset_job_ids: tuple[str, ...] = ()

    job_type = JobType.LIP_SYNC
    requires_manifest_id = False


@dataclass(frozen=True)
class MusicPayload:
    """Generate one background music track for the whole production."""
    mood: str
    structure: str
    duration_seconds: float

    job_type = JobType.MUSIC_GENERATION
    requires_manifest_id = False


@dataclass(frozen=True)
class CompositionPayload:
    """Assemble a scene from its generated content."""
    scene_id: str
    scene_index: int
    start_at_s: float
    duration_s: float
    input_job_ids: tuple[str, ...] = ()
    transition: Optional[str] = None

    job_type = JobType.COMPOSITION
    requires_manifest_id = False


@dataclass(frozen=True)
class FinalRenderPayload:
    """Render the final video from every composed scene."""
    aspect_ratio: str
    platform: str
    resolution: str
    composition_job_ids: tuple[str, ...] = ()
    music_job_id: Optional[str] = None
    manifest_id: Optional[str] = None

    job_type = JobType.FINAL_RENDER
    requires_manifest_id = True


JobPayload = Union[
    AssetPrepPayload,
    NarrationPayload,
    LipSyncPayload,
    MusicPayload,
    CompositionPayload,
    FinalRenderPayload,
]

PAYLOAD_TYPES: dict[JobType, type] = {
    JobType.ASSET_PREP: AssetPrepPayload,
    JobType.NARRATION_SYNTHESIS: NarrationPayload,
    JobType.LIP_SYNC: LipSyncPayload,
    JobType.MUSIC_GENERATION: MusicPayload,
    JobType.COMPOSITION: CompositionPayload,
    JobType.FINAL_RENDER: FinalRenderPayload,
}

# Fields stored as tuples but serialized as JSON lists
_TUPLE_FIELDS = {"audio_cues", "asset_job_ids", "input_job_ids", "composition_job_ids"}


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    """Serialize a payload to a JSON-compatible dict tagged with its kind."""
    result: dict[str, Any] = {"kind": payload.job_type.value}
    for name in payload.__dataclass_fields__:
        value = getattr(payload, name)
        if name in _TUPLE_FIELDS:
            value = list(value)
        elif isinstance(value, dict):
            value = dict(value)
        result[name] = value
    return result


def bind_manifest(payload: JobPayload, manifest_id: str) -> JobPayload:
    """Return a copy of the payload bound to its manifest id."""
    if not payload.requires_manifest_id:
        return payload
    return replace(payload, manifest_id=manifest_id)


def parse_payload(job_type: JobType, data: Any) -> JobPayload:
    """
    Parse a payload for a job type.

    Accepts an already-typed payload (checked against the job type) or a dict
    as produced by payload_to_dict.

    Raises:
        PayloadValidationError: If the payload does not match the job type
    """
    expected = PAYLOAD_TYPES[job_type]

    if isinstance(data, expected):
        return data
    if not isinstance(data, dict):
        raise PayloadValidationError(
            f"Payload for {job_type.value} must be {expected.__name__} or dict, "
            f"got {type(data).__name__}"
        )

    kind = data.get("kind", job_type.value)
    if kind != job_type.value:
        raise PayloadValidationError(
            f"Payload kind '{kind}' does not match job type '{job_type.value}'"
        )

    known = expected.__dataclass_fields__
    unknown = sorted(k for k in data if k != "kind" and k not in known)
    if unknown:
        raise PayloadValidationError(
            f"Unknown fields for {job_type.value} payload: {', '.join(unknown)}"
        )

    kwargs = {}
    for name, value in data.items():
        if name == "kind":
            continue
        if name in _TUPLE_FIELDS and value is not None:
            value = tuple(value)
        kwargs[name] = value

    try:
        return expected(**kwargs)
    except TypeError as e:
        raise PayloadValidationError(f"Invalid {job_type.value} payload: {e}") from e
