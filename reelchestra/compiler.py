"""
Compiler - Transform a Treatment + OutputConstraints into a Manifest and job DAG.

The compiler is a pure function of its inputs (compile) plus a thin
persistence step (submit):

compile:
- Validates the treatment. Hard errors abort with ValidationError, soft
  problems become manifest warnings.
- Repairs scene timings that do not add up to the requested duration.
- Emits one job per unit of work with a deterministic id, wires the
  dependencies and assigns priorities.

submit:
- Writes the manifest and its jobs in one atomic ledger insert.
- Binds the manifest id into payloads that need it (post-insert patch).
- Publishes a dispatch event once the write has committed.

Job DAG per scene:

    asset_prep:<scene>:<element> --+
                                   +--> lip_sync:<scene> --+
    narration_synthesis:<scene> ---+                       +--> composition:<scene>
    (without lip sync, assets and narration feed composition directly)

    composition:* + music_generation:score --> final_render:main
"""

import logging
import math
import re
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from reelchestra.errors import PlaceholderResolutionError, ValidationError
from reelchestra.ledger import JobLedger
from reelchestra.notifier import DispatchEvent, DispatchNotifier
from reelchestra.schemas import (
    AssetPrepPayload,
    CompositionPayload,
    FinalRenderPayload,
    Job,
    JobType,
    LipSyncPayload,
    Manifest,
    MusicPayload,
    NarrationPayload,
    OutputConstraints,
    RetryPolicy,
    Scene,
    Treatment,
    bind_manifest,
)

logger = logging.getLogger(__name__)


# Priority = (MAX_DEPTH - depth) * PRIORITY_TIER + (scene_count - scene_index)
MAX_DEPTH = 8
PRIORITY_TIER = 1000

LOW_QUALITY_THRESHOLD = 0.5
DURATION_TOLERANCE_S = 0.1
DEFAULT_LANGUAGE = "en"

ASPECT_RATIO_PATTERN = re.compile(r"^([1-9]\d*):([1-9]\d*)$")

RESOLUTIONS = {
    "16:9": "1920x1080",
    "9:16": "1080x1920",
    "1:1": "1080x1080",
    "4:3": "1440x1080",
    "3:4": "1080x1440",
    "4:5": "1080x1350",
}

KNOWN_PLATFORMS = frozenset({
    "youtube",
    "youtube_shorts",
    "tiktok",
    "instagram",
    "instagram_reels",
    "facebook",
    "linkedin",
    "twitter",
    "x",
    "vimeo",
    "web",
})

MUSIC_JOB_ID = "music_generation:score"
FINAL_RENDER_JOB_ID = "final_render:main"


def resolution_for(aspect_ratio: str) -> str:
    """
    Output resolution for an aspect ratio.

    Ratios outside the table keep a 1080px short edge.
    """
    if aspect_ratio in RESOLUTIONS:
        return RESOLUTIONS[aspect_ratio]
    match = ASPECT_RATIO_PATTERN.match(aspect_ratio)
    if not match:
        raise ValueError(f"Invalid aspect ratio: {aspect_ratio}")
    width, height = int(match.group(1)), int(match.group(2))
    if width >= height:
        return f"{round(1080 * width / height / 2) * 2}x1080"
    return f"1080x{round(1080 * height / width / 2) * 2}"


def job_id_for(job_type: JobType, *parts: str) -> str:
    """Deterministic job id: "<job_type>:<part>:<part>..."."""
    return ":".join([job_type.value, *parts])


@dataclass
class CompiledBlueprint:
    """Output of compile(): a manifest and its jobs, not yet persisted."""
    manifest: Manifest
    jobs: list[Job]
    warnings: list[str] = field(default_factory=list)

    def job(self, job_id: str) -> Job:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        raise KeyError(job_id)


@dataclass(frozen=True)
class CompileResult:
    """Returned by submit() once the manifest is persisted."""
    manifest_id: str
    job_count: int
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest_id": self.manifest_id,
            "job_count": self.job_count,
            "warnings": list(self.warnings),
        }


def _validate(treatment: Treatment, constraints: OutputConstraints) -> None:
    """
    Collect every hard error in the treatment.

    Raises:
        ValidationError: If any hard error was found
    """
    errors: list[str] = []

    if not treatment.scenes:
        errors.append("Treatment has no scenes")
    if not math.isfinite(constraints.duration_seconds) or constraints.duration_seconds <= 0:
        errors.append(f"Total duration must be positive, got {constraints.duration_seconds}")
    if not ASPECT_RATIO_PATTERN.match(constraints.aspect_ratio):
        hint = "expected W:H"
        if constraints.aspect_ratio.isdigit():
            # YAML reads an unquoted 16:9 as the sexagesimal integer 969
            hint += "; quote the aspect ratio in YAML"
        errors.append(f"Invalid aspect ratio format: '{constraints.aspect_ratio}' ({hint})")

    seen_scenes: set[str] = set()
    for scene in treatment.scenes:
        if scene.scene_id in seen_scenes:
            errors.append(f"Duplicate scene id: '{scene.scene_id}'")
        seen_scenes.add(scene.scene_id)

        if not math.isfinite(scene.duration_seconds) or scene.duration_seconds <= 0:
            errors.append(
                f"Scene '{scene.scene_id}': duration must be positive, got {scene.duration_seconds}"
            )
        if not scene.has_narration and not scene.visual_elements:
            errors.append(f"Scene '{scene.scene_id}': needs narration or at least one visual element")

        seen_elements: set[str] = set()
        for element in scene.visual_elements:
            if element.element_id in seen_elements:
                errors.append(
                    f"Scene '{scene.scene_id}': duplicate element id '{element.element_id}'"
                )
            seen_elements.add(element.element_id)

    if errors:
        raise ValidationError(f"Treatment failed validation with {len(errors)} error(s)", errors)


def _scene_timings(
    scenes: tuple[Scene, ...], total_s: float, warnings: list[str]
) -> list[tuple[float, float]]:
    """
    (start_at_s, duration_s) per scene.

    Durations that do not add up to the total are rescaled proportionally;
    the last scene absorbs the rounding remainder.
    """
    durations = [s.duration_seconds for s in scenes]
    planned = sum(durations)

    if abs(planned - total_s) > DURATION_TOLERANCE_S:
        warnings.append(
            f"Scene durations sum to {planned:g}s but total duration is {total_s:g}s; "
            f"scene timings were rescaled"
        )
        factor = total_s / planned
        durations = [round(d * factor, 3) for d in durations[:-1]]
        durations.append(round(total_s - sum(durations), 3))

    timings = []
    start = 0.0
    for duration in durations:
        timings.append((round(start, 3), duration))
        start += duration
    return timings


def _check_acyclic(jobs: list[Job]) -> None:
    """
    Topologically sort the DAG.

    Raises:
        ValidationError: On a dangling dependency or a cycle
    """
    ids = {j.job_id for j in jobs}
    errors = [
        f"Job '{j.job_id}' depends on unknown job '{dep}'"
        for j in jobs
        for dep in j.depends_on
        if dep not in ids
    ]
    if errors:
        raise ValidationError("Job DAG has dangling dependencies", errors)

    in_degree = {j.job_id: len(set(j.depends_on)) for j in jobs}
    dependents: dict[str, list[str]] = {}
    for job in jobs:
        for dep in set(job.depends_on):
            dependents.setdefault(dep, []).append(job.job_id)

    queue = deque(job_id for job_id, degree in in_degree.items() if degree == 0)
    visited = 0
    while queue:
        current = queue.popleft()
        visited += 1
        for child in dependents.get(current, []):
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    if visited != len(jobs):
        cyclic = sorted(job_id for job_id, degree in in_degree.items() if degree > 0)
        raise ValidationError("Job DAG contains a cycle", [f"Cycle through: {', '.join(cyclic)}"])


def _depths(jobs: list[Job], root_id: str) -> dict[str, int]:
    """Shortest edge distance from every job to the root (BFS over depends_on)."""
    by_id = {j.job_id: j for j in jobs}
    depths = {root_id: 0}
    queue = deque([root_id])
    while queue:
        current = queue.popleft()
        for dep in by_id[current].depends_on:
            if dep not in depths:
                depths[dep] = depths[current] + 1
                queue.append(dep)
    return depths


class BlueprintCompiler:
    """
    Compiles treatments into manifests and persists them.

    Args:
        ledger: Ledger the manifest and jobs are written to
        notifier: Dispatch notifier published to after each commit
        retry_policies: Per job type overrides of the default retry policy
    """

    def __init__(
        self,
        ledger: JobLedger,
        notifier: Optional[DispatchNotifier] = None,
        retry_policies: Optional[dict[JobType, RetryPolicy]] = None,
    ):
        self.ledger = ledger
        self.notifier = notifier
        self.retry_policies = dict(retry_policies or {})

    def retry_policy_for(self, job_type: JobType) -> RetryPolicy:
        return self.retry_policies.get(job_type, job_type.default_retry_policy)

    def compile(
        self,
        treatment: Treatment,
        constraints: OutputConstraints,
        user_id: str,
    ) -> CompiledBlueprint:
        """
        Compile a treatment into an unpersisted manifest and job DAG.

        Raises:
            ValidationError: Hard validation failure
        """
        _validate(treatment, constraints)
        warnings: list[str] = []

        if treatment.audio_arc is None:
            warnings.append("No audio arc provided; no background music will be generated")
        language = constraints.language
        if not language:
            language = DEFAULT_LANGUAGE
            warnings.append(f"No language specified; defaulting to '{DEFAULT_LANGUAGE}'")
        if constraints.platform.lower() not in KNOWN_PLATFORMS:
            warnings.append(f"Unknown platform '{constraints.platform}'; using generic output settings")

        for scene in treatment.scenes:
            if not scene.visual_elements:
                warnings.append(f"Scene '{scene.scene_id}' has no visual elements")
            for element in scene.visual_elements:
                if element.quality is not None and element.quality < LOW_QUALITY_THRESHOLD:
                    warnings.append(
                        f"Scene '{scene.scene_id}': element '{element.element_id}' has low "
                        f"quality ({element.quality:g} < {LOW_QUALITY_THRESHOLD})"
                    )

        timings = _scene_timings(treatment.scenes, constraints.duration_seconds, warnings)
        resolution = resolution_for(constraints.aspect_ratio)
        style_hints = self._style_hints(treatment)

        jobs: list[Job] = []
        scene_index_of: dict[str, int] = {}
        composition_ids: list[str] = []

        def add(job_id: str, payload, depends_on=(), scene_index: Optional[int] = None) -> str:
            jobs.append(Job(
                job_id=job_id,
                job_type=payload.job_type,
                payload=payload,
                depends_on=tuple(depends_on),
                retry_policy=self.retry_policy_for(payload.job_type),
            ))
            if scene_index is not None:
                scene_index_of[job_id] = scene_index
            return job_id

        for index, (scene, (start_at, duration)) in enumerate(zip(treatment.scenes, timings)):
            asset_ids = [
                add(
                    job_id_for(JobType.ASSET_PREP, scene.scene_id, element.element_id),
                    AssetPrepPayload(
                        scene_id=scene.scene_id,
                        element_id=element.element_id,
                        description=element.description,
                        prompt=self._asset_prompt(element.description, constraints),
                        resolution=resolution,
                        quality=element.quality,
                        style_hints=style_hints,
                    ),
                    scene_index=index,
                )
                for element in scene.visual_elements
            ]

            narration_id = None
            if scene.has_narration:
                narration_id = add(
                    job_id_for(JobType.NARRATION_SYNTHESIS, scene.scene_id),
                    NarrationPayload(
                        scene_id=scene.scene_id,
                        text=scene.narration,
                        language=language,
                        tone=constraints.tone,
                        audio_cues=scene.audio_cues,
                    ),
                    scene_index=index,
                )

            if scene.presenter and narration_id:
                lip_sync_id = add(
                    job_id_for(JobType.LIP_SYNC, scene.scene_id),
                    LipSyncPayload(
                        scene_id=scene.scene_id,
                        narration_job_id=narration_id,
                        asset_job_ids=tuple(asset_ids),
                    ),
                    depends_on=[narration_id, *asset_ids],
                    scene_index=index,
                )
                composition_inputs = [lip_sync_id]
            else:
                composition_inputs = [*asset_ids, *([narration_id] if narration_id else [])]

            composition_ids.append(add(
                job_id_for(JobType.COMPOSITION, scene.scene_id),
                CompositionPayload(
                    scene_id=scene.scene_id,
                    scene_index=index,
                    start_at_s=start_at,
                    duration_s=duration,
                    input_job_ids=tuple(composition_inputs),
                    transition=scene.transition,
                ),
                depends_on=composition_inputs,
                scene_index=index,
            ))

        music_id = None
        if treatment.audio_arc is not None:
            music_id = add(
                MUSIC_JOB_ID,
                MusicPayload(
                    mood=treatment.audio_arc.mood,
                    structure=treatment.audio_arc.structure,
                    duration_seconds=constraints.duration_seconds,
                ),
            )

        add(
            FINAL_RENDER_JOB_ID,
            FinalRenderPayload(
                aspect_ratio=constraints.aspect_ratio,
                platform=constraints.platform,
                resolution=resolution,
                composition_job_ids=tuple(composition_ids),
                music_job_id=music_id,
            ),
            depends_on=[*composition_ids, *([music_id] if music_id else [])],
        )

        _check_acyclic(jobs)
        jobs = self._assign_priorities(jobs, scene_index_of, len(treatment.scenes))

        manifest = Manifest(
            user_id=user_id,
            payload={
                "title": treatment.title,
                "scenes": [
                    {
                        "scene_id": scene.scene_id,
                        "start_at_s": start_at,
                        "duration_s": duration,
                        "has_narration": scene.has_narration,
                        "visual_elements": len(scene.visual_elements),
                        "presenter": scene.presenter,
                    }
                    for scene, (start_at, duration) in zip(treatment.scenes, timings)
                ],
                "output": {**constraints.to_dict(), "language": language, "resolution": resolution},
                "audio_arc": treatment.audio_arc.to_dict() if treatment.audio_arc else None,
            },
            profile=treatment.profile,
            warnings=list(warnings),
        )

        logger.debug(
            f"Compiled '{treatment.title}': {len(treatment.scenes)} scenes, "
            f"{len(jobs)} jobs, {len(warnings)} warnings"
        )
        return CompiledBlueprint(manifest=manifest, jobs=jobs, warnings=warnings)

    def submit(
        self,
        treatment: Treatment,
        constraints: OutputConstraints,
        user_id: str,
        manifest_id: Optional[str] = None,
    ) -> CompileResult:
        """
        Compile and persist a treatment, then notify workers.

        Args:
            treatment: The creative treatment
            constraints: Output constraints
            user_id: Owning user
            manifest_id: Optional caller-chosen id; a ULID is assigned otherwise

        Returns:
            CompileResult with the manifest id, job count and warnings

        Raises:
            ValidationError: Treatment failed validation (nothing persisted)
            PersistenceError: Ledger write failed (nothing persisted)
        """
        blueprint = self.compile(treatment, constraints, user_id)
        if manifest_id:
            blueprint.manifest.manifest_id = manifest_id

        manifest_id = self.ledger.create_manifest_with_jobs(blueprint.manifest, blueprint.jobs)
        warnings = list(blueprint.warnings)
        warnings.extend(self._bind_manifest_ids(manifest_id, blueprint.jobs))

        logger.info(
            f"Submitted manifest {manifest_id} for user {user_id}: "
            f"{len(blueprint.jobs)} jobs, {len(warnings)} warnings"
        )

        if self.notifier is not None:
            try:
                self.notifier.publish(DispatchEvent(
                    manifest_id=manifest_id,
                    job_count=len(blueprint.jobs),
                    user_id=user_id,
                ))
            except Exception as e:
                logger.warning(f"Dispatch notification failed for manifest {manifest_id}: {e}")

        return CompileResult(
            manifest_id=manifest_id,
            job_count=len(blueprint.jobs),
            warnings=tuple(warnings),
        )

    def _bind_manifest_ids(self, manifest_id: str, jobs: list[Job]) -> list[str]:
        """
        Post-insert patch of payloads that carry the manifest id.

        Returns:
            Warnings for jobs whose patch failed
        """
        warnings = []
        for job in jobs:
            if not job.payload.requires_manifest_id:
                continue
            try:
                self.ledger.patch_job_payload(
                    manifest_id, job.job_id, bind_manifest(job.payload, manifest_id)
                )
            except Exception as e:
                error = PlaceholderResolutionError(job.job_id, str(e))
                logger.error(f"Manifest {manifest_id}: {error}")
                warnings.append(str(error))
                try:
                    self.ledger.add_job_warning(manifest_id, job.job_id, str(error))
                except Exception as warn_error:
                    logger.error(
                        f"Could not record warning on {manifest_id}/{job.job_id}: {warn_error}"
                    )
        return warnings

    @staticmethod
    def _assign_priorities(
        jobs: list[Job], scene_index_of: dict[str, int], scene_count: int
    ) -> list[Job]:
        depths = _depths(jobs, FINAL_RENDER_JOB_ID)
        prioritized = []
        for job in jobs:
            tier = (MAX_DEPTH - depths[job.job_id]) * PRIORITY_TIER
            scene_index = scene_index_of.get(job.job_id)
            scene_rank = scene_count - scene_index if scene_index is not None else 0
            prioritized.append(replace(job, priority=tier + scene_rank))
        return prioritized

    @staticmethod
    def _asset_prompt(description: str, constraints: OutputConstraints) -> str:
        parts = [description or "professional video content"]
        if constraints.tone:
            parts.append(f"{constraints.tone} tone")
        parts.append(f"{constraints.aspect_ratio} aspect ratio, high resolution")
        return ", ".join(parts)

    @staticmethod
    def _style_hints(treatment: Treatment) -> dict[str, Any]:
        if treatment.profile is None or treatment.profile.constraints.style is None:
            return {}
        style = treatment.profile.constraints.style
        hints: dict[str, Any] = {}
        if style.palette:
            hints["color_palette"] = list(style.palette)
        if style.visual_style:
            hints["visual_style"] = style.visual_style
        return hints
