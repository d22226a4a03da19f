"""FinalRenderProcessor - render the finished video.

The render request carries the manifest id so the provider can report
back against it. The id is bound into the payload after insert; a payload
that was never bound (or bound to another manifest) fails permanently
instead of rendering against a stale reference.
"""

from reelchestra.errors import PermanentError
from reelchestra.processors.base import GenerationProcessor, JobContext, ProcessResult
from reelchestra.providers import VIDEO_RENDER
from reelchestra.schemas import FinalRenderPayload, Job, JobType


class FinalRenderProcessor(GenerationProcessor):
    """Concatenate composed scenes and mix in the score."""

    job_type = JobType.FINAL_RENDER

    def process(self, job: Job, context: JobContext) -> ProcessResult:
        payload: FinalRenderPayload = job.payload
        if payload.manifest_id != job.manifest_id:
            raise PermanentError(
                f"Render payload bound to manifest {payload.manifest_id!r}, "
                f"job belongs to {job.manifest_id!r}"
            )

        scene_refs = [context.upstream_ref(job_id) for job_id in payload.composition_job_ids]
        music_ref = context.upstream_ref(payload.music_job_id) if payload.music_job_id else None

        result = ProcessResult(output_ref="")
        result.output_ref = self.call(
            VIDEO_RENDER,
            {
                "manifest_id": payload.manifest_id,
                "aspect_ratio": payload.aspect_ratio,
                "resolution": payload.resolution,
                "platform": payload.platform,
                "scene_refs": scene_refs,
                "music_ref": music_ref,
            },
            context,
            result,
        )
        return result
