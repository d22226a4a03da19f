"""LipSyncProcessor - animate a presenter over the scene narration."""

from reelchestra.processors.base import GenerationProcessor, JobContext, ProcessResult
from reelchestra.providers import LIP_SYNC
from reelchestra.schemas import Job, JobType, LipSyncPayload


class LipSyncProcessor(GenerationProcessor):
    """Compose lip movement from the narration audio and scene imagery."""

    job_type = JobType.LIP_SYNC

    def process(self, job: Job, context: JobContext) -> ProcessResult:
        payload: LipSyncPayload = job.payload
        audio_ref = context.upstream_ref(payload.narration_job_id)
        image_refs = [context.upstream_ref(job_id) for job_id in payload.asset_job_ids]

        result = ProcessResult(output_ref="")
        effective = self.resolve({"visual_style": "presenter"}, job, context, result)

        result.output_ref = self.call(
            LIP_SYNC,
            {
                "scene_id": payload.scene_id,
                "audio_ref": audio_ref,
                "image_refs": image_refs,
                "visual_style": effective.get("visual_style"),
            },
            context,
            result,
        )
        return result
