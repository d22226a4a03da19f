"""CompositionProcessor - assemble one scene from its generated content."""

from reelchestra.processors.base import GenerationProcessor, JobContext, ProcessResult
from reelchestra.providers import VIDEO_COMPOSITION
from reelchestra.schemas import CompositionPayload, Job, JobType


class CompositionProcessor(GenerationProcessor):
    """Lay out a scene's assets, narration or lip-sync clip on its timeline."""

    job_type = JobType.COMPOSITION

    def process(self, job: Job, context: JobContext) -> ProcessResult:
        payload: CompositionPayload = job.payload
        inputs = {job_id: context.upstream_ref(job_id) for job_id in payload.input_job_ids}

        result = ProcessResult(output_ref="")
        effective = self.resolve(
            {
                "transition_style": payload.transition or "cut",
                "speed": 1.0,
                "effects": ["ken_burns"],
                "effect_intensity": 0.5,
            },
            job,
            context,
            result,
        )

        result.output_ref = self.call(
            VIDEO_COMPOSITION,
            {
                "scene_id": payload.scene_id,
                "scene_index": payload.scene_index,
                "start_at_s": payload.start_at_s,
                "duration_s": payload.duration_s,
                "inputs": inputs,
                "transition_style": effective["transition_style"],
                "speed": effective["speed"],
                "effects": effective["effects"],
                "effect_intensity": effective["effect_intensity"],
            },
            context,
            result,
        )
        return result
