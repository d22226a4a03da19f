"""NarrationProcessor - synthesize the narration of one scene."""

from reelchestra.processors.base import GenerationProcessor, JobContext, ProcessResult
from reelchestra.providers import SPEECH_SYNTHESIS
from reelchestra.schemas import Job, JobType, NarrationPayload


class NarrationProcessor(GenerationProcessor):
    """Turn scene narration text into speech.

    Audio cues become audio tags on the synthesis request.
    """

    job_type = JobType.NARRATION_SYNTHESIS

    def process(self, job: Job, context: JobContext) -> ProcessResult:
        payload: NarrationPayload = job.payload
        proposal = {
            "voice_style": "narrator",
            "tone": payload.tone or "neutral",
            "speed": 1.0,
            "audio_tags": [cue.lower().replace(" ", "_") for cue in payload.audio_cues],
        }

        result = ProcessResult(output_ref="")
        effective = self.resolve(proposal, job, context, result)

        result.output_ref = self.call(
            SPEECH_SYNTHESIS,
            {
                "text": payload.text,
                "language": payload.language,
                "voice_style": effective["voice_style"],
                "tone": effective["tone"],
                "speed": effective["speed"],
                "audio_tags": effective["audio_tags"],
            },
            context,
            result,
        )
        return result
