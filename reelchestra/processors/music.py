"""MusicProcessor - generate the background score for the whole video."""

from reelchestra.processors.base import GenerationProcessor, JobContext, ProcessResult
from reelchestra.providers import MUSIC_GENERATION
from reelchestra.schemas import Job, JobType, MusicPayload


class MusicProcessor(GenerationProcessor):
    """Generate one instrumental track following the audio arc."""

    job_type = JobType.MUSIC_GENERATION

    def process(self, job: Job, context: JobContext) -> ProcessResult:
        payload: MusicPayload = job.payload

        result = ProcessResult(output_ref="")
        effective = self.resolve(
            {"music_intensity": 0.7, "audio_tags": ["instrumental", payload.mood]},
            job,
            context,
            result,
        )

        result.output_ref = self.call(
            MUSIC_GENERATION,
            {
                "mood": payload.mood,
                "structure": payload.structure,
                "duration_seconds": payload.duration_seconds,
                "intensity": effective["music_intensity"],
                "audio_tags": effective["audio_tags"],
            },
            context,
            result,
        )
        return result
