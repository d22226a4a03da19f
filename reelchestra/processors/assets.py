"""AssetPrepProcessor - synthesize and enhance one visual element.

Stages:
1. image_synthesis: prompt + resolution + palette/style -> image
2. image_enhance: effects over the synthesized image (skipped when the
   profile leaves no effect to apply)

Low-quality elements get a stronger enhancement proposal; the conflict
resolver decides how much of it survives.
"""

import logging

from reelchestra.processors.base import GenerationProcessor, JobContext, ProcessResult
from reelchestra.providers import IMAGE_ENHANCE, IMAGE_SYNTHESIS
from reelchestra.schemas import AssetPrepPayload, Job, JobType

logger = logging.getLogger(__name__)

DEFAULT_EFFECTS = ("sharpen", "color_grade")
LOW_QUALITY_EFFECTS = ("sharpen", "denoise", "upscale", "color_grade")


class AssetPrepProcessor(GenerationProcessor):
    """Prepare one visual element of a scene."""

    job_type = JobType.ASSET_PREP

    def process(self, job: Job, context: JobContext) -> ProcessResult:
        payload: AssetPrepPayload = job.payload
        low_quality = payload.quality is not None and payload.quality < 0.5

        proposal = {
            "effects": list(LOW_QUALITY_EFFECTS if low_quality else DEFAULT_EFFECTS),
            "effect_intensity": 0.8 if low_quality else 0.4,
            "enhancement_complexity": round(1.0 - (payload.quality or 0.7), 2),
            "style_tags": ["cinematic", "high_detail"],
        }
        if payload.style_hints.get("color_palette"):
            proposal["color_palette"] = list(payload.style_hints["color_palette"])
        if payload.style_hints.get("visual_style"):
            proposal["visual_style"] = payload.style_hints["visual_style"]

        result = ProcessResult(output_ref="")
        effective = self.resolve(proposal, job, context, result)

        image_ref = self.call(
            IMAGE_SYNTHESIS,
            {
                "prompt": payload.prompt,
                "resolution": payload.resolution,
                "color_palette": effective.get("color_palette"),
                "visual_style": effective.get("visual_style"),
                "style_tags": effective.get("style_tags"),
            },
            context,
            result,
        )

        if effective.get("effects"):
            image_ref = self.call(
                IMAGE_ENHANCE,
                {
                    "source_ref": image_ref,
                    "effects": effective["effects"],
                    "intensity": effective.get("effect_intensity"),
                    "complexity": effective.get("enhancement_complexity"),
                },
                context,
                result,
            )
        else:
            logger.debug(f"{job.job_id}: no effects left after conflict resolution, skipping enhance")

        result.output_ref = image_ref
        return result
