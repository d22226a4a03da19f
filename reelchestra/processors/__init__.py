"""Reelchestra processors package.

Provides one processor per job type:
- AssetPrepProcessor: image synthesis + enhancement for a visual element
- NarrationProcessor: speech synthesis for a scene's narration
- LipSyncProcessor: presenter lip sync over the narration
- MusicProcessor: background score
- CompositionProcessor: per-scene assembly
- FinalRenderProcessor: final video render

All processors implement the Processor protocol and are registered
with a ProcessorRegistry for dispatch by job_type.
"""

from reelchestra.processors.base import (
    GenerationProcessor,
    JobContext,
    Processor,
    ProcessorRegistry,
    ProcessResult,
)
from reelchestra.processors.assets import AssetPrepProcessor
from reelchestra.processors.composition import CompositionProcessor
from reelchestra.processors.lip_sync import LipSyncProcessor
from reelchestra.processors.music import MusicProcessor
from reelchestra.processors.narration import NarrationProcessor
from reelchestra.processors.render import FinalRenderProcessor

__all__ = [
    "AssetPrepProcessor",
    "CompositionProcessor",
    "FinalRenderProcessor",
    "GenerationProcessor",
    "JobContext",
    "LipSyncProcessor",
    "MusicProcessor",
    "NarrationProcessor",
    "Processor",
    "ProcessorRegistry",
    "ProcessResult",
]
