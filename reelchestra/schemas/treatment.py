"""
Treatment schemas - the structured creative plan a manifest is compiled from.

These mirror the YAML/JSON a user submits. from_dict only checks shape
(required keys, types it cannot coerce); content rules such as positive
durations and unique ids are the compiler's job so that every problem is
reported together.
"""

from dataclasses import dataclass
from typing import Any, Optional

from reelchestra.errors import ValidationError

from .constraints import CreativeProfile


def _require(data: Any, key: str, where: str) -> Any:
    if not isinstance(data, dict):
        raise ValidationError(f"{where} must be a mapping, got {type(data).__name__}")
    if key not in data or data[key] is None:
        raise ValidationError(f"{where}: missing required field '{key}'")
    return data[key]


def _float(value: Any, where: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{where}: expected a number, got {value!r}") from e


@dataclass(frozen=True)
class VisualElement:
    """One visual element a scene needs (image, b-roll, chart, ...)."""
    element_id: str
    description: str
    kind: str = "image"
    quality: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "element_id": self.element_id,
            "description": self.description,
            "kind": self.kind,
        }
        if self.quality is not None:
            result["quality"] = self.quality
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], where: str = "visual_element") -> "VisualElement":
        quality = data.get("quality") if isinstance(data, dict) else None
        return cls(
            element_id=str(_require(data, "element_id", where)),
            description=str(data.get("description", "")),
            kind=str(data.get("kind", "image")),
            quality=_float(quality, f"{where}.quality") if quality is not None else None,
        )


@dataclass(frozen=True)
class Scene:
    """
    One scene of a treatment.

    Attributes:
        scene_id: Unique within the treatment
        narration: Spoken text, empty when the scene is visual only
        duration_seconds: Planned scene length
        visual_elements: Elements to prepare for the scene
        audio_cues: Free-form cues for narration delivery
        presenter: Whether an on-screen presenter speaks the narration
        transition: Transition into the next scene
    """
    scene_id: str
    duration_seconds: float
    narration: str = ""
    visual_elements: tuple[VisualElement, ...] = ()
    audio_cues: tuple[str, ...] = ()
    presenter: bool = False
    transition: Optional[str] = None

    @property
    def has_narration(self) -> bool:
        return bool(self.narration and self.narration.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "scene_id": self.scene_id,
            "narration": self.narration,
            "duration_seconds": self.duration_seconds,
            "visual_elements": [e.to_dict() for e in self.visual_elements],
            "audio_cues": list(self.audio_cues),
            "presenter": self.presenter,
            "transition": self.transition,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], where: str = "scene") -> "Scene":
        scene_id = str(_require(data, "scene_id", where))
        where = f"scene '{scene_id}'"
        elements = data.get("visual_elements") or []
        if not isinstance(elements, list):
            raise ValidationError(f"{where}: visual_elements must be a list")
        return cls(
            scene_id=scene_id,
            duration_seconds=_float(_require(data, "duration_seconds", where), f"{where}.duration_seconds"),
            narration=str(data.get("narration") or ""),
            visual_elements=tuple(
                VisualElement.from_dict(e, f"{where}.visual_elements[{i}]")
                for i, e in enumerate(elements)
            ),
            audio_cues=tuple(str(c) for c in data.get("audio_cues") or ()),
            presenter=bool(data.get("presenter", False)),
            transition=data.get("transition"),
        )


@dataclass(frozen=True)
class AudioArc:
    """Background music direction for the whole production."""
    mood: str
    structure: str = "intro-build-outro"

    def to_dict(self) -> dict[str, Any]:
        return {"mood": self.mood, "structure": self.structure}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AudioArc":
        return cls(
            mood=str(_require(data, "mood", "audio_arc")),
            structure=str(data.get("structure", "intro-build-outro")),
        )


@dataclass(frozen=True)
class OutputConstraints:
    """Target format of the final video."""
    duration_seconds: float
    aspect_ratio: str = "16:9"
    platform: str = "youtube"
    tone: Optional[str] = None
    language: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_seconds": self.duration_seconds,
            "aspect_ratio": self.aspect_ratio,
            "platform": self.platform,
            "tone": self.tone,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutputConstraints":
        return cls(
            duration_seconds=_float(
                _require(data, "duration_seconds", "constraints"), "constraints.duration_seconds"
            ),
            aspect_ratio=str(data.get("aspect_ratio", "16:9")),
            platform=str(data.get("platform", "youtube")),
            tone=data.get("tone"),
            language=data.get("language"),
        )


@dataclass(frozen=True)
class Treatment:
    """A structured, multi-scene creative plan."""
    title: str
    scenes: tuple[Scene, ...]
    audio_arc: Optional[AudioArc] = None
    profile: Optional[CreativeProfile] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "title": self.title,
            "scenes": [s.to_dict() for s in self.scenes],
        }
        if self.audio_arc is not None:
            result["audio_arc"] = self.audio_arc.to_dict()
        if self.profile is not None:
            result["profile"] = self.profile.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Treatment":
        if not isinstance(data, dict):
            raise ValidationError(f"treatment must be a mapping, got {type(data).__name__}")
        scenes = data.get("scenes") or []
        if not isinstance(scenes, list):
            raise ValidationError("treatment: scenes must be a list")
        return cls(
            title=str(data.get("title", "Untitled")),
            scenes=tuple(Scene.from_dict(s, f"scenes[{i}]") for i, s in enumerate(scenes)),
            audio_arc=AudioArc.from_dict(data["audio_arc"]) if data.get("audio_arc") else None,
            profile=CreativeProfile.from_dict(data["profile"]) if data.get("profile") else None,
        )
