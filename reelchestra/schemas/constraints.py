"""
Creative profile schemas - per-manifest hard constraints and policy.

A CreativeProfile is attached to a manifest at compile time and never
changes afterwards. Job processors hand it to the conflict resolver to clamp
the enhancements they want to apply.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EnforcementMode(str, Enum):
    """How strictly hard constraints are applied."""
    STRICT = "strict"
    BALANCED = "balanced"
    CREATIVE = "creative"


class EnhancementPolicy(str, Enum):
    """Whether processors may only add to, or lightly rewrite, the output."""
    ADDITIVE = "additive"
    TRANSFORM_LITE = "transform_lite"


def _tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


@dataclass(frozen=True)
class StyleConstraints:
    """Allowed palette, fonts and visual style."""
    palette: tuple[str, ...] = ()
    fonts: tuple[str, ...] = ()
    visual_style: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "palette": list(self.palette),
            "fonts": list(self.fonts),
            "visual_style": self.visual_style,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StyleConstraints":
        return cls(
            palette=_tuple(data.get("palette")),
            fonts=_tuple(data.get("fonts")),
            visual_style=data.get("visual_style"),
        )


@dataclass(frozen=True)
class EffectsConstraints:
    """Effect intensity ceiling and allowed/forbidden effect types."""
    max_intensity: Optional[float] = None
    allowed_types: tuple[str, ...] = ()
    forbidden_types: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_intensity": self.max_intensity,
            "allowed_types": list(self.allowed_types),
            "forbidden_types": list(self.forbidden_types),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EffectsConstraints":
        return cls(
            max_intensity=data.get("max_intensity"),
            allowed_types=_tuple(data.get("allowed_types")),
            forbidden_types=_tuple(data.get("forbidden_types")),
        )


@dataclass(frozen=True)
class AudioStyleConstraints:
    """Voice style, tone and music intensity ceiling."""
    voice_style: Optional[str] = None
    tone: Optional[str] = None
    music_intensity: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "voice_style": self.voice_style,
            "tone": self.tone,
            "music_intensity": self.music_intensity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AudioStyleConstraints":
        return cls(
            voice_style=data.get("voice_style"),
            tone=data.get("tone"),
            music_intensity=data.get("music_intensity"),
        )


@dataclass(frozen=True)
class PacingConstraints:
    """Maximum speed and required transition style."""
    max_speed: Optional[float] = None
    transition_style: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_speed": self.max_speed,
            "transition_style": self.transition_style,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PacingConstraints":
        return cls(
            max_speed=data.get("max_speed"),
            transition_style=data.get("transition_style"),
        )


@dataclass(frozen=True)
class HardConstraints:
    """
    Creative guardrails for one manifest.

    A category left as None is not constrained.
    """
    style: Optional[StyleConstraints] = None
    effects: Optional[EffectsConstraints] = None
    audio_style: Optional[AudioStyleConstraints] = None
    pacing: Optional[PacingConstraints] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.style is not None:
            result["style"] = self.style.to_dict()
        if self.effects is not None:
            result["effects"] = self.effects.to_dict()
        if self.audio_style is not None:
            result["audio_style"] = self.audio_style.to_dict()
        if self.pacing is not None:
            result["pacing"] = self.pacing.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HardConstraints":
        return cls(
            style=StyleConstraints.from_dict(data["style"]) if data.get("style") else None,
            effects=EffectsConstraints.from_dict(data["effects"]) if data.get("effects") else None,
            audio_style=(
                AudioStyleConstraints.from_dict(data["audio_style"])
                if data.get("audio_style") else None
            ),
            pacing=PacingConstraints.from_dict(data["pacing"]) if data.get("pacing") else None,
        )


@dataclass(frozen=True)
class ProfileContext:
    """Enforcement mode and enhancement policy of a creative profile."""
    enforcement_mode: EnforcementMode = EnforcementMode.BALANCED
    enhancement_policy: EnhancementPolicy = EnhancementPolicy.ADDITIVE
    profile_name: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "enforcement_mode": self.enforcement_mode.value,
            "enhancement_policy": self.enhancement_policy.value,
        }
        if self.profile_name:
            result["profile_name"] = self.profile_name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfileContext":
        return cls(
            enforcement_mode=EnforcementMode(data.get("enforcement_mode", "balanced")),
            enhancement_policy=EnhancementPolicy(data.get("enhancement_policy", "additive")),
            profile_name=data.get("profile_name"),
        )


@dataclass(frozen=True)
class CreativeProfile:
    """ProfileContext plus HardConstraints, immutable for a manifest's lifetime."""
    context: ProfileContext = field(default_factory=ProfileContext)
    constraints: HardConstraints = field(default_factory=HardConstraints)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.context.to_dict(),
            "constraints": self.constraints.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CreativeProfile":
        return cls(
            context=ProfileContext.from_dict(data),
            constraints=HardConstraints.from_dict(data.get("constraints") or {}),
        )


@dataclass
class ConflictResolutionResult:
    """
    Outcome of one reconciliation call. Never persisted.

    Attributes:
        success: Always True; resolution clamps rather than rejects
        warnings: Human-readable description of every clamp
        clamped_values: Field -> adjusted value, to merge over the proposal
        dropped_enhancements: Removed items as "<field>:<value>"
    """
    success: bool = True
    warnings: list[str] = field(default_factory=list)
    clamped_values: dict[str, Any] = field(default_factory=dict)
    dropped_enhancements: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.clamped_values or self.dropped_enhancements)

    def merged(self, proposal: dict[str, Any]) -> dict[str, Any]:
        """Return the proposal with clamped values applied over it."""
        return {**proposal, **self.clamped_values}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "warnings": list(self.warnings),
            "clamped_values": dict(self.clamped_values),
            "dropped_enhancements": list(self.dropped_enhancements),
        }
