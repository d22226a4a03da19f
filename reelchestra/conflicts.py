"""
Conflict resolution between a manifest's creative profile and the
enhancements a job processor wants to apply.

Processors propose enhancement values (palette, effects, voice style, ...)
while executing a job. The resolver clamps every proposed value to the
nearest value the profile allows. It never rejects a proposal and never
raises: the worst case is a list of warnings.

Rules run in a fixed order and each one sees the effective value left by
the rules before it:

1. style     palette, fonts, visual style
2. effects   forbidden types, allow-list, intensity ceiling
3. audio     voice style, tone, music intensity ceiling
4. pacing    speed ceiling, transition style
5. overlay   enforcement mode / enhancement policy caps

Proposal keys:
    color_palette, fonts {primary, secondary}, visual_style, effects,
    effect_intensity, voice_style, tone, music_intensity, speed,
    transition_style, audio_tags, style_tags, enhancement_complexity

Usage:
    result = resolve_conflicts(profile.context, profile.constraints, proposed)
    effective = result.merged(proposed)
"""

import logging
from typing import Any, Optional

from reelchestra.schemas.constraints import (
    AudioStyleConstraints,
    ConflictResolutionResult,
    CreativeProfile,
    EffectsConstraints,
    EnforcementMode,
    EnhancementPolicy,
    HardConstraints,
    PacingConstraints,
    ProfileContext,
    StyleConstraints,
)

logger = logging.getLogger(__name__)

# Overlay limits
MAX_ADDITIVE_TAGS = 3
MAX_ADDITIVE_COMPLEXITY = 0.5
CREATIVE_EFFECT_INTENSITY_CEILING = 0.9

_TAG_FIELDS = ("audio_tags", "style_tags")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_list(value: Any) -> Optional[list]:
    """Normalize a scalar-or-list proposal value; None when malformed."""
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        return [value]
    return None


class _Resolution:
    """Working state for one resolve_conflicts call."""

    def __init__(self, proposed: dict[str, Any]):
        self.proposed = proposed
        self.result = ConflictResolutionResult()

    def effective(self, key: str) -> Any:
        if key in self.result.clamped_values:
            return self.result.clamped_values[key]
        return self.proposed.get(key)

    def clamp(self, key: str, value: Any, warning: str) -> None:
        self.result.clamped_values[key] = value
        self.result.warnings.append(warning)

    def drop(self, key: str, items: list) -> None:
        self.result.dropped_enhancements.extend(f"{key}:{item}" for item in items)


class ConflictResolver:
    """
    Reconciles hard constraints against proposed enhancements.

    Args:
        log_level: Level used when a resolution produced warnings
    """

    def __init__(self, log_level: int = logging.WARNING):
        self.log_level = log_level

    def resolve_conflicts(
        self,
        profile_context: Optional[ProfileContext],
        hard_constraints: Optional[HardConstraints],
        proposed: dict[str, Any],
    ) -> ConflictResolutionResult:
        """
        Clamp proposed enhancements to the profile.

        Args:
            profile_context: Enforcement mode and enhancement policy
            hard_constraints: Per-category guardrails (None = unconstrained)
            proposed: Enhancement values a processor wants to apply

        Returns:
            ConflictResolutionResult; merge clamped_values over the proposal
        """
        state = _Resolution(proposed if isinstance(proposed, dict) else {})
        constraints = hard_constraints or HardConstraints()
        context = profile_context or ProfileContext()

        if constraints.style is not None:
            self._resolve_style(constraints.style, state)
        if constraints.effects is not None:
            self._resolve_effects(constraints.effects, state)
        if constraints.audio_style is not None:
            self._resolve_audio(constraints.audio_style, state)
        if constraints.pacing is not None:
            self._resolve_pacing(constraints.pacing, state)
        self._resolve_policy_overlay(context, state)

        return state.result

    def log_results(self, result: ConflictResolutionResult, context: str) -> None:
        """Log the warnings of a resolution, if any."""
        if result.warnings:
            logger.log(
                self.log_level,
                f"Conflict resolution applied for {context}: {'; '.join(result.warnings)}",
            )

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    def _resolve_style(self, style: StyleConstraints, state: _Resolution) -> None:
        colors = _as_list(state.effective("color_palette"))
        if style.palette and colors:
            valid = [c for c in colors if c in style.palette]
            if not valid:
                state.clamp(
                    "color_palette",
                    [style.palette[0]],
                    f"Color palette clamped to profile constraint: {style.palette[0]}",
                )
                state.drop("color_palette", colors)
            elif len(valid) < len(colors):
                state.clamp(
                    "color_palette",
                    valid,
                    f"Color palette filtered to profile constraints: {', '.join(valid)}",
                )
                state.drop("color_palette", [c for c in colors if c not in style.palette])

        fonts = state.effective("fonts")
        if style.fonts and isinstance(fonts, dict):
            clamped = dict(fonts)
            for slot in ("primary", "secondary"):
                font = fonts.get(slot)
                if font and font not in style.fonts:
                    clamped[slot] = style.fonts[0]
                    state.result.warnings.append(
                        f"{slot.capitalize()} font clamped to profile constraint: {style.fonts[0]}"
                    )
            if clamped != fonts:
                state.result.clamped_values["fonts"] = clamped

        visual_style = state.effective("visual_style")
        if style.visual_style and isinstance(visual_style, str) and visual_style != style.visual_style:
            state.clamp(
                "visual_style",
                style.visual_style,
                f"Visual style clamped to profile constraint: {style.visual_style}",
            )

    def _resolve_effects(self, effects: EffectsConstraints, state: _Resolution) -> None:
        proposed_effects = _as_list(state.effective("effects"))
        if proposed_effects is not None:
            if effects.forbidden_types:
                removed = [e for e in proposed_effects if e in effects.forbidden_types]
                if removed:
                    proposed_effects = [e for e in proposed_effects if e not in effects.forbidden_types]
                    state.clamp("effects", proposed_effects, f"Forbidden effects removed: {', '.join(removed)}")
                    state.drop("effects", removed)

            if effects.allowed_types:
                removed = [e for e in proposed_effects if e not in effects.allowed_types]
                if removed:
                    proposed_effects = [e for e in proposed_effects if e in effects.allowed_types]
                    state.clamp(
                        "effects",
                        proposed_effects,
                        f"Effects filtered to profile constraints: {', '.join(proposed_effects) or '(none)'}",
                    )
                    state.drop("effects", removed)

        intensity = state.effective("effect_intensity")
        if _is_number(effects.max_intensity) and _is_number(intensity) and intensity > effects.max_intensity:
            state.clamp(
                "effect_intensity",
                effects.max_intensity,
                f"Effect intensity clamped to profile constraint: {effects.max_intensity}",
            )

    def _resolve_audio(self, audio: AudioStyleConstraints, state: _Resolution) -> None:
        for key in ("voice_style", "tone"):
            required = getattr(audio, key)
            value = state.effective(key)
            if required and isinstance(value, str) and value != required:
                label = key.replace("_", " ").capitalize()
                state.clamp(key, required, f"{label} clamped to profile constraint: {required}")

        intensity = state.effective("music_intensity")
        if _is_number(audio.music_intensity) and _is_number(intensity) and intensity > audio.music_intensity:
            state.clamp(
                "music_intensity",
                audio.music_intensity,
                f"Music intensity clamped to profile constraint: {audio.music_intensity}",
            )

    def _resolve_pacing(self, pacing: PacingConstraints, state: _Resolution) -> None:
        speed = state.effective("speed")
        if _is_number(pacing.max_speed) and _is_number(speed) and speed > pacing.max_speed:
            state.clamp("speed", pacing.max_speed, f"Speed clamped to profile constraint: {pacing.max_speed}")

        transition = state.effective("transition_style")
        if pacing.transition_style and isinstance(transition, str) and transition != pacing.transition_style:
            state.clamp(
                "transition_style",
                pacing.transition_style,
                f"Transition style clamped to profile constraint: {pacing.transition_style}",
            )

    def _resolve_policy_overlay(self, context: ProfileContext, state: _Resolution) -> None:
        if (
            context.enforcement_mode == EnforcementMode.STRICT
            and context.enhancement_policy == EnhancementPolicy.ADDITIVE
        ):
            for key in _TAG_FIELDS:
                tags = _as_list(state.effective(key))
                if tags and len(tags) > MAX_ADDITIVE_TAGS:
                    state.clamp(
                        key,
                        tags[:MAX_ADDITIVE_TAGS],
                        f"{key} limited to {MAX_ADDITIVE_TAGS} in strict additive mode",
                    )
                    state.drop(key, tags[MAX_ADDITIVE_TAGS:])

            complexity = state.effective("enhancement_complexity")
            if _is_number(complexity) and complexity > MAX_ADDITIVE_COMPLEXITY:
                state.clamp(
                    "enhancement_complexity",
                    MAX_ADDITIVE_COMPLEXITY,
                    f"Enhancement complexity limited to {MAX_ADDITIVE_COMPLEXITY} in strict additive mode",
                )

        if context.enforcement_mode == EnforcementMode.CREATIVE:
            intensity = state.effective("effect_intensity")
            if _is_number(intensity) and intensity > CREATIVE_EFFECT_INTENSITY_CEILING:
                state.clamp(
                    "effect_intensity",
                    CREATIVE_EFFECT_INTENSITY_CEILING,
                    f"Effect intensity capped at {CREATIVE_EFFECT_INTENSITY_CEILING} in creative mode",
                )


_default_resolver = ConflictResolver()


def resolve_conflicts(
    profile_context: Optional[ProfileContext],
    hard_constraints: Optional[HardConstraints],
    proposed: dict[str, Any],
) -> ConflictResolutionResult:
    """Module-level shortcut for ConflictResolver().resolve_conflicts."""
    return _default_resolver.resolve_conflicts(profile_context, hard_constraints, proposed)


def apply_conflict_resolution(
    proposed: dict[str, Any],
    profile: Optional[CreativeProfile],
    context: str = "job",
) -> tuple[dict[str, Any], ConflictResolutionResult]:
    """
    Resolve a proposal against a creative profile and return the merged values.

    Args:
        proposed: Enhancement values a processor wants to apply
        profile: The manifest's creative profile (None = unconstrained)
        context: Label used in the log line

    Returns:
        Tuple of (effective proposal, resolution result)
    """
    if profile is None:
        return dict(proposed), ConflictResolutionResult()

    result = _default_resolver.resolve_conflicts(profile.context, profile.constraints, proposed)
    _default_resolver.log_results(result, context)
    return result.merged(proposed), result
