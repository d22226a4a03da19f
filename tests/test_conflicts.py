"""Tests for the conflict resolver.

Tests cover:
- Style: palette clamp and filter, fonts, visual style
- Effects: forbidden types, allow-list, intensity ceiling
- Audio and pacing ceilings
- Strict additive and creative overlays
- Idempotency and malformed proposals
"""

import logging

import pytest

from reelchestra.conflicts import (
    CREATIVE_EFFECT_INTENSITY_CEILING,
    MAX_ADDITIVE_COMPLEXITY,
    ConflictResolver,
    apply_conflict_resolution,
    resolve_conflicts,
)
from reelchestra.schemas import (
    AudioStyleConstraints,
    CreativeProfile,
    EffectsConstraints,
    EnforcementMode,
    EnhancementPolicy,
    HardConstraints,
    PacingConstraints,
    ProfileContext,
    StyleConstraints,
)


BALANCED = ProfileContext()
STRICT_ADDITIVE = ProfileContext(
    enforcement_mode=EnforcementMode.STRICT, enhancement_policy=EnhancementPolicy.ADDITIVE
)
CREATIVE = ProfileContext(enforcement_mode=EnforcementMode.CREATIVE)


# =============================================================================
# Style
# =============================================================================


class TestStyle:
    """Tests for style constraints."""

    def test_palette_with_no_allowed_color_is_clamped(self):
        """A proposal with no allowed color falls back to the first allowed one."""
        constraints = HardConstraints(style=StyleConstraints(palette=("#000000", "#FFFFFF")))

        result = resolve_conflicts(BALANCED, constraints, {"color_palette": ["#FF0000"]})

        assert result.success is True
        assert result.clamped_values["color_palette"] == ["#000000"]
        assert len(result.warnings) == 1
        assert result.dropped_enhancements == ["color_palette:#FF0000"]

    def test_palette_is_filtered(self):
        """Allowed colors are kept, the rest dropped."""
        constraints = HardConstraints(style=StyleConstraints(palette=("#000000", "#FFFFFF")))

        result = resolve_conflicts(
            BALANCED, constraints, {"color_palette": ["#FFFFFF", "#FF0000"]}
        )

        assert result.clamped_values["color_palette"] == ["#FFFFFF"]
        assert result.dropped_enhancements == ["color_palette:#FF0000"]

    def test_allowed_palette_is_untouched(self):
        """A fully allowed proposal produces nothing."""
        constraints = HardConstraints(style=StyleConstraints(palette=("#000000", "#FFFFFF")))

        result = resolve_conflicts(BALANCED, constraints, {"color_palette": ["#000000"]})

        assert not result.changed
        assert result.warnings == []

    def test_single_color_string(self):
        """A scalar palette value is treated as a one-color list."""
        constraints = HardConstraints(style=StyleConstraints(palette=("#000000",)))

        result = resolve_conflicts(BALANCED, constraints, {"color_palette": "#FF0000"})

        assert result.clamped_values["color_palette"] == ["#000000"]

    def test_fonts_clamped_per_slot(self):
        """Only the disallowed font slot is replaced."""
        constraints = HardConstraints(style=StyleConstraints(fonts=("Inter", "Roboto")))

        result = resolve_conflicts(
            BALANCED, constraints, {"fonts": {"primary": "Comic Sans", "secondary": "Roboto"}}
        )

        assert result.clamped_values["fonts"] == {"primary": "Inter", "secondary": "Roboto"}
        assert result.warnings == ["Primary font clamped to profile constraint: Inter"]

    def test_visual_style(self):
        """A different visual style is replaced by the profile's."""
        constraints = HardConstraints(style=StyleConstraints(visual_style="flat"))

        result = resolve_conflicts(BALANCED, constraints, {"visual_style": "photoreal"})

        assert result.clamped_values["visual_style"] == "flat"


# =============================================================================
# Effects
# =============================================================================


class TestEffects:
    """Tests for effects constraints."""

    def test_forbidden_then_allow_list(self):
        """Forbidden types go first, then the allow-list filters the rest."""
        constraints = HardConstraints(
            effects=EffectsConstraints(allowed_types=("blur",), forbidden_types=("strobe",))
        )

        result = resolve_conflicts(BALANCED, constraints, {"effects": ["blur", "strobe", "zoom"]})

        assert result.clamped_values["effects"] == ["blur"]
        assert result.warnings == [
            "Forbidden effects removed: strobe",
            "Effects filtered to profile constraints: blur",
        ]
        assert result.dropped_enhancements == ["effects:strobe", "effects:zoom"]

    def test_allow_list_may_empty_effects(self):
        """Nothing allowed leaves an empty effect list."""
        constraints = HardConstraints(effects=EffectsConstraints(allowed_types=("blur",)))

        result = resolve_conflicts(BALANCED, constraints, {"effects": ["zoom"]})

        assert result.clamped_values["effects"] == []
        assert "(none)" in result.warnings[0]

    def test_intensity_ceiling(self):
        """Effect intensity above the ceiling is clamped to it."""
        constraints = HardConstraints(effects=EffectsConstraints(max_intensity=0.4))

        result = resolve_conflicts(BALANCED, constraints, {"effect_intensity": 0.7})

        assert result.clamped_values["effect_intensity"] == 0.4

    def test_intensity_ignores_non_numbers(self):
        """Malformed numeric values are left alone."""
        constraints = HardConstraints(effects=EffectsConstraints(max_intensity=0.4))

        result = resolve_conflicts(BALANCED, constraints, {"effect_intensity": True})

        assert not result.changed


# =============================================================================
# Audio and pacing
# =============================================================================


class TestAudioAndPacing:
    """Tests for audio style and pacing constraints."""

    def test_voice_style_tone_and_music(self):
        """Voice style and tone are replaced, music intensity capped."""
        constraints = HardConstraints(
            audio_style=AudioStyleConstraints(voice_style="warm", tone="calm", music_intensity=0.3)
        )

        result = resolve_conflicts(
            BALANCED,
            constraints,
            {"voice_style": "energetic", "tone": "calm", "music_intensity": 0.8},
        )

        assert result.clamped_values == {"voice_style": "warm", "music_intensity": 0.3}
        assert len(result.warnings) == 2

    def test_speed_and_transition(self):
        """Speed is capped and the transition style replaced."""
        constraints = HardConstraints(
            pacing=PacingConstraints(max_speed=1.2, transition_style="cut")
        )

        result = resolve_conflicts(
            BALANCED, constraints, {"speed": 1.5, "transition_style": "wipe"}
        )

        assert result.clamped_values == {"speed": 1.2, "transition_style": "cut"}


# =============================================================================
# Policy overlay
# =============================================================================


class TestPolicyOverlay:
    """Tests for enforcement mode and enhancement policy caps."""

    def test_strict_additive_limits_tags_and_complexity(self):
        """Strict additive mode keeps 3 tags and caps complexity."""
        result = resolve_conflicts(
            STRICT_ADDITIVE,
            None,
            {"style_tags": ["a", "b", "c", "d", "e"], "enhancement_complexity": 0.8},
        )

        assert result.clamped_values["style_tags"] == ["a", "b", "c"]
        assert result.clamped_values["enhancement_complexity"] == MAX_ADDITIVE_COMPLEXITY
        assert result.dropped_enhancements == ["style_tags:d", "style_tags:e"]

    def test_balanced_mode_has_no_tag_limit(self):
        """The tag limit only applies in strict additive mode."""
        result = resolve_conflicts(BALANCED, None, {"audio_tags": ["a", "b", "c", "d"]})

        assert not result.changed

    def test_creative_ceiling(self):
        """Creative mode caps effect intensity."""
        result = resolve_conflicts(CREATIVE, None, {"effect_intensity": 0.95})

        assert result.clamped_values["effect_intensity"] == CREATIVE_EFFECT_INTENSITY_CEILING

    def test_overlay_sees_effective_value(self):
        """The overlay reads values already clamped by category rules."""
        constraints = HardConstraints(effects=EffectsConstraints(max_intensity=0.5))

        result = resolve_conflicts(CREATIVE, constraints, {"effect_intensity": 0.95})

        assert result.clamped_values["effect_intensity"] == 0.5
        assert len(result.warnings) == 1


# =============================================================================
# Properties
# =============================================================================


class TestProperties:
    """Tests for idempotency, merging and malformed input."""

    @pytest.fixture
    def profile(self):
        return CreativeProfile(
            context=STRICT_ADDITIVE,
            constraints=HardConstraints(
                style=StyleConstraints(palette=("#000000", "#FFFFFF"), visual_style="flat"),
                effects=EffectsConstraints(max_intensity=0.5, forbidden_types=("strobe",)),
                pacing=PacingConstraints(max_speed=1.0),
            ),
        )

    def test_idempotent(self, profile):
        """Resolving an already resolved proposal changes nothing."""
        proposed = {
            "color_palette": ["#FF0000"],
            "visual_style": "grunge",
            "effects": ["strobe", "blur"],
            "effect_intensity": 0.9,
            "speed": 2.0,
            "style_tags": ["a", "b", "c", "d"],
        }
        first = resolve_conflicts(profile.context, profile.constraints, proposed)
        merged = first.merged(proposed)

        second = resolve_conflicts(profile.context, profile.constraints, merged)

        assert first.changed
        assert not second.changed
        assert second.warnings == []

    def test_merged_keeps_unclamped_keys(self, profile):
        """merged() overlays clamped values on the original proposal."""
        proposed = {"speed": 3.0, "voice_style": "warm"}
        result = resolve_conflicts(profile.context, profile.constraints, proposed)

        assert result.merged(proposed) == {"speed": 1.0, "voice_style": "warm"}
        assert proposed["speed"] == 3.0

    def test_empty_and_malformed_proposals(self, profile):
        """Missing, empty or malformed proposals produce an empty result."""
        for proposed in ({}, None, ["not", "a", "dict"], {"color_palette": 42}):
            result = resolve_conflicts(profile.context, profile.constraints, proposed)
            assert result.success is True
            assert not result.changed

    def test_apply_without_profile(self):
        """No profile means the proposal passes through unchanged."""
        effective, result = apply_conflict_resolution({"speed": 9.0}, None)

        assert effective == {"speed": 9.0}
        assert result.warnings == []

    def test_apply_logs_warnings(self, profile, caplog):
        """apply_conflict_resolution logs clamps under the given context."""
        with caplog.at_level(logging.WARNING, logger="reelchestra.conflicts"):
            effective, result = apply_conflict_resolution(
                {"speed": 3.0}, profile, context="m1/narration:intro"
            )

        assert effective["speed"] == 1.0
        assert "m1/narration:intro" in caplog.text

    def test_resolver_log_level(self, caplog):
        """A resolver can log at a custom level."""
        resolver = ConflictResolver(log_level=logging.INFO)
        result = resolver.resolve_conflicts(CREATIVE, None, {"effect_intensity": 1.0})

        with caplog.at_level(logging.INFO, logger="reelchestra.conflicts"):
            resolver.log_results(result, "job")

        assert caplog.records[0].levelno == logging.INFO
