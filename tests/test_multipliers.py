"""
tests/test_multipliers.py — XP Multiplier Clamping
====================================================
"""

from __future__ import annotations

import pytest

from degentalk.engine.multipliers import (
    EnforcementMode,
    MultiplierLimits,
    StackingRule,
    combine,
    sanitize_multiplier,
)


class TestCombine:
    def test_additive_adds_bonus_portions(self):
        assert combine(1.5, 2.0, StackingRule.ADDITIVE) == pytest.approx(2.5)

    def test_multiplicative(self):
        assert combine(1.5, 2.0, StackingRule.MULTIPLICATIVE) == pytest.approx(3.0)

    def test_best_of(self):
        assert combine(1.5, 1.8, StackingRule.BEST_OF) == pytest.approx(1.8)

    def test_weighted_average(self):
        assert combine(1.5, 2.0, StackingRule.WEIGHTED_AVERAGE) == pytest.approx(1.7)


class TestSanitize:
    def test_neutral_inputs(self):
        result = sanitize_multiplier(1.0, 1.0)
        assert result.final_multiplier == 1.0
        assert not result.was_capped
        assert result.violations == []

    def test_within_limits_passes_through(self):
        result = sanitize_multiplier(1.5, 2.0)
        assert result.final_multiplier == pytest.approx(2.5)
        assert not result.was_capped

    def test_role_over_cap_is_clamped(self):
        result = sanitize_multiplier(3.0, 1.0)
        assert result.final_multiplier == pytest.approx(2.5)
        assert result.original_multiplier == pytest.approx(3.0)
        assert result.was_capped
        assert len(result.violations) == 1

    def test_forum_over_cap_is_clamped(self):
        result = sanitize_multiplier(1.0, 5.0)
        assert result.final_multiplier == pytest.approx(2.0)
        assert result.was_capped

    def test_total_cap(self):
        limits = MultiplierLimits(stacking_rule=StackingRule.MULTIPLICATIVE)
        result = sanitize_multiplier(2.5, 2.0, limits)
        assert result.final_multiplier == pytest.approx(3.5)
        assert any("Total" in v for v in result.violations)

    def test_values_below_one_are_raised(self):
        result = sanitize_multiplier(0.2, 0.5)
        assert result.final_multiplier == 1.0
        assert not result.violations

    @pytest.mark.parametrize("mode", [EnforcementMode.WARN, EnforcementMode.LOG_ONLY])
    def test_non_strict_modes_keep_original(self, mode):
        limits = MultiplierLimits(enforcement_mode=mode)
        result = sanitize_multiplier(3.0, 1.0, limits)
        assert result.final_multiplier == pytest.approx(3.0)
        assert not result.was_capped
        assert result.violations
