"""
degentalk.engine.multipliers — XP Multiplier Protection
=========================================================

Role and forum multipliers stack on every XP award.  Unchecked stacking
lets a VIP posting in a 2× forum farm XP, so both inputs and the combined
result are clamped here.  Pure calculation: no DB I/O.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class StackingRule(enum.StrEnum):
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"
    BEST_OF = "best_of"
    WEIGHTED_AVERAGE = "weighted_average"


class EnforcementMode(enum.StrEnum):
    STRICT = "strict"
    WARN = "warn"
    LOG_ONLY = "log_only"


@dataclass(frozen=True, slots=True)
class MultiplierLimits:
    max_role_multiplier: float = 2.5
    max_forum_multiplier: float = 2.0
    max_total_multiplier: float = 3.5
    stacking_rule: StackingRule = StackingRule.ADDITIVE
    enforcement_mode: EnforcementMode = EnforcementMode.STRICT


@dataclass
class MultiplierResult:
    final_multiplier: float
    original_multiplier: float
    was_capped: bool = False
    violations: list[str] = field(default_factory=list)


def combine(role: float, forum: float, rule: StackingRule) -> float:
    """Combine the two (already clamped) multipliers under *rule*."""
    if rule == StackingRule.MULTIPLICATIVE:
        return role * forum
    if rule == StackingRule.BEST_OF:
        return max(role, forum)
    if rule == StackingRule.WEIGHTED_AVERAGE:
        return role * 0.6 + forum * 0.4
    # Additive: each multiplier contributes only its bonus portion
    return (role - 1) + (forum - 1) + 1


def sanitize_multiplier(
    role_multiplier: float,
    forum_multiplier: float,
    limits: MultiplierLimits | None = None,
) -> MultiplierResult:
    """Clamp, combine and cap the role and forum multipliers.

    In ``strict`` mode violations are corrected.  ``warn`` and
    ``log_only`` record the violations but return the uncapped value.
    The result never drops below 1.0.
    """
    limits = limits or MultiplierLimits()
    strict = limits.enforcement_mode == EnforcementMode.STRICT
    violations: list[str] = []

    role = max(1.0, float(role_multiplier))
    forum = max(1.0, float(forum_multiplier))

    capped_role = role
    if role > limits.max_role_multiplier:
        violations.append(
            f"Role multiplier {role} exceeds max {limits.max_role_multiplier}"
        )
        capped_role = limits.max_role_multiplier

    capped_forum = forum
    if forum > limits.max_forum_multiplier:
        violations.append(
            f"Forum multiplier {forum} exceeds max {limits.max_forum_multiplier}"
        )
        capped_forum = limits.max_forum_multiplier

    original = combine(role, forum, limits.stacking_rule)
    combined = combine(capped_role, capped_forum, limits.stacking_rule)

    final = combined
    if combined > limits.max_total_multiplier:
        violations.append(
            f"Total multiplier {combined} exceeds max {limits.max_total_multiplier}"
        )
        final = limits.max_total_multiplier

    if violations:
        if limits.enforcement_mode == EnforcementMode.LOG_ONLY:
            logger.info("Multiplier violations (log only): %s", "; ".join(violations))
        else:
            logger.warning("Multiplier violations: %s", "; ".join(violations))

    if not strict:
        final = original

    final = max(1.0, final)
    return MultiplierResult(
        final_multiplier=final,
        original_multiplier=original,
        was_capped=strict and bool(violations),
        violations=violations,
    )
