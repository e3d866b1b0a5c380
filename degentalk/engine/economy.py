"""
degentalk.engine.economy — Economy Configuration & DGT Units
==============================================================

The economy config is a tree of typed sections.  Defaults live in the
pydantic models below; admins override whole sections through
``economy_config_overrides`` (one row per section) and
:func:`build_economy_config` merges the two.

DGT is stored as integer micro-units.  Convert at the API boundary with
:func:`to_micro` / :func:`from_micro`.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Any

import pydantic
from pydantic import BaseModel, Field

from degentalk.engine.multipliers import EnforcementMode, MultiplierLimits, StackingRule
from degentalk.errors import ValidationError

DGT_DECIMALS = 6
MICRO_PER_DGT = 10 ** DGT_DECIMALS
_QUANTUM = Decimal(1).scaleb(-DGT_DECIMALS)


def to_micro(amount: Decimal | int | float | str) -> int:
    """Convert a DGT amount to integer micro-DGT, truncating extra precision."""
    value = Decimal(str(amount)).quantize(_QUANTUM, rounding=ROUND_DOWN)
    return int(value * MICRO_PER_DGT)


def from_micro(micro: int) -> Decimal:
    return (Decimal(micro) / MICRO_PER_DGT).quantize(_QUANTUM)


def format_dgt(micro: int) -> str:
    """Human-readable amount with trailing zeros trimmed (``12.5 DGT``)."""
    text = format(from_micro(micro).normalize(), "f")
    return f"{text} DGT"


# ---------------------------------------------------------------------------
# Config sections
# ---------------------------------------------------------------------------
class CurrencyConfig(BaseModel):
    symbol: str = "DGT"
    decimals: int = DGT_DECIMALS


class TippingConfig(BaseModel):
    enabled: bool = True
    min_amount: Decimal = Field(default=Decimal("1"), gt=0)
    max_amount: Decimal = Field(default=Decimal("1000"), gt=0)
    cooldown_seconds: int = Field(default=10, ge=0)
    daily_limit: Decimal = Field(default=Decimal("500"), gt=0)
    staff_dust_min: Decimal = Field(default=Decimal("0.01"), gt=0)
    fee_percentage: Decimal = Field(default=Decimal("0"), ge=0, lt=100)


class RainConfig(BaseModel):
    enabled: bool = True
    min_amount: Decimal = Field(default=Decimal("5"), gt=0)
    max_recipients: int = Field(default=15, ge=1)
    cooldown_seconds: int = Field(default=3600, ge=0)
    active_window_minutes: int = Field(default=15, ge=1)


class WalletConfig(BaseModel):
    max_balance: Decimal = Field(default=Decimal("1000000"), gt=0)
    allow_internal_transfers: bool = True
    max_transfer: Decimal = Field(default=Decimal("10000"), gt=0)
    min_withdrawal: Decimal = Field(default=Decimal("3"), gt=0)
    daily_withdrawal_limit: Decimal = Field(default=Decimal("5000"), gt=0)


class MultiplierConfig(BaseModel):
    max_role_multiplier: float = Field(default=2.5, ge=1)
    max_forum_multiplier: float = Field(default=2.0, ge=1)
    max_total_multiplier: float = Field(default=3.5, ge=1)
    stacking_rule: StackingRule = StackingRule.ADDITIVE
    enforcement_mode: EnforcementMode = EnforcementMode.STRICT

    def limits(self) -> MultiplierLimits:
        return MultiplierLimits(
            max_role_multiplier=self.max_role_multiplier,
            max_forum_multiplier=self.max_forum_multiplier,
            max_total_multiplier=self.max_total_multiplier,
            stacking_rule=self.stacking_rule,
            enforcement_mode=self.enforcement_mode,
        )


class XpConfig(BaseModel):
    max_xp_per_day: int = Field(default=1000, ge=0)
    max_tip_xp_per_day: int = Field(default=200, ge=0)
    xp_per_dgt: int = Field(default=1000, ge=1)
    multipliers: MultiplierConfig = Field(default_factory=MultiplierConfig)


class DepositConfig(BaseModel):
    enabled: bool = True
    auto_convert: bool = False
    min_usd: Decimal = Field(default=Decimal("1"), gt=0)


class EmergencyConfig(BaseModel):
    kill_switch: bool = False
    maintenance_mode: bool = False
    withdrawals_disabled: bool = False
    message: str = ""


class RateLimitConfig(BaseModel):
    tips_per_minute: int = Field(default=5, ge=1)
    tips_per_hour: int = Field(default=30, ge=1)
    tips_per_day: int = Field(default=100, ge=1)


class EconomyConfig(BaseModel):
    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    dgt_to_usd: Decimal = Field(default=Decimal("0.1"), gt=0)
    tipping: TippingConfig = Field(default_factory=TippingConfig)
    rain: RainConfig = Field(default_factory=RainConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    xp: XpConfig = Field(default_factory=XpConfig)
    deposits: DepositConfig = Field(default_factory=DepositConfig)
    emergency: EmergencyConfig = Field(default_factory=EmergencyConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)


SECTIONS: frozenset[str] = frozenset(EconomyConfig.model_fields)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_economy_config(overrides: dict[str, Any] | None = None) -> EconomyConfig:
    """Merge per-section *overrides* onto the defaults and validate.

    Raises
    ------
    ValidationError
        If a section name is unknown or a value fails validation.
    """
    overrides = overrides or {}
    unknown = set(overrides) - SECTIONS
    if unknown:
        raise ValidationError(
            f"Unknown economy config section(s): {', '.join(sorted(unknown))}",
        )
    merged = _deep_merge(EconomyConfig().model_dump(), overrides)
    try:
        return EconomyConfig.model_validate(merged)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Invalid economy configuration",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc
