"""
degentalk.api.routes.admin — Admin endpoints (JWT-protected, audit-logged)
============================================================================

Reads use :func:`get_current_admin`; mutations go through
:func:`rate_limited_admin` and pass the caller's id to the service layer,
which records every change in ``admin_logs``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from degentalk.api.deps import get_cache, get_current_admin, get_engine
from degentalk.api.rate_limit import rate_limited_admin
from degentalk.engine.cache import ConfigCache
from degentalk.services import achievement_service, admin_service, settings_service, wallet_service
from degentalk.services.log_buffer import (
    VALID_LEVELS,
    get_current_level,
    get_logs,
    set_capture_level,
)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SettingUpdate(BaseModel):
    key: str
    value: Any
    category: str | None = None
    description: str | None = None


class SettingValue(BaseModel):
    value: Any
    category: str | None = None
    description: str | None = None


class FeatureFlagUpdate(BaseModel):
    enabled: bool
    description: str | None = None
    rollout_percentage: int | None = Field(default=None, ge=0, le=100)


class XpActionUpdate(BaseModel):
    base_value: int = Field(ge=0)
    description: str | None = None
    max_per_day: int | None = Field(default=None, ge=1)
    cooldown_sec: int | None = Field(default=None, ge=0)
    enabled: bool = True


class LevelUpdate(BaseModel):
    min_xp: int = Field(ge=0)
    name: str | None = None
    rarity: str = "common"
    reward_dgt: Decimal = Field(default=Decimal("0"), ge=0)


class CurveImport(BaseModel):
    max_level: int = Field(ge=1, le=1000)
    base_xp: int = Field(default=100, ge=1)


class StructureCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: str = "forum"
    parent_id: int | None = None
    slug: str | None = None
    description: str | None = None
    position: int | None = None
    xp_multiplier: float | None = None
    is_locked: bool | None = None
    tipping_enabled: bool | None = None
    min_xp_to_post: int | None = None


class StructureUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    position: int | None = None
    xp_multiplier: float | None = None
    is_locked: bool | None = None
    tipping_enabled: bool | None = None
    min_xp_to_post: int | None = None


class AchievementCreate(BaseModel):
    key: str = Field(min_length=1, max_length=60, pattern=r"^[a-z0-9_]+$")
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    icon: str | None = Field(default=None, max_length=255)
    trigger_type: str = "manual"
    trigger_config: dict[str, Any] | None = None
    series: str | None = Field(default=None, max_length=60)
    series_order: int | None = None
    reward_xp: int = Field(default=0, ge=0)
    reward_dgt: Decimal = Field(default=Decimal("0"), ge=0, max_digits=20, decimal_places=6)
    is_active: bool = True


class AchievementUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    icon: str | None = Field(default=None, max_length=255)
    trigger_type: str | None = None
    trigger_config: dict[str, Any] | None = None
    series: str | None = Field(default=None, max_length=60)
    series_order: int | None = None
    reward_xp: int | None = Field(default=None, ge=0)
    reward_dgt: Decimal | None = Field(default=None, ge=0, max_digits=20, decimal_places=6)
    is_active: bool | None = None


class AchievementGrant(BaseModel):
    user_id: int


class EconomyOverride(BaseModel):
    value: dict[str, Any]


class XpAdjust(BaseModel):
    amount: int
    adjustment_type: Literal["add", "subtract", "set"] = "add"
    reason: str | None = None


class DgtAdjust(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=20, decimal_places=6)
    reason: str | None = None


class BanBody(BaseModel):
    reason: str | None = None
    duration_hours: int | None = Field(default=None, ge=1)


class UnbanBody(BaseModel):
    reason: str | None = None


class RoleUpdate(BaseModel):
    role: str


class LogLevelUpdate(BaseModel):
    level: str


def _actor(admin: dict) -> int:
    return int(admin["sub"])


# ---------------------------------------------------------------------------
# Settings & feature flags
# ---------------------------------------------------------------------------
@router.get("/settings")
def get_all_settings(
    category: str | None = None,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return {"settings": settings_service.get_all_settings(engine, category=category)}


@router.put("/settings")
def update_settings(
    body: list[SettingUpdate],
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    items = [s.model_dump(exclude_none=True) | {"value": s.value} for s in body]
    count = settings_service.bulk_upsert(engine, items, actor_id=_actor(admin))
    return {"updated": count}


@router.put("/settings/{key}")
def update_setting(
    key: str,
    body: SettingValue,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return settings_service.upsert_setting(
        engine, key=key, value=body.value, category=body.category,
        description=body.description, actor_id=_actor(admin),
    )


@router.get("/features")
def list_features(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return {"flags": settings_service.list_feature_flags(engine)}


@router.put("/features/{key}")
def update_feature(
    key: str,
    body: FeatureFlagUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.set_feature_flag(
        engine, key=key, actor_id=_actor(admin), **body.model_dump(),
    )


# ---------------------------------------------------------------------------
# XP actions
# ---------------------------------------------------------------------------
@router.get("/xp-actions")
def list_xp_actions(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return {"actions": admin_service.list_xp_actions(engine)}


@router.put("/xp-actions/{action}")
def upsert_xp_action(
    action: str,
    body: XpActionUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.upsert_xp_action(
        engine, action=action, actor_id=_actor(admin), **body.model_dump(),
    )


@router.delete("/xp-actions/{action}")
def delete_xp_action(
    action: str,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    if not admin_service.delete_xp_action(engine, action=action, actor_id=_actor(admin)):
        raise HTTPException(404, "XP action override not found")
    return {"deleted": action}


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------
@router.get("/levels")
def list_levels(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return {"levels": admin_service.list_levels(engine)}


@router.put("/levels/{level}")
def upsert_level(
    level: int,
    body: LevelUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.upsert_level(
        engine, level=level, actor_id=_actor(admin), **body.model_dump(),
    )


@router.delete("/levels/{level}")
def delete_level(
    level: int,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    if not admin_service.delete_level(engine, level=level, actor_id=_actor(admin)):
        raise HTTPException(404, "Level not found")
    return {"deleted": level}


@router.post("/levels/import-curve")
def import_level_curve(
    body: CurveImport,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    count = admin_service.import_level_curve(
        engine, max_level=body.max_level, base_xp=body.base_xp, actor_id=_actor(admin),
    )
    return {"imported": count}


# ---------------------------------------------------------------------------
# Forum structure
# ---------------------------------------------------------------------------
@router.post("/structure", status_code=201)
def create_structure(
    body: StructureCreate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.create_structure(engine, actor_id=_actor(admin), **body.model_dump())


@router.patch("/structure/{structure_id}")
def update_structure(
    structure_id: int,
    body: StructureUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.update_structure(
        engine, structure_id, actor_id=_actor(admin), **body.model_dump(),
    )


@router.delete("/structure/{structure_id}")
def delete_structure(
    structure_id: int,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    if not admin_service.delete_structure(engine, structure_id, actor_id=_actor(admin)):
        raise HTTPException(404, "Forum structure not found")
    return {"deleted": structure_id}


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------
@router.get("/achievements")
def list_achievements(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return {"achievements": achievement_service.list_achievements(engine, include_inactive=True)}


@router.post("/achievements", status_code=201)
def create_achievement(
    body: AchievementCreate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.create_achievement(engine, actor_id=_actor(admin), **body.model_dump())


@router.patch("/achievements/{achievement_id}")
def update_achievement(
    achievement_id: int,
    body: AchievementUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.update_achievement(
        engine, achievement_id, actor_id=_actor(admin), **body.model_dump(),
    )


@router.delete("/achievements/{achievement_id}")
def delete_achievement(
    achievement_id: int,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    if not admin_service.delete_achievement(engine, achievement_id, actor_id=_actor(admin)):
        raise HTTPException(404, "Achievement not found")
    return {"deleted": achievement_id}


@router.post("/achievements/{achievement_id}/grant")
def grant_achievement(
    achievement_id: int,
    body: AchievementGrant,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return admin_service.grant_achievement(
        engine, cache, achievement_id, user_id=body.user_id, actor_id=_actor(admin),
    )


# ---------------------------------------------------------------------------
# Economy
# ---------------------------------------------------------------------------
@router.get("/economy/config")
def get_economy_config(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return admin_service.get_economy_config(engine)


@router.put("/economy/config/{section}")
def set_economy_override(
    section: str,
    body: EconomyOverride,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.set_economy_override(
        engine, section=section, value=body.value, actor_id=_actor(admin),
    )


@router.delete("/economy/config")
def reset_economy_config(
    section: str | None = None,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    count = admin_service.reset_economy_override(engine, section=section, actor_id=_actor(admin))
    return {"reset": count}


@router.get("/wallet/analytics")
def wallet_analytics(admin: dict = Depends(get_current_admin), engine=Depends(get_engine)):
    return wallet_service.get_analytics(engine)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/users")
def list_users(
    search: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return {"users": admin_service.list_users(engine, search=search, limit=limit, offset=offset)}


@router.post("/users/{user_id}/xp")
def adjust_user_xp(
    user_id: int,
    body: XpAdjust,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return admin_service.adjust_xp(
        engine, cache, user_id=user_id, actor_id=_actor(admin), **body.model_dump(),
    )


@router.post("/users/{user_id}/dgt/{direction}")
def adjust_user_dgt(
    user_id: int,
    direction: Literal["credit", "debit"],
    body: DgtAdjust,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return admin_service.adjust_dgt(
        engine, cache, user_id=user_id, direction=direction,
        amount=body.amount, reason=body.reason, actor_id=_actor(admin),
    )


@router.post("/users/{user_id}/ban")
def ban_user(
    user_id: int,
    body: BanBody,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.ban_user(
        engine, user_id=user_id, actor_id=_actor(admin), **body.model_dump(),
    )


@router.post("/users/{user_id}/unban")
def unban_user(
    user_id: int,
    body: UnbanBody,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.unban_user(
        engine, user_id=user_id, actor_id=_actor(admin), reason=body.reason,
    )


@router.put("/users/{user_id}/role")
def set_user_role(
    user_id: int,
    body: RoleUpdate,
    admin: dict = Depends(rate_limited_admin),
    engine=Depends(get_engine),
):
    return admin_service.set_user_role(
        engine, user_id=user_id, role=body.role, actor_id=_actor(admin),
    )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit")
def audit_log(
    table: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return {"entries": admin_service.get_audit_log(engine, limit=limit, offset=offset, table=table)}


# ---------------------------------------------------------------------------
# Live logs
# ---------------------------------------------------------------------------
@router.get("/logs")
def get_live_logs(
    tail: int = Query(200, ge=1, le=5000),
    level: str | None = Query(None),
    logger_filter: str | None = Query(None, alias="logger"),
    admin: dict = Depends(get_current_admin),
):
    """Recent entries from the in-memory ring buffer."""
    entries = get_logs(tail=tail, level=level, logger_filter=logger_filter)
    return {
        "entries": entries,
        "total": len(entries),
        "capture_level": get_current_level(),
        "valid_levels": list(VALID_LEVELS),
    }


@router.put("/logs/level")
def change_log_level(
    body: LogLevelUpdate,
    admin: dict = Depends(rate_limited_admin),
):
    level_name = body.level.upper()
    if level_name not in VALID_LEVELS:
        raise HTTPException(400, detail=f"Invalid level. Must be one of: {', '.join(VALID_LEVELS)}")
    return {"level": set_capture_level(level_name)}
