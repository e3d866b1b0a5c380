"""
degentalk.api.routes.gamification — XP, levels, achievements & leaderboards
===============================================================================
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from degentalk.api.deps import get_cache, get_current_user, get_engine
from degentalk.engine.cache import ConfigCache
from degentalk.services import achievement_service, admin_service, xp_service

router = APIRouter(prefix="/gamification", tags=["gamification"])


@router.get("/xp/me")
def my_xp(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return xp_service.get_user_xp_info(engine, cache, user["id"])


@router.get("/xp/users/{user_id}")
def user_xp(
    user_id: int,
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return xp_service.get_user_xp_info(engine, cache, user_id)


@router.get("/xp/actions")
def xp_actions(cache: ConfigCache = Depends(get_cache)):
    """Enabled award rules, as currently cached."""
    actions = [asdict(cfg) for cfg in cache.get_xp_actions().values() if cfg.enabled]
    return {"actions": sorted(actions, key=lambda a: a["action"])}


@router.get("/xp/limits/{action}")
def xp_limits(
    action: str,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return xp_service.get_action_limits_for_user(engine, cache, user["id"], action)


@router.get("/xp/history")
def xp_history(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return {"history": xp_service.get_xp_history(engine, user["id"], limit=limit)}


@router.get("/levels")
def levels(engine=Depends(get_engine)):
    return {"levels": admin_service.list_levels(engine)}


@router.get("/leaderboard/{metric}")
def leaderboard(
    metric: str,
    limit: int = Query(25, ge=1, le=100),
    offset: int = Query(0, ge=0),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    if not cache.get_bool("leaderboard.public", True):
        raise HTTPException(404, "Leaderboards are disabled")
    return {
        "metric": metric,
        "entries": xp_service.get_leaderboard(engine, metric, limit=limit, offset=offset),
    }


@router.get("/achievements")
def achievements(engine=Depends(get_engine)):
    return {"achievements": achievement_service.list_achievements(engine)}


@router.get("/achievements/me")
def my_achievements(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return {"achievements": achievement_service.list_user_achievements(engine, user["id"])}


@router.get("/achievements/users/{user_id}")
def user_achievements(user_id: int, engine=Depends(get_engine)):
    return {"achievements": achievement_service.list_user_achievements(engine, user_id)}
