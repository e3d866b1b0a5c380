"""
degentalk.api.routes.social — Follow graph
============================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from degentalk.api.deps import get_cache, get_current_user, get_engine
from degentalk.engine.cache import ConfigCache
from degentalk.services import social_service

router = APIRouter(prefix="/social", tags=["social"])


@router.post("/follow/{user_id}", status_code=201)
def follow(
    user_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    social_service.follow(
        engine, user["id"], user_id,
        max_following=cache.get_int("social.max_following", 1000),
    )
    return {"following": True, "user_id": user_id}


@router.delete("/follow/{user_id}")
def unfollow(user_id: int, user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    social_service.unfollow(engine, user["id"], user_id)
    return {"following": False, "user_id": user_id}


@router.get("/follow/{user_id}")
def follow_status(user_id: int, user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    return {"following": social_service.is_following(engine, user["id"], user_id)}


@router.get("/users/{user_id}/followers")
def followers(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine=Depends(get_engine),
):
    return {"users": social_service.get_followers(engine, user_id, limit=limit, offset=offset)}


@router.get("/users/{user_id}/following")
def following(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine=Depends(get_engine),
):
    return {"users": social_service.get_following(engine, user_id, limit=limit, offset=offset)}


@router.get("/users/{user_id}/counts")
def counts(user_id: int, engine=Depends(get_engine)):
    return social_service.get_follow_counts(engine, user_id)
