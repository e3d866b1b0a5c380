"""
degentalk.api.auth — Registration, Login & JWT issuance
=========================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from degentalk.api.deps import create_access_token, get_cache, get_current_user, get_engine
from degentalk.engine.cache import ConfigCache
from degentalk.engine.xp_actions import XpAction
from degentalk.errors import FeatureDisabledError
from degentalk.services import user_service, xp_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterBody(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=8, max_length=128)


class LoginBody(BaseModel):
    username: str
    password: str


class ProfileUpdate(BaseModel):
    bio: str | None = Field(default=None, max_length=2000)
    avatar_url: str | None = Field(default=None, max_length=500)


@router.post("/register", status_code=201)
def register(
    body: RegisterBody,
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    if not cache.is_feature_enabled("registration"):
        raise FeatureDisabledError("Registration is closed")
    user = user_service.create_user(
        engine, username=body.username, email=body.email, password=body.password,
    )
    return {"token": create_access_token(user), "user": user_service.user_to_dict(user)}


@router.post("/login")
def login(
    body: LoginBody,
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    """Exchange credentials for a 12-hour JWT.  Awards daily login XP."""
    user = user_service.authenticate(engine, body.username, body.password)
    xp_service.award_xp(engine, cache, user.id, XpAction.DAILY_LOGIN)
    logger.info("User %d logged in", user.id)
    return {"token": create_access_token(user), "user": user_service.user_to_dict(user)}


@router.get("/me")
def me(user: dict = Depends(get_current_user), engine=Depends(get_engine)):
    return user_service.user_to_dict(user_service.get_user(engine, user["id"]))


@router.patch("/me")
def update_me(
    body: ProfileUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    updated = user_service.update_profile(engine, cache, user["id"], **body.model_dump())
    return user_service.user_to_dict(updated)
