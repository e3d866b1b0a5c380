"""
degentalk.api.routes.public — Read-only public endpoints
==========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from degentalk.api.deps import get_cache, get_engine
from degentalk.engine.cache import ConfigCache
from degentalk.services import settings_service, user_service

router = APIRouter(tags=["public"])


@router.get("/settings/public")
def public_settings(engine=Depends(get_engine)):
    """Display, forum and social settings the frontend may read anonymously."""
    return settings_service.get_public_settings(engine)


@router.get("/features")
def features(engine=Depends(get_engine)):
    return {
        flag["key"]: flag["enabled"]
        for flag in settings_service.list_feature_flags(engine)
    }


@router.get("/economy")
def economy(cache: ConfigCache = Depends(get_cache)):
    """Public view of the DGT economy: prices and the limits users run into."""
    cfg = cache.economy()
    return {
        "dgt_to_usd": str(cfg.dgt_to_usd),
        "tipping": cfg.tipping.model_dump(mode="json"),
        "rain": cfg.rain.model_dump(mode="json"),
        "wallet": cfg.wallet.model_dump(mode="json"),
        "deposits": cfg.deposits.model_dump(mode="json"),
    }


@router.get("/users/{user_id}")
def user_profile(user_id: int, engine=Depends(get_engine)):
    return user_service.user_to_dict(user_service.get_user(engine, user_id))
