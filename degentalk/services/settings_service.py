"""
degentalk.services.settings_service — Site Settings & Feature Flags
=====================================================================

Typed read/write access to the ``settings`` and ``feature_flags``
tables.  Writes go through :func:`notify_before_commit` so every
:class:`~degentalk.engine.cache.ConfigCache` reloads once they land.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from degentalk.database.engine import get_session
from degentalk.database.models import AdminActionType, AdminLog, FeatureFlag, Setting
from degentalk.engine.cache import notify_before_commit
from degentalk.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Settings readable without authentication
PUBLIC_CATEGORIES = ("display", "forum", "social")


def _decode(raw: str | None) -> Any:
    try:
        return json.loads(raw) if raw is not None else None
    except (json.JSONDecodeError, TypeError):
        return raw


def setting_to_dict(row: Setting) -> dict[str, Any]:
    return {
        "key": row.key,
        "value": _decode(row.value_json),
        "category": row.category,
        "description": row.description,
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_setting(engine: Engine, key: str) -> dict[str, Any] | None:
    with get_session(engine) as session:
        row = session.get(Setting, key)
        return setting_to_dict(row) if row else None


def get_all_settings(engine: Engine, *, category: str | None = None) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        query = select(Setting).order_by(Setting.category, Setting.key)
        if category:
            query = query.where(Setting.category == category)
        return [setting_to_dict(r) for r in session.scalars(query).all()]


def get_public_settings(engine: Engine) -> dict[str, Any]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(Setting).where(Setting.category.in_(PUBLIC_CATEGORIES))
        ).all()
        return {r.key: _decode(r.value_json) for r in rows}


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
def _apply(session: Session, item: dict[str, Any], actor_id: int | None) -> Setting:
    if "key" not in item or "value" not in item:
        raise ValidationError("Each setting needs a 'key' and a 'value'")
    key = item["key"]
    value_json = json.dumps(item["value"])
    row = session.get(Setting, key)
    before = setting_to_dict(row) if row else None

    if row:
        row.value_json = value_json
        if item.get("category"):
            row.category = item["category"]
        if "description" in item:
            row.description = item["description"]
    else:
        row = Setting(
            key=key,
            value_json=value_json,
            category=item.get("category") or "general",
            description=item.get("description"),
        )
        session.add(row)

    after = setting_to_dict(row)
    if actor_id is not None and before != after:
        session.add(AdminLog(
            actor_id=actor_id,
            action_type=(AdminActionType.UPDATE if before else AdminActionType.CREATE).value,
            target_table="settings",
            target_id=key,
            before_snapshot=before,
            after_snapshot=after,
        ))
    return row


def upsert_setting(
    engine: Engine,
    *,
    key: str,
    value: Any,
    category: str | None = None,
    description: str | None = None,
    actor_id: int | None = None,
) -> dict[str, Any]:
    """Create or update one setting; an existing key keeps its category
    unless a new one is given."""
    item: dict[str, Any] = {"key": key, "value": value, "category": category}
    if description is not None:
        item["description"] = description
    with get_session(engine) as session:
        row = _apply(session, item, actor_id)
        notify_before_commit(session, "settings")
        return setting_to_dict(row)


def bulk_upsert(
    engine: Engine, settings: list[dict[str, Any]], *, actor_id: int | None = None,
) -> int:
    """Upsert many settings in one transaction.

    Each item needs ``key`` and ``value``; ``category`` and ``description``
    are optional.  With *actor_id* every changed key gets its own
    ``admin_log`` row.  Returns the number of items applied.
    """
    with get_session(engine) as session:
        for item in settings:
            _apply(session, item, actor_id)
        notify_before_commit(session, "settings")
    logger.info("Bulk-upserted %d settings", len(settings))
    return len(settings)


# ---------------------------------------------------------------------------
# Feature flags
# ---------------------------------------------------------------------------
def flag_to_dict(row: FeatureFlag) -> dict[str, Any]:
    return {
        "key": row.key,
        "enabled": row.enabled,
        "description": row.description,
        "rollout_percentage": row.rollout_percentage,
    }


def list_feature_flags(engine: Engine) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        rows = session.scalars(select(FeatureFlag).order_by(FeatureFlag.key)).all()
        return [flag_to_dict(r) for r in rows]
