"""
degentalk.services.admin_service — Audited Admin Mutations
============================================================

Every admin write follows the same shape, inside one transaction:

  1. Read the "before" snapshot
  2. Apply the change
  3. Write an ``admin_log`` row with before/after JSON
  4. Queue the cache invalidation for the touched config table
  5. Commit

Reads used only by the admin panel (audit log, user search, economy
overrides) live here too.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from degentalk.constants import generate_xp_curve
from degentalk.database.engine import get_session
from degentalk.database.models import (
    Achievement,
    AdminActionType,
    AdminLog,
    EconomyConfigOverride,
    FeatureFlag,
    ForumStructure,
    Level,
    StructureType,
    Thread,
    TriggerType,
    User,
    UserAchievement,
    UserBan,
    UserRole,
    XpActionSetting,
    utcnow,
)
from degentalk.engine.achievements import validate_trigger
from degentalk.engine.cache import notify_before_commit
from degentalk.engine.economy import SECTIONS, build_economy_config, from_micro, to_micro
from degentalk.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from degentalk.services import achievement_service, wallet_service, xp_service
from degentalk.services.achievement_service import achievement_to_dict
from degentalk.services.forum_service import slugify, unique_slug
from degentalk.services.user_service import user_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from degentalk.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

STRUCTURE_FIELDS = (
    "name", "description", "position", "xp_multiplier",
    "is_locked", "tipping_enabled", "min_xp_to_post",
)
ACHIEVEMENT_FIELDS = (
    "name", "description", "icon", "series", "series_order",
    "reward_xp", "reward_dgt", "is_active",
)


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------
def _row_to_dict(obj: Any) -> dict | None:
    """JSON-safe snapshot of a model instance, keyed by column name."""
    if obj is None:
        return None
    snapshot = {}
    for col in obj.__table__.columns:
        val = getattr(obj, "metadata_" if col.key == "metadata" else col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        elif isinstance(val, Decimal):
            val = str(val)
        snapshot[col.name] = val
    return snapshot


def _log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: AdminActionType,
    target_table: str,
    target_id: Any,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type.value,
        target_table=target_table,
        target_id=None if target_id is None else str(target_id),
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


def _audited_update(
    session: Session,
    obj: Any,
    *,
    table_name: str,
    target_id: Any,
    actor_id: int,
    fields: dict[str, Any],
    notify: bool = True,
) -> Any:
    before = _row_to_dict(obj)
    for key, value in fields.items():
        setattr(obj, key, value)
    session.flush()
    _log_admin_action(
        session,
        actor_id=actor_id,
        action_type=AdminActionType.UPDATE,
        target_table=table_name,
        target_id=target_id,
        before=before,
        after=_row_to_dict(obj),
    )
    if notify:
        notify_before_commit(session, table_name)
    return obj


def _audited_create(
    session: Session, obj: Any, *, table_name: str, target_id_attr: str, actor_id: int,
) -> Any:
    session.add(obj)
    session.flush()
    _log_admin_action(
        session,
        actor_id=actor_id,
        action_type=AdminActionType.CREATE,
        target_table=table_name,
        target_id=getattr(obj, target_id_attr),
        before=None,
        after=_row_to_dict(obj),
    )
    notify_before_commit(session, table_name)
    return obj


def _audited_delete(
    session: Session, obj: Any, *, table_name: str, target_id: Any, actor_id: int,
) -> None:
    _log_admin_action(
        session,
        actor_id=actor_id,
        action_type=AdminActionType.DELETE,
        target_table=table_name,
        target_id=target_id,
        before=_row_to_dict(obj),
        after=None,
    )
    session.delete(obj)
    notify_before_commit(session, table_name)


# ---------------------------------------------------------------------------
# XP action settings
# ---------------------------------------------------------------------------
def list_xp_actions(engine: Engine) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        rows = session.scalars(select(XpActionSetting).order_by(XpActionSetting.action)).all()
        return [_row_to_dict(r) for r in rows]


def upsert_xp_action(
    engine: Engine,
    *,
    action: str,
    base_value: int,
    description: str | None = None,
    max_per_day: int | None = None,
    cooldown_sec: int | None = None,
    enabled: bool = True,
    actor_id: int,
) -> dict[str, Any]:
    if base_value < 0:
        raise ValidationError("base_value must not be negative")
    if max_per_day is not None and max_per_day < 1:
        raise ValidationError("max_per_day must be at least 1")
    if cooldown_sec is not None and cooldown_sec < 0:
        raise ValidationError("cooldown_sec must not be negative")

    fields = {
        "base_value": base_value,
        "description": description,
        "max_per_day": max_per_day,
        "cooldown_sec": cooldown_sec,
        "enabled": enabled,
    }
    with get_session(engine) as session:
        row = session.scalar(select(XpActionSetting).where(XpActionSetting.action == action))
        if row is None:
            row = _audited_create(
                session, XpActionSetting(action=action, **fields),
                table_name="xp_action_settings", target_id_attr="action", actor_id=actor_id,
            )
        else:
            _audited_update(
                session, row, table_name="xp_action_settings", target_id=action,
                actor_id=actor_id, fields=fields,
            )
        return _row_to_dict(row)


def delete_xp_action(engine: Engine, *, action: str, actor_id: int) -> bool:
    with get_session(engine) as session:
        row = session.scalar(select(XpActionSetting).where(XpActionSetting.action == action))
        if row is None:
            return False
        _audited_delete(
            session, row, table_name="xp_action_settings", target_id=action, actor_id=actor_id,
        )
        return True


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------
def level_to_dict(row: Level) -> dict[str, Any]:
    return {
        "level": row.level,
        "min_xp": row.min_xp,
        "name": row.name,
        "rarity": row.rarity,
        "reward_dgt": str(from_micro(row.reward_dgt)),
    }


def list_levels(engine: Engine) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        return [level_to_dict(r) for r in session.scalars(select(Level).order_by(Level.level))]


def _check_level_order(session: Session, level: int, min_xp: int) -> None:
    below = session.scalar(
        select(func.max(Level.min_xp)).where(Level.level < level)
    )
    above = session.scalar(
        select(func.min(Level.min_xp)).where(Level.level > level)
    )
    if level == 1 and min_xp != 0:
        raise ValidationError("Level 1 must start at 0 XP")
    if below is not None and min_xp <= below:
        raise ValidationError(f"min_xp must be greater than the previous level's ({below})")
    if above is not None and min_xp >= above:
        raise ValidationError(f"min_xp must be less than the next level's ({above})")


def upsert_level(
    engine: Engine,
    *,
    level: int,
    min_xp: int,
    name: str | None = None,
    rarity: str = "common",
    reward_dgt: Decimal = Decimal("0"),
    actor_id: int,
) -> dict[str, Any]:
    """Create or update one level; thresholds must stay strictly increasing."""
    if level < 1:
        raise ValidationError("level must be at least 1")
    if reward_dgt < 0:
        raise ValidationError("reward_dgt must not be negative")
    fields = {
        "min_xp": min_xp,
        "name": name,
        "rarity": rarity,
        "reward_dgt": to_micro(reward_dgt),
    }
    with get_session(engine) as session:
        _check_level_order(session, level, min_xp)
        row = session.get(Level, level)
        if row is None:
            row = _audited_create(
                session, Level(level=level, **fields),
                table_name="levels", target_id_attr="level", actor_id=actor_id,
            )
        else:
            _audited_update(
                session, row, table_name="levels", target_id=level,
                actor_id=actor_id, fields=fields,
            )
        return level_to_dict(row)


def delete_level(engine: Engine, *, level: int, actor_id: int) -> bool:
    if level == 1:
        raise BadRequestError("Level 1 cannot be deleted")
    with get_session(engine) as session:
        row = session.get(Level, level)
        if row is None:
            return False
        _audited_delete(session, row, table_name="levels", target_id=level, actor_id=actor_id)
        return True


def import_level_curve(
    engine: Engine, *, max_level: int, base_xp: int = 100, actor_id: int,
) -> int:
    """Replace the whole levels table with a generated curve.

    Existing names and DGT rewards are kept for levels that survive.
    Returns the number of levels written.
    """
    if base_xp < 1:
        raise ValidationError("base_xp must be at least 1")
    try:
        curve = generate_xp_curve(max_level, base_xp)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    with get_session(engine) as session:
        rows = session.scalars(select(Level).order_by(Level.level)).all()
        kept = {r.level: (r.name, r.reward_dgt) for r in rows}
        before = {"levels": [level_to_dict(r) for r in rows]}
        for row in rows:
            session.delete(row)
        session.flush()

        for entry in curve:
            name, reward = kept.get(entry["level"], (f"Level {entry['level']}", 0))
            session.add(Level(
                level=entry["level"],
                min_xp=entry["min_xp"],
                rarity=entry["rarity"],
                name=name,
                reward_dgt=reward,
            ))
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.IMPORT,
            target_table="levels",
            target_id=None,
            before=before,
            after={"max_level": max_level, "base_xp": base_xp, "count": len(curve)},
        )
        notify_before_commit(session, "levels")
    logger.info("Imported XP curve: %d levels (base %d)", len(curve), base_xp)
    return len(curve)


# ---------------------------------------------------------------------------
# Forum structure
# ---------------------------------------------------------------------------
def _check_structure_fields(fields: dict[str, Any]) -> None:
    if "xp_multiplier" in fields and fields["xp_multiplier"] <= 0:
        raise ValidationError("xp_multiplier must be positive")
    if "min_xp_to_post" in fields and fields["min_xp_to_post"] < 0:
        raise ValidationError("min_xp_to_post must not be negative")


def create_structure(
    engine: Engine,
    *,
    name: str,
    type: str = StructureType.FORUM.value,
    parent_id: int | None = None,
    slug: str | None = None,
    actor_id: int,
    **fields: Any,
) -> dict[str, Any]:
    """Create a zone (top level) or a forum (under a zone)."""
    if type not in {t.value for t in StructureType}:
        raise ValidationError(f"Unknown structure type '{type}'")
    extra = {k: v for k, v in fields.items() if k in STRUCTURE_FIELDS and v is not None}
    _check_structure_fields(extra)

    with get_session(engine) as session:
        if type == StructureType.ZONE.value and parent_id is not None:
            raise ValidationError("Zones cannot have a parent")
        if parent_id is not None and session.get(ForumStructure, parent_id) is None:
            raise NotFoundError("Parent structure")
        if slug:
            if session.scalar(select(ForumStructure.id).where(ForumStructure.slug == slug)):
                raise ConflictError(f"Slug '{slug}' is already in use")
        else:
            slug = unique_slug(session, ForumStructure, slugify(name))
        row = _audited_create(
            session,
            ForumStructure(name=name, type=type, parent_id=parent_id, slug=slug, **extra),
            table_name="forum_structure", target_id_attr="id", actor_id=actor_id,
        )
        return _row_to_dict(row)


def update_structure(
    engine: Engine, structure_id: int, *, actor_id: int, **fields: Any,
) -> dict[str, Any]:
    changes = {k: v for k, v in fields.items() if k in STRUCTURE_FIELDS and v is not None}
    _check_structure_fields(changes)
    with get_session(engine) as session:
        row = session.get(ForumStructure, structure_id)
        if row is None:
            raise NotFoundError("Forum structure")
        _audited_update(
            session, row, table_name="forum_structure", target_id=structure_id,
            actor_id=actor_id, fields=changes,
        )
        return _row_to_dict(row)


def delete_structure(engine: Engine, structure_id: int, *, actor_id: int) -> bool:
    """Delete an empty zone or forum.  Structures holding threads or child
    forums are refused with :class:`ConflictError`."""
    with get_session(engine) as session:
        row = session.get(ForumStructure, structure_id)
        if row is None:
            return False
        children = session.scalar(
            select(func.count()).select_from(ForumStructure)
            .where(ForumStructure.parent_id == structure_id)
        )
        threads = session.scalar(
            select(func.count()).select_from(Thread).where(Thread.structure_id == structure_id)
        )
        if children or threads:
            raise ConflictError("Structure still has child forums or threads")
        _audited_delete(
            session, row, table_name="forum_structure", target_id=structure_id, actor_id=actor_id,
        )
        return True


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------
def _achievement_fields(fields: dict[str, Any]) -> dict[str, Any]:
    changes = {k: v for k, v in fields.items() if k in ACHIEVEMENT_FIELDS and v is not None}
    if "reward_xp" in changes and changes["reward_xp"] < 0:
        raise ValidationError("reward_xp must not be negative")
    if "reward_dgt" in changes:
        reward = Decimal(str(changes["reward_dgt"]))
        if reward < 0:
            raise ValidationError("reward_dgt must not be negative")
        changes["reward_dgt"] = to_micro(reward)
    if "series_order" in changes and changes["series_order"] < 1:
        raise ValidationError("series_order starts at 1")
    return changes


def create_achievement(
    engine: Engine,
    *,
    key: str,
    name: str,
    trigger_type: str = TriggerType.MANUAL.value,
    trigger_config: dict[str, Any] | None = None,
    actor_id: int,
    **fields: Any,
) -> dict[str, Any]:
    config = validate_trigger(trigger_type, trigger_config)
    extra = _achievement_fields(fields)
    with get_session(engine) as session:
        if session.scalar(select(Achievement.id).where(Achievement.key == key)) is not None:
            raise ConflictError(f"Achievement '{key}' already exists")
        row = _audited_create(
            session,
            Achievement(key=key, name=name, trigger_type=trigger_type, trigger_config=config, **extra),
            table_name="achievements", target_id_attr="id", actor_id=actor_id,
        )
        return achievement_to_dict(row)


def update_achievement(
    engine: Engine, achievement_id: int, *, actor_id: int, **fields: Any,
) -> dict[str, Any]:
    """Partial update; a new trigger type or config is validated as a pair."""
    changes = _achievement_fields(fields)
    with get_session(engine) as session:
        row = session.get(Achievement, achievement_id)
        if row is None:
            raise NotFoundError("Achievement")
        trigger_type = fields.get("trigger_type") or row.trigger_type
        trigger_config = fields.get("trigger_config")
        if fields.get("trigger_type") is not None or trigger_config is not None:
            changes["trigger_type"] = trigger_type
            changes["trigger_config"] = validate_trigger(
                trigger_type, row.trigger_config if trigger_config is None else trigger_config,
            )
        _audited_update(
            session, row, table_name="achievements", target_id=achievement_id,
            actor_id=actor_id, fields=changes,
        )
        return achievement_to_dict(row)


def delete_achievement(engine: Engine, achievement_id: int, *, actor_id: int) -> bool:
    """Delete a definition; users who earned it lose the badge too."""
    with get_session(engine) as session:
        row = session.get(Achievement, achievement_id)
        if row is None:
            return False
        session.execute(
            delete(UserAchievement).where(UserAchievement.achievement_id == achievement_id)
        )
        _audited_delete(
            session, row, table_name="achievements", target_id=achievement_id, actor_id=actor_id,
        )
        return True


def grant_achievement(
    engine: Engine, cache: ConfigCache, achievement_id: int, *, user_id: int, actor_id: int,
) -> dict[str, Any]:
    """Staff award, for ``manual`` achievements or any other."""
    with get_session(engine) as session:
        achievement = session.get(Achievement, achievement_id)
        if achievement is None:
            raise NotFoundError("Achievement")
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        if session.get(UserAchievement, (user_id, achievement_id)) is not None:
            raise ConflictError("User already has this achievement")
        achievement_service.unlock(session, cache, user, achievement, granted_by=actor_id)
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.MANUAL_AWARD,
            target_table="user_achievements",
            target_id=f"{user_id}:{achievement_id}",
            before=None,
            after={"user_id": user_id, "achievement_id": achievement_id},
        )
        logger.info("Admin %d granted achievement %s to user %d", actor_id, achievement.key, user_id)
        return {"user_id": user_id, "achievement": achievement_to_dict(achievement)}


# ---------------------------------------------------------------------------
# Feature flags
# ---------------------------------------------------------------------------
def set_feature_flag(
    engine: Engine,
    *,
    key: str,
    enabled: bool,
    description: str | None = None,
    rollout_percentage: int | None = None,
    actor_id: int,
) -> dict[str, Any]:
    if rollout_percentage is not None and not 0 <= rollout_percentage <= 100:
        raise ValidationError("rollout_percentage must be between 0 and 100")
    fields: dict[str, Any] = {"enabled": enabled}
    if description is not None:
        fields["description"] = description
    if rollout_percentage is not None:
        fields["rollout_percentage"] = rollout_percentage

    with get_session(engine) as session:
        row = session.get(FeatureFlag, key)
        if row is None:
            row = _audited_create(
                session, FeatureFlag(key=key, **fields),
                table_name="feature_flags", target_id_attr="key", actor_id=actor_id,
            )
        else:
            _audited_update(
                session, row, table_name="feature_flags", target_id=key,
                actor_id=actor_id, fields=fields,
            )
        return _row_to_dict(row)


# ---------------------------------------------------------------------------
# Economy config overrides
# ---------------------------------------------------------------------------
def _load_overrides(session: Session) -> dict[str, Any]:
    return {r.section: r.value for r in session.scalars(select(EconomyConfigOverride)).all()}


def get_economy_config(engine: Engine) -> dict[str, Any]:
    """Effective config plus the raw per-section overrides."""
    with get_session(engine) as session:
        overrides = _load_overrides(session)
    return {
        "config": build_economy_config(overrides).model_dump(mode="json"),
        "overrides": overrides,
    }


def set_economy_override(
    engine: Engine, *, section: str, value: dict[str, Any], actor_id: int,
) -> dict[str, Any]:
    """Replace one section's override.

    The merged result is validated before anything is written; the old
    row is deleted and the new one inserted in the same transaction, so
    readers never see the section missing.
    """
    if section not in SECTIONS:
        raise ValidationError(f"Unknown economy config section '{section}'")
    if not isinstance(value, dict):
        raise ValidationError("Override value must be an object")

    with get_session(engine) as session:
        overrides = _load_overrides(session)
        before = overrides.get(section)
        overrides[section] = value
        effective = build_economy_config(overrides)

        session.execute(delete(EconomyConfigOverride).where(EconomyConfigOverride.section == section))
        session.add(EconomyConfigOverride(section=section, value=value, updated_by=actor_id))
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="economy_config_overrides",
            target_id=section,
            before={"value": before} if before is not None else None,
            after={"value": value},
        )
        notify_before_commit(session, "economy_config_overrides")
    logger.info("Economy section %s overridden by admin %d", section, actor_id)
    return effective.model_dump(mode="json")


def reset_economy_override(engine: Engine, *, section: str | None = None, actor_id: int) -> int:
    """Drop one section's override (or all of them).  Returns rows removed."""
    if section is not None and section not in SECTIONS:
        raise ValidationError(f"Unknown economy config section '{section}'")
    with get_session(engine) as session:
        query = select(EconomyConfigOverride)
        if section is not None:
            query = query.where(EconomyConfigOverride.section == section)
        rows = session.scalars(query).all()
        for row in rows:
            _audited_delete(
                session, row, table_name="economy_config_overrides",
                target_id=row.section, actor_id=actor_id,
            )
        return len(rows)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def list_users(
    engine: Engine, *, search: str | None = None, limit: int = 50, offset: int = 0,
) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        query = select(User).order_by(User.id)
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(or_(
                func.lower(User.username).like(pattern),
                func.lower(User.email).like(pattern),
            ))
        return [user_to_dict(u) for u in session.scalars(query.offset(offset).limit(limit))]


def _target_user(session: Session, user_id: int, actor_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User")
    if user_id == actor_id:
        raise BadRequestError("Admins cannot perform this action on themselves")
    return user


def ban_user(
    engine: Engine,
    *,
    user_id: int,
    actor_id: int,
    reason: str | None = None,
    duration_hours: int | None = None,
) -> dict[str, Any]:
    """Ban a user, permanently or for *duration_hours*."""
    if duration_hours is not None and duration_hours < 1:
        raise ValidationError("duration_hours must be at least 1")
    with get_session(engine) as session:
        user = _target_user(session, user_id, actor_id)
        if user.role == UserRole.ADMIN.value:
            raise ForbiddenError("Admins cannot be banned")
        if user.is_banned:
            raise ConflictError("User is already banned")
        before = user_to_dict(user)
        expires_at = utcnow() + timedelta(hours=duration_hours) if duration_hours else None
        user.is_banned = True
        session.add(UserBan(
            user_id=user_id, banned_by=actor_id, reason=reason, expires_at=expires_at,
        ))
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.BAN,
            target_table="users",
            target_id=user_id,
            before=before,
            after={**user_to_dict(user), "expires_at": expires_at.isoformat() if expires_at else None},
            reason=reason,
        )
        logger.info("User %d banned by admin %d", user_id, actor_id)
        return user_to_dict(user)


def unban_user(engine: Engine, *, user_id: int, actor_id: int, reason: str | None = None) -> dict[str, Any]:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User")
        if not user.is_banned:
            raise ConflictError("User is not banned")
        before = user_to_dict(user)
        now = utcnow()
        for ban in session.scalars(
            select(UserBan).where(UserBan.user_id == user_id, UserBan.lifted_at.is_(None))
        ):
            ban.lifted_at = now
        user.is_banned = False
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UNBAN,
            target_table="users",
            target_id=user_id,
            before=before,
            after=user_to_dict(user),
            reason=reason,
        )
        return user_to_dict(user)


def set_user_role(engine: Engine, *, user_id: int, role: str, actor_id: int) -> dict[str, Any]:
    if role not in {r.value for r in UserRole}:
        raise ValidationError(f"Unknown role '{role}'")
    with get_session(engine) as session:
        user = _target_user(session, user_id, actor_id)
        before = user_to_dict(user)
        user.role = role
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="users",
            target_id=user_id,
            before=before,
            after=user_to_dict(user),
        )
        return user_to_dict(user)


def adjust_xp(
    engine: Engine,
    cache: ConfigCache,
    *,
    user_id: int,
    amount: int,
    adjustment_type: str,
    reason: str | None = None,
    actor_id: int,
) -> dict[str, Any]:
    with get_session(engine) as session:
        result = xp_service.adjust_user_xp_in_session(
            session, cache, user_id, amount, adjustment_type,
            reason=reason, admin_id=actor_id,
        )
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.XP_ADJUST,
            target_table="users",
            target_id=user_id,
            before={"xp": result.old_xp, "level": result.old_level},
            after={"xp": result.new_xp, "level": result.new_level},
            reason=reason,
        )
    return {
        "user_id": user_id,
        "old_xp": result.old_xp,
        "new_xp": result.new_xp,
        "old_level": result.old_level,
        "new_level": result.new_level,
        "leveled_up": result.leveled_up,
    }


def adjust_dgt(
    engine: Engine,
    cache: ConfigCache,
    *,
    user_id: int,
    amount: Decimal,
    direction: str,
    reason: str | None = None,
    actor_id: int,
) -> dict[str, Any]:
    """Credit (``direction="credit"``) or debit DGT on a user's wallet."""
    if direction not in ("credit", "debit"):
        raise ValidationError("direction must be 'credit' or 'debit'")
    micro = to_micro(amount)
    if micro <= 0:
        raise ValidationError("Amount must be positive")

    with get_session(engine) as session:
        before = wallet_service.get_or_create_wallet(session, user_id).balance
        meta = {"admin_id": actor_id, "reason": reason}
        if direction == "credit":
            tx = wallet_service.credit(
                session, user_id, micro, "admin_credit",
                economy=cache.economy(), description=reason, metadata=meta,
            )
            action = AdminActionType.DGT_CREDIT
        else:
            tx = wallet_service.debit(
                session, user_id, micro, "admin_debit", description=reason, metadata=meta,
            )
            action = AdminActionType.DGT_DEBIT
        after = wallet_service.get_or_create_wallet(session, user_id).balance
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=action,
            target_table="wallets",
            target_id=user_id,
            before={"balance": str(from_micro(before))},
            after={"balance": str(from_micro(after))},
            reason=reason,
        )
        tx_id = tx.id
    return {"user_id": user_id, "transaction_id": tx_id, "balance": str(from_micro(after))}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
def get_audit_log(
    engine: Engine, *, limit: int = 50, offset: int = 0, table: str | None = None,
) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        query = select(AdminLog).order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
        if table:
            query = query.where(AdminLog.target_table == table)
        rows = session.scalars(query.offset(offset).limit(limit)).all()
        return [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before": r.before_snapshot,
                "after": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ]
