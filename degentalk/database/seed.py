"""
degentalk.database.seed — Default Data Seeder
===============================================

Baseline rows inserted on first startup so a fresh install is usable:
settings, the XP action catalogue, levels 1–10, feature flags and the
built-in roles.

Idempotent — only inserts keys that don't already exist.  Rows created or
edited by admins are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from degentalk.constants import LEVEL_XP_MAP, level_rarity, xp_for_level
from degentalk.database.models import FeatureFlag, Level, Role, Setting, UserRole, XpActionSetting
from degentalk.engine.xp_actions import DEFAULT_XP_ACTIONS

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default catalogues
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "site.name": ("Degentalk", "display", "Site name shown in the header"),
    "site.tagline": ("Where degens talk", "display", "Tagline shown under the logo"),
    "forum.threads_per_page": (20, "forum", "Threads per page in forum listings"),
    "forum.posts_per_page": (20, "forum", "Posts per page in thread view"),
    "forum.max_tags_per_thread": (5, "forum", "Maximum tags a thread may carry"),
    "social.max_following": (1000, "social", "Maximum users one account may follow"),
    "leaderboard.public": (True, "display", "Show public leaderboards"),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""

DEFAULT_FEATURE_FLAGS: dict[str, tuple[bool, str]] = {
    "registration": (True, "Allow new account sign-ups"),
    "tipping": (True, "Allow DGT tips between users"),
    "rain": (True, "Allow DGT rain in the shoutbox"),
    "deposits": (True, "Allow crypto deposits through CCPayment"),
    "withdrawals": (True, "Allow crypto withdrawals through CCPayment"),
    "transfers": (True, "Allow direct DGT transfers between users"),
}

DEFAULT_ROLES: dict[str, tuple[float, str]] = {
    UserRole.USER.value: (1.0, "Regular member"),
    UserRole.MODERATOR.value: (1.0, "Forum moderator"),
    UserRole.ADMIN.value: (1.0, "Site administrator"),
}


# ---------------------------------------------------------------------------
# Seeders
# ---------------------------------------------------------------------------
def seed_default_settings(session: Session) -> int:
    inserted = 0
    for key, (value, category, desc) in DEFAULT_SETTINGS.items():
        if session.get(Setting, key) is None:
            session.add(Setting(
                key=key,
                value_json=json.dumps(value),
                category=category,
                description=desc,
            ))
            inserted += 1
    return inserted


def seed_xp_actions(session: Session) -> int:
    existing = set(session.scalars(select(XpActionSetting.action)).all())
    inserted = 0
    for action, cfg in DEFAULT_XP_ACTIONS.items():
        if action in existing:
            continue
        session.add(XpActionSetting(
            action=action,
            base_value=cfg.base_value,
            description=cfg.description,
            max_per_day=cfg.max_per_day,
            cooldown_sec=cfg.cooldown_sec,
            enabled=cfg.enabled,
        ))
        inserted += 1
    return inserted


def seed_levels(session: Session) -> int:
    inserted = 0
    for level in [1, *LEVEL_XP_MAP]:
        if session.get(Level, level) is None:
            session.add(Level(
                level=level,
                min_xp=xp_for_level(level),
                name=f"Level {level}",
                rarity=level_rarity(level),
            ))
            inserted += 1
    return inserted


def seed_feature_flags(session: Session) -> int:
    inserted = 0
    for key, (enabled, desc) in DEFAULT_FEATURE_FLAGS.items():
        if session.get(FeatureFlag, key) is None:
            session.add(FeatureFlag(key=key, enabled=enabled, description=desc))
            inserted += 1
    return inserted


def seed_roles(session: Session) -> int:
    existing = set(session.scalars(select(Role.name)).all())
    inserted = 0
    for name, (multiplier, desc) in DEFAULT_ROLES.items():
        if name not in existing:
            session.add(Role(name=name, xp_multiplier=multiplier, description=desc))
            inserted += 1
    return inserted


def seed_all(engine: Engine) -> None:
    """Run every seeder in one transaction.

    Runs on every startup but only writes rows that are missing, so it is
    safe to call repeatedly.
    """
    session = Session(engine)
    try:
        counts = {
            "settings": seed_default_settings(session),
            "xp_actions": seed_xp_actions(session),
            "levels": seed_levels(session),
            "feature_flags": seed_feature_flags(session),
            "roles": seed_roles(session),
        }
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    seeded = {name: n for name, n in counts.items() if n}
    if seeded:
        logger.info("Seeded defaults: %s", seeded)
