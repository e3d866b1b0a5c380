"""
degentalk.engine.xp_actions — XP Action Catalogue
===================================================

Every XP-earning behaviour on the site is identified by an action key.
Admins tune each action through the ``xp_action_settings`` table; the
values below are the factory defaults used for seeding and as the
fallback when the table is empty.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

__all__ = ["XpAction", "XpActionConfig", "DEFAULT_XP_ACTIONS", "resolve_action"]


class XpAction(enum.StrEnum):
    POST_CREATED = "post_created"
    THREAD_CREATED = "thread_created"
    RECEIVED_LIKE = "received_like"
    DAILY_LOGIN = "daily_login"
    USER_MENTIONED = "user_mentioned"
    REPLY_RECEIVED = "reply_received"
    PROFILE_COMPLETED = "profile_completed"
    FRAME_EQUIPPED = "frame_equipped"
    TIP_GIVEN = "tip_given"
    TIP_RECEIVED = "tip_received"
    DGT_PURCHASE = "dgt_purchase"


@dataclass(frozen=True, slots=True)
class XpActionConfig:
    """Resolved award rule for one action."""

    action: str
    base_value: int
    description: str = ""
    max_per_day: int | None = None
    cooldown_sec: int | None = None
    enabled: bool = True


DEFAULT_XP_ACTIONS: dict[str, XpActionConfig] = {
    cfg.action: cfg
    for cfg in (
        XpActionConfig(XpAction.POST_CREATED, 10, "Creating a post", max_per_day=100),
        XpActionConfig(XpAction.THREAD_CREATED, 30, "Starting a new thread"),
        XpActionConfig(XpAction.RECEIVED_LIKE, 5, "Receiving a like on a post", max_per_day=50),
        XpActionConfig(XpAction.DAILY_LOGIN, 5, "Logging in for the day", cooldown_sec=86400),
        XpActionConfig(XpAction.USER_MENTIONED, 2, "Mentioning another user", max_per_day=20),
        XpActionConfig(XpAction.REPLY_RECEIVED, 3, "Receiving a reply", max_per_day=50),
        XpActionConfig(
            XpAction.PROFILE_COMPLETED, 50, "Completing your profile", cooldown_sec=604800,
        ),
        XpActionConfig(XpAction.FRAME_EQUIPPED, 5, "Equipping an avatar frame"),
        XpActionConfig(XpAction.TIP_GIVEN, 2, "Tipping another user", max_per_day=20),
        XpActionConfig(XpAction.TIP_RECEIVED, 5, "Receiving a tip", max_per_day=50),
        XpActionConfig(XpAction.DGT_PURCHASE, 10, "Buying DGT", max_per_day=5),
    )
}
"""Each entry maps ``action`` → default :class:`XpActionConfig`."""


def resolve_action(
    action: str,
    configured: dict[str, XpActionConfig] | None,
) -> XpActionConfig | None:
    """Look up *action* in the configured catalogue, falling back to defaults.

    When *configured* is non-empty it is authoritative: missing or
    disabled actions resolve to ``None``.
    """
    if configured:
        cfg = configured.get(str(action))
    else:
        cfg = DEFAULT_XP_ACTIONS.get(str(action))
    if cfg is None or not cfg.enabled:
        return None
    return cfg
