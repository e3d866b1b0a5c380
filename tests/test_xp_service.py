"""
tests/test_xp_service.py — XP Awards, Limits & Level-ups
==========================================================

Runs the full award pipeline against seeded SQLite: action limits,
role × forum multipliers, the daily XP cap and level-up side effects.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from degentalk.database.engine import get_session
from degentalk.database.models import Role, User, XpActionLog
from degentalk.engine.xp_actions import XpAction
from degentalk.errors import NotFoundError, ValidationError
from degentalk.services import admin_service, notification_service, wallet_service, xp_service


def _xp(engine, user_id: int) -> tuple[int, int]:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        return user.xp, user.level


class TestAwardXp:
    def test_awards_base_value(self, db_engine, cache, make_user):
        user = make_user("alice")
        result = xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)

        assert result is not None
        assert result.amount == 10
        assert not result.leveled_up
        assert _xp(db_engine, user.id) == (10, 1)

        with get_session(db_engine) as session:
            logs = session.scalars(select(XpActionLog).where(XpActionLog.user_id == user.id)).all()
        assert len(logs) == 1
        assert logs[0].action == "post_created"
        assert logs[0].metadata_["base"] == 10

    def test_unknown_action_awards_nothing(self, db_engine, cache, make_user):
        user = make_user("alice")
        assert xp_service.award_xp(db_engine, cache, user.id, "summoning_ritual") is None
        assert _xp(db_engine, user.id) == (0, 1)

    def test_disabled_action_awards_nothing(self, db_engine, cache, make_user, admin):
        user = make_user("alice")
        admin_service.upsert_xp_action(
            db_engine, action="post_created", base_value=10, enabled=False, actor_id=admin.id,
        )
        assert xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED) is None

    def test_unknown_user_raises(self, db_engine, cache):
        with pytest.raises(NotFoundError):
            xp_service.award_xp(db_engine, cache, 9999, XpAction.POST_CREATED)

    def test_daily_limit(self, db_engine, cache, make_user, admin):
        user = make_user("alice")
        admin_service.upsert_xp_action(
            db_engine, action="post_created", base_value=10, max_per_day=2, actor_id=admin.id,
        )
        assert xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)
        assert xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)
        assert xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED) is None
        assert _xp(db_engine, user.id)[0] == 20

    def test_cooldown(self, db_engine, cache, make_user):
        user = make_user("alice")
        assert xp_service.award_xp(db_engine, cache, user.id, XpAction.DAILY_LOGIN)
        assert xp_service.award_xp(db_engine, cache, user.id, XpAction.DAILY_LOGIN) is None

        limits = xp_service.get_action_limits_for_user(db_engine, cache, user.id, "daily_login")
        assert limits["is_on_cooldown"]
        assert not limits["can_receive"]
        assert 0 < limits["cooldown_remaining"] <= 86400

    def test_daily_xp_cap_clamps_last_award(self, db_engine, cache, make_user, economy_override):
        user = make_user("alice")
        economy_override("xp", {"max_xp_per_day": 15})

        first = xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)
        second = xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)
        third = xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)

        assert first.amount == 10
        assert second.amount == 5
        assert third is None


class TestMultipliers:
    def test_forum_multiplier_applies(self, db_engine, cache, make_user, admin, forum):
        user = make_user("alice")
        admin_service.update_structure(
            db_engine, forum["id"], actor_id=admin.id, xp_multiplier=2.0,
        )
        result = xp_service.award_xp(
            db_engine, cache, user.id, XpAction.THREAD_CREATED, forum_id=forum["id"],
        )
        assert result.amount == 60

    def test_role_multiplier_applies(self, db_engine, cache, make_user):
        user = make_user("mod", role="moderator")
        with get_session(db_engine) as session:
            role = session.scalar(select(Role).where(Role.name == "moderator"))
            role.xp_multiplier = 1.5

        result = xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)
        assert result.amount == 15

    def test_stacked_multipliers_are_capped(self, db_engine, cache, make_user, admin, forum):
        user = make_user("mod", role="moderator")
        with get_session(db_engine) as session:
            role = session.scalar(select(Role).where(Role.name == "moderator"))
            role.xp_multiplier = 5.0
        admin_service.update_structure(
            db_engine, forum["id"], actor_id=admin.id, xp_multiplier=4.0,
        )
        # role capped to 2.5, forum to 2.0, additive → 3.5
        result = xp_service.award_xp(
            db_engine, cache, user.id, XpAction.POST_CREATED, forum_id=forum["id"],
        )
        assert result.amount == 35


class TestLevelUp:
    def test_crossing_threshold_levels_up_and_notifies(self, db_engine, cache, make_user):
        user = make_user("alice")
        xp_service.adjust_user_xp(db_engine, cache, user.id, 245, "set")

        result = xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)

        assert result.leveled_up
        assert (result.old_level, result.new_level) == (1, 2)
        types = [n["type"] for n in notification_service.list_notifications(db_engine, user.id)]
        assert "level_up" in types

    def test_level_reward_is_credited(self, db_engine, cache, make_user, admin):
        user = make_user("alice")
        admin_service.upsert_level(
            db_engine, level=2, min_xp=250, name="Degen", reward_dgt=Decimal("25"),
            actor_id=admin.id,
        )
        xp_service.adjust_user_xp(db_engine, cache, user.id, 300, "add")

        assert _xp(db_engine, user.id) == (300, 2)
        assert wallet_service.get_balance(db_engine, user.id) == 25_000_000

    def test_multi_level_jump_sums_rewards(self, db_engine, cache, make_user, admin):
        user = make_user("alice")
        for level, min_xp in ((2, 250), (3, 750)):
            admin_service.upsert_level(
                db_engine, level=level, min_xp=min_xp, reward_dgt=Decimal("10"), actor_id=admin.id,
            )
        xp_service.adjust_user_xp(db_engine, cache, user.id, 800, "set")
        assert wallet_service.get_balance(db_engine, user.id) == 20_000_000


class TestAdjustments:
    def test_subtract_lowers_level(self, db_engine, cache, make_user):
        user = make_user("alice")
        xp_service.adjust_user_xp(db_engine, cache, user.id, 800, "set")
        result = xp_service.adjust_user_xp(db_engine, cache, user.id, 700, "subtract")
        assert (result.new_xp, result.new_level) == (100, 1)

    def test_subtract_floors_at_zero(self, db_engine, cache, make_user):
        user = make_user("alice")
        result = xp_service.adjust_user_xp(db_engine, cache, user.id, 50, "subtract")
        assert result.new_xp == 0

    def test_invalid_type(self, db_engine, cache, make_user):
        user = make_user("alice")
        with pytest.raises(ValidationError):
            xp_service.adjust_user_xp(db_engine, cache, user.id, 5, "multiply")

    def test_negative_amount(self, db_engine, cache, make_user):
        user = make_user("alice")
        with pytest.raises(ValidationError):
            xp_service.adjust_user_xp(db_engine, cache, user.id, -5, "add")


class TestReads:
    def test_xp_info_progress(self, db_engine, cache, make_user):
        user = make_user("alice")
        xp_service.adjust_user_xp(db_engine, cache, user.id, 375, "set")

        info = xp_service.get_user_xp_info(db_engine, cache, user.id)
        assert info["level"] == 2
        assert info["current_level_xp"] == 250
        assert info["next_level_xp"] == 750
        assert info["xp_to_next_level"] == 375
        assert info["progress"] == pytest.approx(0.25)

    def test_xp_info_at_top_of_table(self, db_engine, cache, make_user):
        user = make_user("alice")
        xp_service.adjust_user_xp(db_engine, cache, user.id, 20_000, "set")
        info = xp_service.get_user_xp_info(db_engine, cache, user.id)
        assert info["level"] == 10
        assert info["next_level"] is None
        assert info["progress"] == 1.0

    def test_history_newest_first(self, db_engine, cache, make_user):
        user = make_user("alice")
        xp_service.award_xp(db_engine, cache, user.id, XpAction.POST_CREATED)
        xp_service.award_xp(db_engine, cache, user.id, XpAction.THREAD_CREATED)
        history = xp_service.get_xp_history(db_engine, user.id)
        assert [h["action"] for h in history] == ["thread_created", "post_created"]

    def test_leaderboard_by_xp(self, db_engine, cache, make_user):
        low = make_user("low")
        high = make_user("high")
        xp_service.adjust_user_xp(db_engine, cache, low.id, 10, "set")
        xp_service.adjust_user_xp(db_engine, cache, high.id, 500, "set")

        board = xp_service.get_leaderboard(db_engine, "xp", limit=2)
        assert [row["username"] for row in board] == ["high", "low"]
        assert board[0]["rank"] == 1

    def test_leaderboard_by_dgt(self, db_engine, cache, make_user, fund):
        rich = make_user("rich")
        fund(rich.id, "12.5")
        board = xp_service.get_leaderboard(db_engine, "dgt")
        assert board[0]["username"] == "rich"
        assert board[0]["value"] == "12.500000"

    def test_leaderboard_rejects_unknown_metric(self, db_engine):
        with pytest.raises(ValidationError):
            xp_service.get_leaderboard(db_engine, "karma")
