"""
tests/test_admin_service.py — Admin Mutations & Audit Trail
=============================================================

Every admin write must land in ``admin_log`` and, for cached tables,
refresh the in-process :class:`ConfigCache` on commit.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from degentalk.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from degentalk.services import admin_service, wallet_service


class TestAuditLog:
    def test_update_records_before_and_after(self, db_engine, admin, forum):
        admin_service.update_structure(db_engine, forum["id"], actor_id=admin.id, xp_multiplier=1.5)

        entry = admin_service.get_audit_log(db_engine, table="forum_structure")[0]
        assert entry["action_type"] == "UPDATE"
        assert entry["actor_id"] == admin.id
        assert entry["target_id"] == str(forum["id"])
        assert entry["before"]["xp_multiplier"] == 1.0
        assert entry["after"]["xp_multiplier"] == 1.5

    def test_create_has_no_before(self, db_engine, admin):
        admin_service.set_feature_flag(db_engine, key="shoutbox", enabled=True, actor_id=admin.id)
        entry = admin_service.get_audit_log(db_engine, table="feature_flags")[0]
        assert entry["action_type"] == "CREATE"
        assert entry["before"] is None
        assert entry["target_id"] == "shoutbox"

    def test_delete_has_no_after(self, db_engine, admin):
        admin_service.delete_xp_action(db_engine, action="frame_equipped", actor_id=admin.id)
        entry = admin_service.get_audit_log(db_engine, table="xp_action_settings")[0]
        assert entry["action_type"] == "DELETE"
        assert entry["after"] is None
        assert entry["before"]["action"] == "frame_equipped"


class TestXpActionSettings:
    def test_upsert_refreshes_cache(self, db_engine, cache, admin):
        admin_service.upsert_xp_action(
            db_engine, action="post_created", base_value=25, actor_id=admin.id,
        )
        assert cache.get_xp_action("post_created").base_value == 25

    def test_new_action(self, db_engine, cache, admin):
        admin_service.upsert_xp_action(
            db_engine, action="bounty_claimed", base_value=40, max_per_day=1, actor_id=admin.id,
        )
        actions = {row["action"] for row in admin_service.list_xp_actions(db_engine)}
        assert "bounty_claimed" in actions
        assert cache.get_xp_action("bounty_claimed").max_per_day == 1

    @pytest.mark.parametrize(
        "kwargs",
        [{"base_value": -1}, {"base_value": 5, "max_per_day": 0}, {"base_value": 5, "cooldown_sec": -3}],
    )
    def test_rejects_bad_values(self, db_engine, admin, kwargs):
        with pytest.raises(ValidationError):
            admin_service.upsert_xp_action(db_engine, action="post_created", actor_id=admin.id, **kwargs)

    def test_delete_missing(self, db_engine, admin):
        assert admin_service.delete_xp_action(db_engine, action="nope", actor_id=admin.id) is False


class TestLevels:
    def test_thresholds_must_increase(self, db_engine, admin):
        with pytest.raises(ValidationError, match="previous level"):
            admin_service.upsert_level(db_engine, level=3, min_xp=200, actor_id=admin.id)
        with pytest.raises(ValidationError, match="next level"):
            admin_service.upsert_level(db_engine, level=2, min_xp=900, actor_id=admin.id)

    def test_level_one_starts_at_zero(self, db_engine, admin):
        with pytest.raises(ValidationError):
            admin_service.upsert_level(db_engine, level=1, min_xp=10, actor_id=admin.id)
        with pytest.raises(BadRequestError):
            admin_service.delete_level(db_engine, level=1, actor_id=admin.id)

    def test_upsert_refreshes_cache(self, db_engine, cache, admin):
        admin_service.upsert_level(
            db_engine, level=2, min_xp=300, name="Degen", reward_dgt=Decimal("5"), actor_id=admin.id,
        )
        assert (2, 300, 5_000_000) in cache.get_levels()

    def test_import_curve_keeps_names_and_rewards(self, db_engine, cache, admin):
        admin_service.upsert_level(
            db_engine, level=2, min_xp=250, name="Degen", reward_dgt=Decimal("5"), actor_id=admin.id,
        )
        written = admin_service.import_level_curve(
            db_engine, max_level=30, base_xp=100, actor_id=admin.id,
        )

        levels = admin_service.list_levels(db_engine)
        assert written == len(levels) == 30
        assert levels[1]["name"] == "Degen"
        assert levels[1]["reward_dgt"] == "5.000000"
        assert levels[29]["rarity"] == "rare"
        assert len(cache.get_levels()) == 30
        assert admin_service.get_audit_log(db_engine, table="levels")[0]["action_type"] == "IMPORT"

    def test_import_curve_rejects_bad_input(self, db_engine, admin):
        with pytest.raises(ValidationError):
            admin_service.import_level_curve(db_engine, max_level=0, actor_id=admin.id)
        with pytest.raises(ValidationError):
            admin_service.import_level_curve(db_engine, max_level=10, base_xp=0, actor_id=admin.id)


class TestStructure:
    def test_zone_and_forum(self, db_engine, admin):
        zone = admin_service.create_structure(db_engine, name="Degen Lounge", type="zone", actor_id=admin.id)
        forum = admin_service.create_structure(
            db_engine, name="Shitposts", parent_id=zone["id"], xp_multiplier=1.25, actor_id=admin.id,
        )
        assert zone["slug"] == "degen-lounge"
        assert forum["parent_id"] == zone["id"]
        assert forum["xp_multiplier"] == 1.25

    def test_zone_cannot_have_parent(self, db_engine, admin, forum):
        with pytest.raises(ValidationError):
            admin_service.create_structure(
                db_engine, name="Nested", type="zone", parent_id=forum["parent_id"], actor_id=admin.id,
            )

    def test_duplicate_slug(self, db_engine, admin, forum):
        with pytest.raises(ConflictError):
            admin_service.create_structure(
                db_engine, name="Other", slug=forum["slug"], parent_id=forum["parent_id"], actor_id=admin.id,
            )

    def test_update_refreshes_forum_multiplier(self, db_engine, cache, admin, forum):
        admin_service.update_structure(db_engine, forum["id"], actor_id=admin.id, xp_multiplier=1.75)
        assert cache.get_forum_multiplier(forum["id"]) == 1.75

    def test_rejects_non_positive_multiplier(self, db_engine, admin, forum):
        with pytest.raises(ValidationError):
            admin_service.update_structure(db_engine, forum["id"], actor_id=admin.id, xp_multiplier=0)

    def test_delete_non_empty_zone(self, db_engine, admin, forum):
        with pytest.raises(ConflictError):
            admin_service.delete_structure(db_engine, forum["parent_id"], actor_id=admin.id)
        assert admin_service.delete_structure(db_engine, forum["id"], actor_id=admin.id)
        assert admin_service.delete_structure(db_engine, forum["parent_id"], actor_id=admin.id)
        assert admin_service.delete_structure(db_engine, forum["parent_id"], actor_id=admin.id) is False


class TestFeatureFlags:
    def test_toggle_refreshes_cache(self, db_engine, cache, admin):
        admin_service.set_feature_flag(db_engine, key="rain", enabled=False, actor_id=admin.id)
        assert cache.is_feature_enabled("rain") is False
        admin_service.set_feature_flag(db_engine, key="rain", enabled=True, actor_id=admin.id)
        assert cache.is_feature_enabled("rain") is True

    def test_rollout_bounds(self, db_engine, admin):
        with pytest.raises(ValidationError):
            admin_service.set_feature_flag(
                db_engine, key="rain", enabled=True, rollout_percentage=101, actor_id=admin.id,
            )


class TestEconomyOverrides:
    def test_override_merges_and_refreshes(self, db_engine, cache, admin):
        effective = admin_service.set_economy_override(
            db_engine, section="tipping", value={"min_amount": "2"}, actor_id=admin.id,
        )
        assert Decimal(effective["tipping"]["min_amount"]) == 2
        assert cache.economy().tipping.min_amount == Decimal("2")
        assert cache.economy().tipping.max_amount == Decimal("1000")

    def test_invalid_override_writes_nothing(self, db_engine, admin):
        with pytest.raises(ValidationError):
            admin_service.set_economy_override(
                db_engine, section="tipping", value={"min_amount": "-1"}, actor_id=admin.id,
            )
        assert admin_service.get_economy_config(db_engine)["overrides"] == {}

    def test_unknown_section(self, db_engine, admin):
        with pytest.raises(ValidationError):
            admin_service.set_economy_override(db_engine, section="casino", value={}, actor_id=admin.id)

    def test_reset(self, db_engine, cache, admin):
        admin_service.set_economy_override(
            db_engine, section="tipping", value={"min_amount": "2"}, actor_id=admin.id,
        )
        admin_service.set_economy_override(
            db_engine, section="rain", value={"min_amount": "10"}, actor_id=admin.id,
        )
        assert admin_service.reset_economy_override(db_engine, section="rain", actor_id=admin.id) == 1
        assert admin_service.reset_economy_override(db_engine, actor_id=admin.id) == 1
        assert cache.economy().tipping.min_amount == Decimal("1")


class TestUserModeration:
    def test_ban_and_unban(self, db_engine, admin, make_user):
        user = make_user("alice")
        banned = admin_service.ban_user(
            db_engine, user_id=user.id, actor_id=admin.id, reason="spam", duration_hours=24,
        )
        assert banned["is_banned"]
        with pytest.raises(ConflictError):
            admin_service.ban_user(db_engine, user_id=user.id, actor_id=admin.id)

        restored = admin_service.unban_user(db_engine, user_id=user.id, actor_id=admin.id)
        assert not restored["is_banned"]
        with pytest.raises(ConflictError):
            admin_service.unban_user(db_engine, user_id=user.id, actor_id=admin.id)

        actions = [e["action_type"] for e in admin_service.get_audit_log(db_engine, table="users")]
        assert actions[:2] == ["UNBAN", "BAN"]

    def test_cannot_ban_self_or_admins(self, db_engine, admin, make_user):
        other_admin = make_user("root", role="admin")
        with pytest.raises(BadRequestError):
            admin_service.ban_user(db_engine, user_id=admin.id, actor_id=admin.id)
        with pytest.raises(ForbiddenError):
            admin_service.ban_user(db_engine, user_id=other_admin.id, actor_id=admin.id)

    def test_set_role(self, db_engine, admin, make_user):
        user = make_user("alice")
        assert admin_service.set_user_role(
            db_engine, user_id=user.id, role="moderator", actor_id=admin.id,
        )["role"] == "moderator"
        with pytest.raises(ValidationError):
            admin_service.set_user_role(db_engine, user_id=user.id, role="overlord", actor_id=admin.id)

    def test_list_users_search(self, db_engine, admin, make_user):
        make_user("alice")
        make_user("bob")
        assert [u["username"] for u in admin_service.list_users(db_engine, search="ALI")] == ["alice"]

    def test_unknown_user(self, db_engine, admin):
        with pytest.raises(NotFoundError):
            admin_service.set_user_role(db_engine, user_id=9999, role="user", actor_id=admin.id)


class TestBalanceAdjustments:
    def test_credit_then_debit(self, db_engine, cache, admin, make_user):
        user = make_user("alice")
        admin_service.adjust_dgt(
            db_engine, cache, user_id=user.id, amount=Decimal("10"), direction="credit",
            reason="contest prize", actor_id=admin.id,
        )
        result = admin_service.adjust_dgt(
            db_engine, cache, user_id=user.id, amount=Decimal("4"), direction="debit", actor_id=admin.id,
        )
        assert result["balance"] == "6.000000"

        entry = admin_service.get_audit_log(db_engine, table="wallets")[0]
        assert entry["action_type"] == "DGT_DEBIT"
        assert entry["before"] == {"balance": "10.000000"}

    def test_debit_beyond_balance(self, db_engine, cache, admin, make_user):
        user = make_user("alice")
        with pytest.raises(InsufficientFundsError):
            admin_service.adjust_dgt(
                db_engine, cache, user_id=user.id, amount=Decimal("1"), direction="debit", actor_id=admin.id,
            )
        assert admin_service.get_audit_log(db_engine, table="wallets") == []

    def test_bad_direction(self, db_engine, cache, admin, make_user):
        user = make_user("alice")
        with pytest.raises(ValidationError):
            admin_service.adjust_dgt(
                db_engine, cache, user_id=user.id, amount=Decimal("1"), direction="sideways", actor_id=admin.id,
            )

    def test_adjust_xp_is_audited(self, db_engine, cache, admin, make_user):
        user = make_user("alice")
        result = admin_service.adjust_xp(
            db_engine, cache, user_id=user.id, amount=800, adjustment_type="set", actor_id=admin.id,
        )
        assert (result["new_xp"], result["new_level"], result["leveled_up"]) == (800, 3, True)
        entry = admin_service.get_audit_log(db_engine, table="users")[0]
        assert entry["action_type"] == "XP_ADJUST"
        assert entry["after"] == {"xp": 800, "level": 3}
        assert wallet_service.get_balance(db_engine, user.id) == 0
