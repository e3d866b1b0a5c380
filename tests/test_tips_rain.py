"""
tests/test_tips_rain.py — Tips & Rain
=======================================
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from degentalk.database.engine import get_session
from degentalk.database.models import Post, User, utcnow
from degentalk.errors import (
    BadRequestError,
    BusinessRuleViolationError,
    FeatureDisabledError,
    InsufficientFundsError,
    RateLimitError,
    ValidationError,
)
from degentalk.services import (
    admin_service,
    forum_service,
    notification_service,
    tip_service,
    wallet_service,
)


def _user(engine, user_id: int) -> User:
    with get_session(engine) as session:
        return session.get(User, user_id)


@pytest.fixture
def pair(make_user, fund):
    alice = make_user("alice")
    bob = make_user("bob")
    fund(alice.id, 100)
    return alice, bob


# ===========================================================================
# Tips
# ===========================================================================
class TestSendTip:
    def test_tip_moves_funds(self, db_engine, cache, pair):
        alice, bob = pair
        result = tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))

        assert result["amount"] == "2.000000"
        assert result["balance"] == "98.000000"
        assert result["tip_id"].startswith("tip_")
        assert wallet_service.get_balance(db_engine, bob.id) == 2_000_000

    def test_tip_side_effects(self, db_engine, cache, pair):
        alice, bob = pair
        tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"), message="ser")

        assert _user(db_engine, bob.id).clout == 1
        assert _user(db_engine, bob.id).xp == 5
        assert _user(db_engine, alice.id).xp == 2
        note = notification_service.list_notifications(db_engine, bob.id)[0]
        assert note["type"] == "tip_received"
        assert note["body"] == "ser"

    def test_fee_is_burned(self, db_engine, cache, pair, economy_override):
        alice, bob = pair
        economy_override("tipping", {"fee_percentage": "10"})
        tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))

        assert wallet_service.get_balance(db_engine, alice.id) == 98_000_000
        assert wallet_service.get_balance(db_engine, bob.id) == 1_800_000

    def test_cannot_tip_self(self, db_engine, cache, pair):
        alice, _ = pair
        with pytest.raises(BadRequestError):
            tip_service.send_tip(db_engine, cache, alice.id, alice.id, Decimal("2"))

    def test_below_minimum(self, db_engine, cache, pair):
        alice, bob = pair
        with pytest.raises(ValidationError):
            tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("0.5"))

    def test_staff_may_send_dust(self, db_engine, cache, make_user, fund):
        mod = make_user("mod", role="moderator")
        bob = make_user("bob")
        fund(mod.id, 1)
        tip_service.send_tip(db_engine, cache, mod.id, bob.id, Decimal("0.05"))
        assert wallet_service.get_balance(db_engine, bob.id) == 50_000

    def test_above_maximum(self, db_engine, cache, pair):
        alice, bob = pair
        with pytest.raises(ValidationError):
            tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("1001"))

    def test_insufficient_funds(self, db_engine, cache, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        with pytest.raises(InsufficientFundsError):
            tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))

    def test_cooldown(self, db_engine, cache, pair):
        alice, bob = pair
        tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))
        with pytest.raises(RateLimitError) as exc_info:
            tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))
        assert 1 <= exc_info.value.retry_after <= 11

    def test_daily_limit(self, db_engine, cache, pair, economy_override):
        alice, bob = pair
        economy_override("tipping", {"cooldown_seconds": 0, "daily_limit": "3"})
        tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))
        with pytest.raises(BusinessRuleViolationError):
            tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))

    def test_flag_off(self, db_engine, cache, pair, admin):
        alice, bob = pair
        admin_service.set_feature_flag(db_engine, key="tipping", enabled=False, actor_id=admin.id)
        with pytest.raises(FeatureDisabledError):
            tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("2"))


class TestPostTips:
    @pytest.fixture
    def bob_post(self, db_engine, cache, pair, forum) -> int:
        _, bob = pair
        thread = forum_service.create_thread(
            db_engine, cache, bob.id, forum["id"], "wen moon", "soon",
        )
        with get_session(db_engine) as session:
            return session.scalar(select(Post.id).where(Post.thread_id == thread["id"]))

    def test_tip_on_post_tracks_total(self, db_engine, cache, pair, bob_post):
        alice, bob = pair
        tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("3"), post_id=bob_post)
        with get_session(db_engine) as session:
            assert session.get(Post, bob_post).tip_total == 3_000_000

    def test_recipient_must_be_author(self, db_engine, cache, pair, make_user, bob_post):
        alice, _ = pair
        carol = make_user("carol")
        with pytest.raises(BadRequestError, match="not the author"):
            tip_service.send_tip(db_engine, cache, alice.id, carol.id, Decimal("3"), post_id=bob_post)

    def test_forum_with_tipping_disabled(self, db_engine, cache, pair, admin, forum, bob_post):
        alice, bob = pair
        admin_service.update_structure(
            db_engine, forum["id"], actor_id=admin.id, tipping_enabled=False,
        )
        with pytest.raises(FeatureDisabledError):
            tip_service.send_tip(db_engine, cache, alice.id, bob.id, Decimal("3"), post_id=bob_post)


# ===========================================================================
# Rain
# ===========================================================================
class TestRain:
    @pytest.fixture
    def crowd(self, make_user, fund):
        sender = make_user("rainmaker")
        fund(sender.id, 100)
        others = [make_user(name) for name in ("bob", "carol", "dave")]
        return sender, others

    def test_rain_splits_equally(self, db_engine, cache, crowd):
        sender, others = crowd
        result = tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("9"), 3)

        assert result["per_user_amount"] == "3.000000"
        assert sorted(result["recipients"]) == sorted(u.id for u in others)
        for user in others:
            assert wallet_service.get_balance(db_engine, user.id) == 3_000_000
            note = notification_service.list_notifications(db_engine, user.id)[0]
            assert note["type"] == "rain_received"

    def test_remainder_is_not_debited(self, db_engine, cache, crowd):
        sender, _ = crowd
        result = tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("10"), 3)

        assert result["per_user_amount"] == "3.333333"
        assert result["amount"] == "9.999999"
        assert wallet_service.get_balance(db_engine, sender.id) == 90_000_001

    def test_fewer_candidates_than_requested(self, db_engine, cache, crowd):
        sender, _ = crowd
        result = tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("12"), 10)
        assert len(result["recipients"]) == 3
        assert result["per_user_amount"] == "4.000000"

    def test_inactive_and_banned_users_excluded(self, db_engine, cache, crowd):
        sender, (bob, carol, dave) = crowd
        with get_session(db_engine) as session:
            session.get(User, bob.id).last_seen_at = utcnow() - timedelta(hours=2)
            session.get(User, carol.id).is_banned = True

        result = tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("6"), 3)
        assert result["recipients"] == [dave.id]

    def test_no_active_users(self, db_engine, cache, make_user, fund):
        sender = make_user("rainmaker")
        fund(sender.id, 100)
        with pytest.raises(BusinessRuleViolationError):
            tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("10"), 3)

    def test_below_minimum(self, db_engine, cache, crowd):
        sender, _ = crowd
        with pytest.raises(ValidationError):
            tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("4"), 3)

    @pytest.mark.parametrize("count", [0, 16])
    def test_recipient_count_bounds(self, db_engine, cache, crowd, count):
        sender, _ = crowd
        with pytest.raises(ValidationError):
            tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("10"), count)

    def test_cooldown(self, db_engine, cache, crowd):
        sender, _ = crowd
        tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("6"), 3)
        with pytest.raises(RateLimitError):
            tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("6"), 3)

    def test_recent_events(self, db_engine, cache, crowd):
        sender, _ = crowd
        tip_service.make_it_rain(db_engine, cache, sender.id, Decimal("6"), 2)
        events = tip_service.get_recent_rain_events(db_engine)
        assert len(events) == 1
        assert events[0]["username"] == "rainmaker"
        assert events[0]["recipient_count"] == 2
