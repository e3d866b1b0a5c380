"""
tests/test_social.py — Follow Graph & Notifications
=====================================================
"""

from __future__ import annotations

import pytest

from degentalk.errors import BadRequestError, BusinessRuleViolationError, ConflictError, NotFoundError
from degentalk.services import notification_service, social_service


@pytest.fixture
def trio(make_user):
    return make_user("alice"), make_user("bob"), make_user("carol")


class TestFollow:
    def test_follow_and_counts(self, db_engine, trio):
        alice, bob, carol = trio
        social_service.follow(db_engine, alice.id, bob.id)
        social_service.follow(db_engine, carol.id, bob.id)

        assert social_service.is_following(db_engine, alice.id, bob.id)
        assert not social_service.is_following(db_engine, bob.id, alice.id)
        assert social_service.get_follow_counts(db_engine, bob.id) == {"followers": 2, "following": 0}
        assert social_service.get_follow_counts(db_engine, alice.id) == {"followers": 0, "following": 1}

    def test_follow_notifies_target(self, db_engine, trio):
        alice, bob, _ = trio
        social_service.follow(db_engine, alice.id, bob.id)
        note = notification_service.list_notifications(db_engine, bob.id)[0]
        assert note["type"] == "new_follower"
        assert note["data"] == {"follower_id": alice.id}

    def test_cannot_follow_self(self, db_engine, trio):
        alice, _, _ = trio
        with pytest.raises(BadRequestError):
            social_service.follow(db_engine, alice.id, alice.id)

    def test_duplicate_follow(self, db_engine, trio):
        alice, bob, _ = trio
        social_service.follow(db_engine, alice.id, bob.id)
        with pytest.raises(ConflictError):
            social_service.follow(db_engine, alice.id, bob.id)

    def test_follow_unknown_user(self, db_engine, trio):
        alice, _, _ = trio
        with pytest.raises(NotFoundError):
            social_service.follow(db_engine, alice.id, 9999)

    def test_following_cap(self, db_engine, trio):
        alice, bob, carol = trio
        social_service.follow(db_engine, alice.id, bob.id, max_following=1)
        with pytest.raises(BusinessRuleViolationError):
            social_service.follow(db_engine, alice.id, carol.id, max_following=1)

    def test_unfollow(self, db_engine, trio):
        alice, bob, _ = trio
        social_service.follow(db_engine, alice.id, bob.id)
        social_service.unfollow(db_engine, alice.id, bob.id)
        assert not social_service.is_following(db_engine, alice.id, bob.id)
        with pytest.raises(NotFoundError):
            social_service.unfollow(db_engine, alice.id, bob.id)

    def test_follower_and_following_lists(self, db_engine, trio):
        alice, bob, carol = trio
        social_service.follow(db_engine, alice.id, bob.id)
        social_service.follow(db_engine, alice.id, carol.id)

        following = social_service.get_following(db_engine, alice.id)
        assert {u["username"] for u in following} == {"bob", "carol"}
        followers = social_service.get_followers(db_engine, bob.id)
        assert [u["username"] for u in followers] == ["alice"]

    def test_lists_for_unknown_user(self, db_engine):
        with pytest.raises(NotFoundError):
            social_service.get_followers(db_engine, 9999)


class TestNotifications:
    def test_unread_count_and_mark_read(self, db_engine, trio):
        alice, bob, carol = trio
        social_service.follow(db_engine, alice.id, bob.id)
        social_service.follow(db_engine, carol.id, bob.id)
        assert notification_service.unread_count(db_engine, bob.id) == 2

        newest = notification_service.list_notifications(db_engine, bob.id)[0]
        notification_service.mark_read(db_engine, bob.id, newest["id"])
        assert notification_service.unread_count(db_engine, bob.id) == 1
        unread = notification_service.list_notifications(db_engine, bob.id, unread_only=True)
        assert len(unread) == 1
        assert unread[0]["id"] != newest["id"]

    def test_mark_all_read(self, db_engine, trio):
        alice, bob, carol = trio
        social_service.follow(db_engine, alice.id, bob.id)
        social_service.follow(db_engine, carol.id, bob.id)
        assert notification_service.mark_all_read(db_engine, bob.id) == 2
        assert notification_service.unread_count(db_engine, bob.id) == 0

    def test_cannot_read_someone_elses(self, db_engine, trio):
        alice, bob, _ = trio
        social_service.follow(db_engine, alice.id, bob.id)
        note_id = notification_service.list_notifications(db_engine, bob.id)[0]["id"]
        with pytest.raises(NotFoundError):
            notification_service.mark_read(db_engine, alice.id, note_id)
