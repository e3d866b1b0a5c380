"""
tests/test_user_service.py — Accounts, Passwords & Bans
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from degentalk.database.engine import get_session
from degentalk.database.models import User, UserBan, utcnow
from degentalk.errors import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    UserBannedError,
    ValidationError,
)
from degentalk.services import admin_service, user_service


class TestPasswords:
    def test_hash_and_check(self):
        hashed = user_service.hash_password("hunter2hunter2", rounds=4)
        assert hashed != "hunter2hunter2"
        assert user_service.check_password("hunter2hunter2", hashed)
        assert not user_service.check_password("hunter3hunter3", hashed)

    def test_garbage_hash_is_false(self):
        assert user_service.check_password("whatever", "not-a-bcrypt-hash") is False


class TestCreateUser:
    def test_email_is_lowercased(self, db_engine, make_user):
        user = user_service.create_user(
            db_engine, username="Satoshi", email="Sat@Example.COM",
            password="hunter2hunter2", bcrypt_rounds=4,
        )
        assert user.email == "sat@example.com"
        assert user.role == "user"

    def test_duplicate_username(self, make_user):
        make_user("alice")
        with pytest.raises(ConflictError, match="Username"):
            make_user("alice")

    def test_duplicate_email(self, db_engine, make_user):
        make_user("alice")
        with pytest.raises(ConflictError, match="Email"):
            user_service.create_user(
                db_engine, username="alice2", email="ALICE@example.com",
                password="hunter2hunter2", bcrypt_rounds=4,
            )

    @pytest.mark.parametrize("username", ["ab", "has space", "semi;colon", "x" * 51])
    def test_rejects_bad_usernames(self, db_engine, username):
        with pytest.raises(ValidationError):
            user_service.create_user(
                db_engine, username=username, email="a@example.com", password="hunter2hunter2",
            )

    def test_rejects_short_password(self, db_engine):
        with pytest.raises(ValidationError, match="at least 8"):
            user_service.create_user(
                db_engine, username="alice", email="a@example.com", password="short",
            )

    def test_rejects_unknown_role(self, db_engine):
        with pytest.raises(ValidationError, match="Unknown role"):
            user_service.create_user(
                db_engine, username="alice", email="a@example.com",
                password="hunter2hunter2", role="overlord",
            )


class TestAuthenticate:
    def test_valid_credentials(self, db_engine, make_user):
        alice = make_user("alice")
        assert user_service.authenticate(db_engine, "alice", "correct-horse-battery").id == alice.id

    @pytest.mark.parametrize("username, password", [("alice", "wrong-password"), ("nobody", "x" * 10)])
    def test_bad_credentials(self, db_engine, make_user, username, password):
        make_user("alice")
        with pytest.raises(UnauthorizedError):
            user_service.authenticate(db_engine, username, password)

    def test_banned_user_refused(self, db_engine, make_user, admin):
        alice = make_user("alice")
        admin_service.ban_user(db_engine, user_id=alice.id, actor_id=admin.id, reason="spam")
        with pytest.raises(UserBannedError):
            user_service.authenticate(db_engine, "alice", "correct-horse-battery")

    def test_expired_ban_is_lifted(self, db_engine, make_user, admin):
        alice = make_user("alice")
        admin_service.ban_user(db_engine, user_id=alice.id, actor_id=admin.id, duration_hours=1)
        with get_session(db_engine) as session:
            ban = session.scalar(select(UserBan).where(UserBan.user_id == alice.id))
            ban.expires_at = utcnow() - timedelta(minutes=1)

        user_service.authenticate(db_engine, "alice", "correct-horse-battery")

        with get_session(db_engine) as session:
            assert session.get(User, alice.id).is_banned is False
            ban = session.scalar(select(UserBan).where(UserBan.user_id == alice.id))
            assert ban.lifted_at is not None


class TestProfile:
    def test_unknown_user(self, db_engine, cache):
        with pytest.raises(NotFoundError):
            user_service.get_user(db_engine, 9999)
        with pytest.raises(NotFoundError):
            user_service.update_profile(db_engine, cache, 9999, bio="gm")

    def test_partial_profile_earns_nothing(self, db_engine, cache, make_user):
        alice = make_user("alice")
        updated = user_service.update_profile(db_engine, cache, alice.id, bio="gm")
        assert updated.bio == "gm"
        assert updated.xp == 0

    def test_completed_profile_earns_xp(self, db_engine, cache, make_user):
        alice = make_user("alice")
        user_service.update_profile(db_engine, cache, alice.id, bio="gm")
        updated = user_service.update_profile(
            db_engine, cache, alice.id, avatar_url="https://cdn.example.com/a.png",
        )
        assert updated.xp == 50

    def test_unknown_fields_are_ignored(self, db_engine, cache, make_user):
        alice = make_user("alice")
        updated = user_service.update_profile(db_engine, cache, alice.id, role="admin", bio="gm")
        assert updated.role == "user"

    def test_user_to_dict_has_no_secrets(self, make_user):
        data = user_service.user_to_dict(make_user("alice"))
        assert "password_hash" not in data
        assert "email" not in data
        assert data["username"] == "alice"
