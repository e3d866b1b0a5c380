"""
tests/test_settings.py — Settings, Feature Flags & Seeding
============================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from degentalk.database.engine import get_session
from degentalk.database.models import FeatureFlag, Level, Setting
from degentalk.database.seed import seed_all
from degentalk.errors import ValidationError
from degentalk.services import admin_service, settings_service


class TestSeeding:
    def test_seed_is_idempotent(self, db_engine):
        with get_session(db_engine) as session:
            before = session.scalar(select(func.count()).select_from(Setting))
        seed_all(db_engine)
        with get_session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(Setting)) == before
            assert session.scalar(select(func.count()).select_from(Level)) == 10

    def test_seed_never_overwrites_admin_edits(self, db_engine, admin):
        admin_service.set_feature_flag(db_engine, key="rain", enabled=False, actor_id=admin.id)
        seed_all(db_engine)
        with get_session(db_engine) as session:
            assert session.get(FeatureFlag, "rain").enabled is False


class TestSettings:
    def test_public_settings_hide_private_categories(self, db_engine):
        settings_service.upsert_setting(
            db_engine, key="ops.secret_knob", value=42, category="ops",
        )
        public = settings_service.get_public_settings(db_engine)
        assert public["site.name"] == "Degentalk"
        assert public["forum.max_tags_per_thread"] == 5
        assert "ops.secret_knob" not in public

    def test_update_keeps_existing_category(self, db_engine, cache):
        settings_service.upsert_setting(db_engine, key="forum.max_tags_per_thread", value=3)
        row = settings_service.get_setting(db_engine, "forum.max_tags_per_thread")
        assert row["value"] == 3
        assert row["category"] == "forum"
        assert cache.get_int("forum.max_tags_per_thread") == 3

    def test_new_key_defaults_to_general(self, db_engine):
        row = settings_service.upsert_setting(db_engine, key="misc.motd", value="gm")
        assert row["category"] == "general"

    def test_bulk_upsert_audits_changed_keys_only(self, db_engine, cache, admin):
        count = settings_service.bulk_upsert(
            db_engine,
            [
                {"key": "site.tagline", "value": "wagmi"},
                {"key": "site.name", "value": "Degentalk"},
                {"key": "shoutbox.max_length", "value": 280, "category": "social"},
            ],
            actor_id=admin.id,
        )
        assert count == 3
        assert cache.get_setting("site.tagline") == "wagmi"
        audited = {e["target_id"] for e in admin_service.get_audit_log(db_engine, table="settings")}
        assert audited == {"site.tagline", "shoutbox.max_length"}

    def test_bulk_upsert_is_all_or_nothing(self, db_engine):
        with pytest.raises(ValidationError):
            settings_service.bulk_upsert(
                db_engine, [{"key": "site.tagline", "value": "wagmi"}, {"key": "broken"}],
            )
        assert settings_service.get_setting(db_engine, "site.tagline")["value"] == "Where degens talk"

    def test_filter_by_category(self, db_engine):
        keys = [s["key"] for s in settings_service.get_all_settings(db_engine, category="forum")]
        assert keys == ["forum.max_tags_per_thread", "forum.posts_per_page", "forum.threads_per_page"]


class TestFlags:
    def test_list_feature_flags(self, db_engine):
        flags = {f["key"]: f["enabled"] for f in settings_service.list_feature_flags(db_engine)}
        assert flags["tipping"] is True
        assert set(flags) >= {"registration", "rain", "deposits", "withdrawals", "transfers"}
