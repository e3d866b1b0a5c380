"""
tests/test_cache.py — ConfigCache Unit Tests
==============================================

Tests NOTIFY payload routing (without a real PG connection), the
notify_before_commit allowlist, listener health and in-process refresh
after commit.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from degentalk.database.engine import get_session
from degentalk.database.models import EconomyConfigOverride, Setting
from degentalk.engine.cache import ALLOWED_NOTIFY_TABLES, ConfigCache, notify_before_commit


class TestNotifyRouting:
    """Test that NOTIFY payloads route to the correct reload method."""

    @pytest.fixture
    def cache(self):
        """Build a ConfigCache on a mock engine (no DB needed)."""
        return ConfigCache(MagicMock())

    @pytest.mark.parametrize(
        "table_name, expected_method",
        [
            ("settings", "_load_settings"),
            ("xp_action_settings", "_load_xp_actions"),
            ("forum_structure", "_load_forum_multipliers"),
            ("feature_flags", "_load_feature_flags"),
            ("levels", "_load_levels"),
            ("economy_config_overrides", "_load_economy"),
            ("achievements", "_load_achievements"),
            (" Levels ", "_load_levels"),
        ],
    )
    def test_notify_routes_to_correct_reload(self, cache, table_name, expected_method):
        with patch.object(cache, expected_method) as mock_method:
            cache.handle_notify(table_name)
            mock_method.assert_called_once()

    def test_unknown_notify_ignored(self, cache):
        with (
            patch.object(cache, "_load_settings") as mock_settings,
            patch.object(cache, "_load_levels") as mock_levels,
            patch.object(cache, "_load_economy") as mock_economy,
        ):
            cache.handle_notify("users")
            mock_settings.assert_not_called()
            mock_levels.assert_not_called()
            mock_economy.assert_not_called()


class TestNotifyAllowlist:
    """notify_before_commit() must refuse table names outside the allowlist."""

    @pytest.mark.parametrize(
        "table_name",
        ["users", "levels'; DROP TABLE users; --", ""],
    )
    def test_rejects_unknown_table(self, db_engine, table_name):
        with get_session(db_engine) as session:
            with pytest.raises(ValueError, match="Invalid table name"):
                notify_before_commit(session, table_name)

    def test_allowlist_is_frozen(self):
        assert isinstance(ALLOWED_NOTIFY_TABLES, frozenset)

    def test_every_cached_table_is_allowed(self):
        for table in ("settings", "xp_action_settings", "forum_structure",
                      "feature_flags", "levels", "economy_config_overrides",
                      "achievements"):
            assert table in ALLOWED_NOTIFY_TABLES


class TestListenerHealth:
    def test_initially_unhealthy(self):
        cache = ConfigCache(MagicMock())
        assert cache.listener_healthy is False

    def test_listener_skipped_on_sqlite(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.start_listener()
        assert cache.listener_healthy is False
        cache.stop_listener()


class TestLoadAndRefresh:
    def test_load_all_reads_seeded_rows(self, cache):
        assert cache.get_int("forum.max_tags_per_thread") == 5
        assert cache.get_bool("leaderboard.public") is True
        assert cache.get_xp_action("thread_created").base_value == 30
        assert cache.is_feature_enabled("tipping")
        assert cache.get_levels()[0] == (1, 0, 0)
        assert len(cache.get_levels()) == 10

    def test_unknown_flag_uses_default(self, cache):
        assert cache.is_feature_enabled("shoutbox") is True
        assert cache.is_feature_enabled("shoutbox", default=False) is False

    def test_typed_accessors_fall_back_on_garbage(self, cache):
        assert cache.get_int("missing.key", 7) == 7
        assert cache.get_bool("missing.key", True) is True
        with patch.object(cache, "get_setting", return_value="lots"):
            assert cache.get_int("forum.threads_per_page", 20) == 20

    def test_commit_refreshes_cache(self, db_engine, cache):
        with get_session(db_engine) as session:
            session.get(Setting, "forum.threads_per_page").value_json = json.dumps(50)
            notify_before_commit(session, "settings")
        assert cache.get_int("forum.threads_per_page") == 50

    def test_rollback_does_not_refresh(self, db_engine, cache):
        with pytest.raises(RuntimeError):
            with get_session(db_engine) as session:
                session.get(Setting, "forum.threads_per_page").value_json = json.dumps(50)
                notify_before_commit(session, "settings")
                raise RuntimeError("abort")
        assert cache.get_int("forum.threads_per_page") == 20

    def test_other_engines_are_not_refreshed(self, db_engine, cache):
        other = ConfigCache(MagicMock())
        with patch.object(other, "handle_notify") as mock_notify:
            with get_session(db_engine) as session:
                notify_before_commit(session, "levels")
            mock_notify.assert_not_called()

    def test_invalid_stored_economy_falls_back_to_defaults(self, db_engine, cache):
        with get_session(db_engine) as session:
            session.add(EconomyConfigOverride(section="tipping", value={"min_amount": "-3"}))
            notify_before_commit(session, "economy_config_overrides")
        assert cache.economy().tipping.min_amount == 1
