"""
degentalk.engine.cache — In-Memory Config Cache with PG LISTEN/NOTIFY
=======================================================================

Admin-tunable data that every request reads (settings, XP actions, forum
multipliers, feature flags, levels, active achievements, the merged
economy config) is cached in memory.  Writers call
:func:`notify_before_commit`; on PostgreSQL that emits
``NOTIFY config_changed, '<table>'`` so other processes reload, and caches
bound to the writer's engine are refreshed in-process after commit.
"""

from __future__ import annotations

import json
import logging
import random
import select as _select
import threading
import weakref
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, select, text
from sqlalchemy.orm import Session

from degentalk.database.models import (
    Achievement,
    EconomyConfigOverride,
    FeatureFlag,
    ForumStructure,
    Level,
    Setting,
    XpActionSetting,
)
from degentalk.engine.economy import EconomyConfig, build_economy_config
from degentalk.engine.xp_actions import XpActionConfig, resolve_action
from degentalk.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "config_changed"

# table → loader method; the keys double as the NOTIFY allowlist
_RELOADERS: dict[str, str] = {
    "settings": "_load_settings",
    "xp_action_settings": "_load_xp_actions",
    "forum_structure": "_load_forum_multipliers",
    "feature_flags": "_load_feature_flags",
    "economy_config_overrides": "_load_economy",
    "levels": "_load_levels",
    "achievements": "_load_achievements",
}
ALLOWED_NOTIFY_TABLES: frozenset[str] = frozenset(_RELOADERS)

_live_caches: weakref.WeakSet[ConfigCache] = weakref.WeakSet()


class ConfigCache:
    """Thread-safe in-memory cache for economy, XP and forum configuration.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()
        cache.start_listener()

        cfg = cache.get_xp_action("post_created")
        mult = cache.get_forum_multiplier(forum_id)
        tipping = cache.economy().tipping
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()

        # key → parsed JSON value
        self._settings: dict[str, Any] = {}
        # action → XpActionConfig (disabled rows included)
        self._xp_actions: dict[str, XpActionConfig] = {}
        # structure_id → xp_multiplier
        self._forum_multipliers: dict[int, float] = {}
        # flag key → enabled
        self._feature_flags: dict[str, bool] = {}
        # (level, min_xp, reward_dgt) ordered by level
        self._levels: list[tuple[int, int, int]] = []
        # active achievements; series name → tiers ordered by series_order
        self._achievements: list[Achievement] = []
        self._achievement_series: dict[str, list[Achievement]] = {}
        self._economy: EconomyConfig = EconomyConfig()

        self._listener_healthy: bool = False
        self._listener_failed: bool = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

        _live_caches.add(self)

    # -------------------------------------------------------------------
    # Cache loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Read every cached table.  The API lifespan calls this once before serving."""
        self._load_settings()
        self._load_xp_actions()
        self._load_forum_multipliers()
        self._load_feature_flags()
        self._load_levels()
        self._load_economy()
        self._load_achievements()
        logger.info(
            "ConfigCache loaded: %d settings, %d XP actions, %d forums, "
            "%d feature flags, %d levels, %d achievements",
            len(self._settings),
            len(self._xp_actions),
            len(self._forum_multipliers),
            len(self._feature_flags),
            len(self._levels),
            len(self._achievements),
        )

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json
        with self._lock:
            self._settings = parsed

    def _load_xp_actions(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(XpActionSetting)).all()
            actions = {
                r.action: XpActionConfig(
                    action=r.action,
                    base_value=r.base_value,
                    description=r.description or "",
                    max_per_day=r.max_per_day,
                    cooldown_sec=r.cooldown_sec,
                    enabled=r.enabled,
                )
                for r in rows
            }
        with self._lock:
            self._xp_actions = actions

    def _load_forum_multipliers(self) -> None:
        with Session(self._engine) as session:
            rows = session.execute(
                select(ForumStructure.id, ForumStructure.xp_multiplier)
            ).all()
            mults = {row.id: row.xp_multiplier for row in rows}
        with self._lock:
            self._forum_multipliers = mults

    def _load_feature_flags(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(FeatureFlag)).all()
            flags = {r.key: r.enabled for r in rows}
        with self._lock:
            self._feature_flags = flags

    def _load_levels(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(Level).order_by(Level.level)).all()
            levels = [(r.level, r.min_xp, r.reward_dgt) for r in rows]
        with self._lock:
            self._levels = levels

    def _load_economy(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(EconomyConfigOverride)).all()
            overrides = {r.section: r.value for r in rows}
        try:
            economy = build_economy_config(overrides)
        except ValidationError:
            logger.exception("Stored economy overrides are invalid; using defaults")
            economy = EconomyConfig()
        with self._lock:
            self._economy = economy

    def _load_achievements(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(Achievement)
                .where(Achievement.is_active.is_(True))
                .order_by(Achievement.id)
            ).all()
            by_series: dict[str, list[Achievement]] = {}
            for row in rows:
                session.expunge(row)
                if row.series is not None:
                    by_series.setdefault(row.series, []).append(row)
            for tiers in by_series.values():
                tiers.sort(key=lambda a: a.series_order or 0)
        with self._lock:
            self._achievements = list(rows)
            self._achievement_series = by_series

    # -------------------------------------------------------------------
    # Cache reads (thread-safe)
    # -------------------------------------------------------------------
    def get_xp_action(self, action: str) -> XpActionConfig | None:
        """Resolve an enabled action config, or ``None`` if unknown/disabled."""
        with self._lock:
            configured = dict(self._xp_actions)
        return resolve_action(action, configured)

    def get_xp_actions(self) -> dict[str, XpActionConfig]:
        with self._lock:
            return dict(self._xp_actions)

    def get_forum_multiplier(self, structure_id: int | None) -> float:
        if structure_id is None:
            return 1.0
        with self._lock:
            return self._forum_multipliers.get(structure_id, 1.0)

    def is_feature_enabled(self, key: str, default: bool = True) -> bool:
        with self._lock:
            return self._feature_flags.get(key, default)

    def get_levels(self) -> list[tuple[int, int, int]]:
        with self._lock:
            return list(self._levels)

    def get_active_achievements(self) -> list[Achievement]:
        with self._lock:
            return list(self._achievements)

    def get_series_predecessor(self, series: str, order: int) -> Achievement | None:
        """The tier directly below *order* in *series*, if one is active."""
        with self._lock:
            tiers = self._achievement_series.get(series, [])
        below = [a for a in tiers if a.series_order is not None and a.series_order < order]
        return below[-1] if below else None

    def economy(self) -> EconomyConfig:
        with self._lock:
            return self._economy

    # -------------------------------------------------------------------
    # Typed setting accessors (thread-safe)
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get_setting(key)
        if val is None:
            return default
        return bool(val)

    # -------------------------------------------------------------------
    # Cache invalidation
    # -------------------------------------------------------------------
    def handle_notify(self, table_name: str) -> None:
        """Reload whatever was derived from *table_name*; unknown names are ignored."""
        table_name = table_name.strip().lower()
        loader = _RELOADERS.get(table_name)
        if loader is None:
            logger.warning("Ignoring config invalidation for unrelated table %r", table_name)
            return
        logger.info("Reloading cached %s", table_name)
        getattr(self, loader)()

    @property
    def listener_healthy(self) -> bool:
        return self._listener_healthy and not self._listener_failed

    def stop_listener(self) -> None:
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("Config listener stopped")

    def start_listener(self) -> None:
        """Follow ``NOTIFY config_changed`` on a daemon thread (PostgreSQL only).

        Lost connections are retried with jittered exponential backoff; after
        ten straight failures the listener gives up and reports unhealthy.
        """
        if self._engine.dialect.name != "postgresql":
            logger.info("NOTIFY listener skipped for dialect %s", self._engine.dialect.name)
            return

        import psycopg2

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {NOTIFY_CHANNEL};")
                    logger.info("Listening for config changes on %s", NOTIFY_CHANNEL)
                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            try:
                                self.handle_notify(notify.payload or "")
                            except Exception:
                                logger.exception(
                                    "Config reload for %r failed", notify.payload,
                                )

                except Exception:
                    self._listener_healthy = False
                    attempt += 1
                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "Config listener gave up after %d attempts; admin edits need a restart to apply",
                            max_reconnect_attempts,
                        )
                        self._listener_failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "Config listener disconnected (%d/%d), retrying in %.1fs",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        conn.close()

        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-notify-listener")
        self._listener_thread = thread
        thread.start()


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------
def _refresh_local(engine: Any, table_name: str) -> None:
    for cache in list(_live_caches):
        if cache._engine is engine:
            cache.handle_notify(table_name)


def notify_before_commit(session: Session, table_name: str) -> None:
    """Make caches reload *table_name* once *session* commits.

    On PostgreSQL a ``NOTIFY`` is issued inside the transaction, so other
    processes hear about it only if the commit succeeds.  Caches in this
    process bound to the same engine reload from an ``after_commit`` hook.
    Raises ``ValueError`` for tables outside :data:`ALLOWED_NOTIFY_TABLES`.
    """
    if table_name not in ALLOWED_NOTIFY_TABLES:
        raise ValueError(
            f"Invalid table name for NOTIFY: {table_name!r} (expected one of "
            f"{', '.join(sorted(ALLOWED_NOTIFY_TABLES))})"
        )
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        session.execute(text(f"NOTIFY {NOTIFY_CHANNEL}, '{table_name}'"))

    event.listen(
        session,
        "after_commit",
        lambda _s: _refresh_local(bind, table_name),
        once=True,
    )

