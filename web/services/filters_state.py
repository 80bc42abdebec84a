from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from services import filter_constants as const
from services.filter_models import Filter, Group, GroupState
from services.notifier import Notifier


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterVersionInfo:
    version: str
    last_check_time: int
    last_update_time: int


@dataclass(frozen=True)
class FilterStateInfo:
    enabled: bool
    installed: bool
    loaded: bool


class FiltersStateStore:
    """Durable filter/group state plus a small key-value table."""

    def __init__(self, db_path: str = "/var/lib/filterhub/filters.db"):
        self.db_path = db_path
        self._init_lock = threading.Lock()
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        d = os.path.dirname(self.db_path)
        if d:
            os.makedirs(d, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def init_db(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS filter_state (
                        filter_id INTEGER PRIMARY KEY,
                        enabled INTEGER NOT NULL DEFAULT 0,
                        installed INTEGER NOT NULL DEFAULT 0,
                        loaded INTEGER NOT NULL DEFAULT 0
                    );
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS filter_versions (
                        filter_id INTEGER PRIMARY KEY,
                        version TEXT NOT NULL DEFAULT '',
                        last_check_time INTEGER NOT NULL DEFAULT 0,
                        last_update_time INTEGER NOT NULL DEFAULT 0
                    );
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS group_state (
                        group_id INTEGER PRIMARY KEY,
                        enabled INTEGER NOT NULL
                    );
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS filters_kv (
                        k TEXT PRIMARY KEY,
                        v TEXT NOT NULL
                    );
                    """
                )
            self._initialized = True

    # Key-value

    def get_item(self, key: str, default: Any = None) -> Any:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT v FROM filters_kv WHERE k=?", (key,)).fetchone()
        if not row:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            return default

    def set_item(self, key: str, value: Any) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO filters_kv(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (key, json.dumps(value)),
            )

    def remove_item(self, key: str) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute("DELETE FROM filters_kv WHERE k=?", (key,))

    # Filters

    def get_filters_version(self) -> Dict[int, FilterVersionInfo]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT filter_id, version, last_check_time, last_update_time FROM filter_versions"
            ).fetchall()
        return {
            int(r["filter_id"]): FilterVersionInfo(
                version=str(r["version"] or ""),
                last_check_time=int(r["last_check_time"] or 0),
                last_update_time=int(r["last_update_time"] or 0),
            )
            for r in rows
        }

    def get_filters_state(self) -> Dict[int, FilterStateInfo]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT filter_id, enabled, installed, loaded FROM filter_state").fetchall()
        return {
            int(r["filter_id"]): FilterStateInfo(
                enabled=bool(r["enabled"]),
                installed=bool(r["installed"]),
                loaded=bool(r["loaded"]),
            )
            for r in rows
        }

    def get_group_state(self) -> Dict[int, GroupState]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT group_id, enabled FROM group_state").fetchall()
        return {int(r["group_id"]): GroupState.from_enabled(bool(r["enabled"])) for r in rows}

    def update_filter_state(self, flt: Filter) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO filter_state(filter_id, enabled, installed, loaded) VALUES(?,?,?,?)
                ON CONFLICT(filter_id) DO UPDATE SET
                    enabled=excluded.enabled, installed=excluded.installed, loaded=excluded.loaded
                """,
                (int(flt.filter_id), int(bool(flt.enabled)), int(bool(flt.installed)), int(bool(flt.loaded))),
            )

    def update_filter_version(self, flt: Filter) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO filter_versions(filter_id, version, last_check_time, last_update_time) VALUES(?,?,?,?)
                ON CONFLICT(filter_id) DO UPDATE SET
                    version=excluded.version,
                    last_check_time=excluded.last_check_time,
                    last_update_time=excluded.last_update_time
                """,
                (int(flt.filter_id), str(flt.version or ""), int(flt.last_check_time or 0), int(flt.last_update_time or 0)),
            )

    def update_group_state(self, group: Group) -> None:
        self.init_db()
        with self._connect() as conn:
            if group.state is GroupState.NEVER_SET:
                conn.execute("DELETE FROM group_state WHERE group_id=?", (int(group.group_id),))
                return
            conn.execute(
                "INSERT INTO group_state(group_id, enabled) VALUES(?,?) "
                "ON CONFLICT(group_id) DO UPDATE SET enabled=excluded.enabled",
                (int(group.group_id), int(group.enabled)),
            )

    def remove_filter(self, filter_id: int) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute("DELETE FROM filter_state WHERE filter_id=?", (int(filter_id),))
            conn.execute("DELETE FROM filter_versions WHERE filter_id=?", (int(filter_id),))

    def _on_event(self, event: str, *args: Any) -> None:
        if not args:
            return
        target = args[0]
        if event == const.FILTER_GROUP_ENABLE_DISABLE and isinstance(target, Group):
            self.update_group_state(target)
        elif event in (const.FILTER_ENABLE_DISABLE, const.FILTER_ADD_REMOVE) and isinstance(target, Filter):
            self.update_filter_state(target)
        elif event == const.SUCCESS_DOWNLOAD_FILTER and isinstance(target, Filter):
            self.update_filter_state(target)
            self.update_filter_version(target)

    def attach(self, notifier: Notifier) -> int:
        """Persist lifecycle changes as they are published."""
        return notifier.add_listener(
            self._on_event,
            const.FILTER_GROUP_ENABLE_DISABLE,
            const.FILTER_ENABLE_DISABLE,
            const.FILTER_ADD_REMOVE,
            const.SUCCESS_DOWNLOAD_FILTER,
        )


_store: Optional[FiltersStateStore] = None


def get_filters_state_store() -> FiltersStateStore:
    global _store
    if _store is None:
        _store = FiltersStateStore(db_path=os.environ.get("FILTERS_DB", "/var/lib/filterhub/filters.db"))
    return _store
