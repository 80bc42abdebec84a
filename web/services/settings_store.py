from __future__ import annotations

import os
import sqlite3
from typing import Any, Dict, Optional


_DEFAULT_SETTINGS = {
    # Hours between automatic update checks; zero or negative disables them.
    "update_period_hours": "6",
    "locale": "en",
}

_MAX_UPDATE_PERIOD_HOURS = 24 * 30


class SettingsStore:
    def __init__(self, db_path: str = "/var/lib/filterhub/filters.db", defaults: Optional[Dict[str, str]] = None):
        self.db_path = db_path
        self._defaults = dict(_DEFAULT_SETTINGS)
        self._defaults.update(defaults or {})

    def _connect(self) -> sqlite3.Connection:
        d = os.path.dirname(self.db_path)
        if d:
            os.makedirs(d, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS filter_settings (
                    k TEXT PRIMARY KEY,
                    v TEXT NOT NULL
                );
                """
            )
            for k, v in self._defaults.items():
                conn.execute("INSERT OR IGNORE INTO filter_settings(k, v) VALUES(?,?)", (k, v))

    def _get(self, key: str) -> str:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute("SELECT v FROM filter_settings WHERE k=?", (key,)).fetchone()
        return str(row[0]) if row and row[0] is not None else self._defaults.get(key, "")

    def _set(self, key: str, value: str) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO filter_settings(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (key, value),
            )

    def get_update_filters_period(self) -> int:
        """Update period in hours. Read on every call."""
        try:
            hours = int((self._get("update_period_hours") or "").strip())
        except ValueError:
            hours = int(self._defaults["update_period_hours"])
        return min(_MAX_UPDATE_PERIOD_HOURS, hours)

    def set_update_filters_period(self, hours: int) -> None:
        hours = int(hours)
        if hours <= 0:
            hours = -1
        hours = min(_MAX_UPDATE_PERIOD_HOURS, hours)
        self._set("update_period_hours", str(hours))

    def get_locale(self) -> str:
        return (self._get("locale") or "en").strip() or "en"

    def set_locale(self, locale: str) -> None:
        loc = (locale or "").strip()
        if not loc:
            raise ValueError("Locale must not be empty.")
        self._set("locale", loc)

    def get_settings(self) -> Dict[str, Any]:
        return {
            "update_period_hours": self.get_update_filters_period(),
            "locale": self.get_locale(),
        }


_store: Optional[SettingsStore] = None


def get_settings_store() -> SettingsStore:
    global _store
    if _store is None:
        _store = SettingsStore(
            db_path=os.environ.get("FILTERS_DB", "/var/lib/filterhub/filters.db"),
            defaults={
                "update_period_hours": (os.environ.get("FILTERS_UPDATE_PERIOD_HOURS") or "6").strip() or "6",
                "locale": (os.environ.get("APP_LOCALE") or "en").strip() or "en",
            },
        )
    return _store
