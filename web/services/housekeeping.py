from __future__ import annotations

import sqlite3
import threading
import time

import logging

from services.filters_manager import FiltersManager
from services.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


_started = False
_lock = threading.Lock()


def _is_db_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "database is locked" in str(exc).lower()


def _run_with_db_lock_retry(fn, *, attempts: int = 8, base_sleep_seconds: float = 0.5):
    """Run `fn` with exponential backoff on transient SQLite lock errors."""
    last_exc: BaseException | None = None
    for i in range(max(1, int(attempts))):
        try:
            return fn()
        except Exception as exc:
            last_exc = exc
            if not _is_db_locked(exc):
                raise
            # Backoff: 0.5s, 1s, 2s, 4s, ... (capped)
            sleep_s = min(30.0, float(base_sleep_seconds) * (2 ** i))
            time.sleep(sleep_s)
    if last_exc is not None:
        raise last_exc
    return None


def run_once(manager: FiltersManager) -> None:
    """Purge removed custom filters, then filters dropped by the service.

    Each step fails independently; a network error in the obsolete check does
    not keep tombstones around.
    """
    try:
        _run_with_db_lock_retry(manager.clean_removed_custom_filters)
    except Exception:
        log_exception_throttled(
            logger,
            "housekeeping.custom",
            interval_seconds=300,
            message="Removed custom filters cleanup failed",
        )
    try:
        _run_with_db_lock_retry(manager.remove_obsolete_filters)
    except Exception:
        log_exception_throttled(
            logger,
            "housekeeping.obsolete",
            interval_seconds=300,
            message="Obsolete filters cleanup failed",
        )


def start_housekeeping(manager: FiltersManager, *, interval_seconds: int = 24 * 60 * 60) -> None:
    """Start the daily filters cleanup thread (first run immediately)."""
    global _started
    with _lock:
        if _started:
            return
        _started = True

    def loop() -> None:
        while True:
            run_once(manager)
            time.sleep(float(interval_seconds))

    t = threading.Thread(target=loop, name="filters-housekeeping", daemon=True)
    t.start()
