from __future__ import annotations

import logging
import os
from typing import Optional

from services.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


_LOCK_FD: Optional[int] = None

_DEFAULT_LOCK_PATH = "/var/lib/filterhub/background.lock"


def acquire_background_lock() -> bool:
    """Best-effort multi-process guard for the filters scheduler.

    App servers may fork several workers; only one of them should own the
    autoupdate timer, otherwise every worker downloads the same filters.

    Returns True if this process should start background tasks, False otherwise.

    Env overrides:
      - BACKGROUND_FORCE=1: always start background tasks (no locking)
      - BACKGROUND_LOCK_PATH: lock file path (default: /var/lib/filterhub/background.lock)
    """
    global _LOCK_FD

    if (os.environ.get("BACKGROUND_FORCE") or "").strip() == "1":
        return True
    if _LOCK_FD is not None:
        return True

    lock_path = (os.environ.get("BACKGROUND_LOCK_PATH") or "").strip() or _DEFAULT_LOCK_PATH
    lock_dir = os.path.dirname(lock_path)
    if lock_dir:
        try:
            os.makedirs(lock_dir, exist_ok=True)
        except OSError:
            log_exception_throttled(
                logger,
                "background_guard.makedirs",
                interval_seconds=300.0,
                message="Failed to create BACKGROUND_LOCK_PATH directory; allowing background tasks to start",
            )
            return True

    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
    except OSError:
        return True

    try:
        import fcntl  # type: ignore[import-not-found]
    except ImportError:
        # No flock on this platform: allow background.
        _close_quietly(fd, "background_guard.close.non_posix")
        return True

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # type: ignore[attr-defined]
    except BlockingIOError:
        _close_quietly(fd, "background_guard.close.blocking")
        logger.info("Another process owns the filters scheduler")
        return False
    except OSError:
        _close_quietly(fd, "background_guard.close.flock_error")
        return True

    _LOCK_FD = fd
    return True


def _close_quietly(fd: int, key: str) -> None:
    try:
        os.close(fd)
    except OSError:
        log_exception_throttled(
            logger,
            key,
            interval_seconds=300.0,
            message="Failed to close background lock fd",
        )
