from __future__ import annotations

import hashlib
import logging
import os
import re
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from adblockparser import AdblockParsingError, AdblockRule

from services import filter_constants as const
from services.errors import CustomFilterError, ServiceClientError
from services.filter_models import Filter, parse_time_ms
from services.filters_cache import FiltersCache
from services.notifier import Notifier
from services.service_client import ServiceClient, split_rules
from services.version_utils import is_greater_version


logger = logging.getLogger(__name__)


_HEADER_RE = re.compile(r"^!\s*(Title|Description|Version|Homepage|Expires|TimeUpdated|Last modified)\s*:\s*(.*)$", re.I)


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_filter_header(lines: List[str], max_lines: int = 50) -> Dict[str, str]:
    """Read `! Key: value` metadata from the top of a filter list."""
    out: Dict[str, str] = {}
    for ln in lines[:max_lines]:
        m = _HEADER_RE.match(ln.strip())
        if not m:
            continue
        key = m.group(1).lower().replace(" ", "_")
        if key not in out:
            out[key] = m.group(2).strip()
    return out


def count_rules(lines: List[str]) -> int:
    n = 0
    for ln in lines:
        try:
            rule = AdblockRule(ln)
        except (AdblockParsingError, ValueError, re.error):
            continue
        if rule.is_comment:
            continue
        n += 1
    return n


def _looks_like_html(lines: List[str]) -> bool:
    head = " ".join(lines[:5]).lower()
    return head.startswith("<") and ("<html" in head or "<!doctype html" in head)


@dataclass(frozen=True)
class CustomFilterInfo:
    url: str
    title: str
    description: str
    homepage: str
    version: str
    time_updated: int
    expires: str
    rules_count: int
    subscribed_id: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customUrl": self.url,
            "name": self.title,
            "description": self.description,
            "homepage": self.homepage,
            "version": self.version,
            "timeUpdated": self.time_updated,
            "expires": self.expires,
            "rulesCount": self.rules_count,
            "filterId": self.subscribed_id,
        }


class CustomFiltersStore:
    """User-subscribed filters.

    Removal only leaves a tombstone (`removed=1`); the row is purged later by
    the manager's cleanup so an offline removal is not lost.
    """

    def __init__(
        self,
        cache: FiltersCache,
        client: ServiceClient,
        notifier: Notifier,
        db_path: str = "/var/lib/filterhub/filters.db",
    ):
        self.cache = cache
        self.client = client
        self.notifier = notifier
        self.db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        d = os.path.dirname(self.db_path)
        if d:
            os.makedirs(d, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS custom_filters (
                    filter_id INTEGER PRIMARY KEY,
                    url TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL DEFAULT '',
                    homepage TEXT NOT NULL DEFAULT '',
                    version TEXT NOT NULL DEFAULT '',
                    time_updated INTEGER NOT NULL DEFAULT 0,
                    last_check_time INTEGER NOT NULL DEFAULT 0,
                    trusted INTEGER NOT NULL DEFAULT 0,
                    checksum TEXT NOT NULL DEFAULT '',
                    rules_count INTEGER NOT NULL DEFAULT 0,
                    removed INTEGER NOT NULL DEFAULT 0
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_custom_filters_url ON custom_filters(url);")

    def _row_to_filter(self, r: sqlite3.Row) -> Filter:
        return Filter(
            filter_id=int(r["filter_id"]),
            group_id=const.CUSTOM_FILTERS_GROUP_ID,
            name=str(r["title"] or ""),
            description=str(r["description"] or ""),
            homepage=str(r["homepage"] or ""),
            version=str(r["version"] or ""),
            custom_url=str(r["url"]),
            trusted=bool(r["trusted"]),
            last_update_time=int(r["time_updated"] or 0),
            last_check_time=int(r["last_check_time"] or 0),
            removed=bool(r["removed"]),
        )

    def load_custom_filters(self) -> List[Filter]:
        """All custom filters including tombstones.

        Live filters come back as the registry object so callers see the
        current enabled/installed flags.
        """
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM custom_filters ORDER BY filter_id").fetchall()
        out: List[Filter] = []
        for r in rows:
            flt = self._row_to_filter(r)
            if not flt.removed:
                current = self.cache.get_filter(flt.filter_id)
                if current is not None:
                    flt = current
            out.append(flt)
        return out

    def register_all(self) -> List[Filter]:
        """Put every live custom filter into the registry."""
        added = []
        for flt in self.load_custom_filters():
            if flt.removed:
                continue
            if self.cache.get_filter(flt.filter_id) is None:
                self.cache.set_filter(flt)
            added.append(flt)
        return added

    def _download(self, url: str) -> List[str]:
        try:
            lines = split_rules(self.client.fetch_text(url))
        except ServiceClientError as e:
            raise CustomFilterError("Unable to download the filter from this URL.") from e
        if not lines or _looks_like_html(lines):
            raise CustomFilterError("The URL does not point to a filter list.")
        return lines

    def _describe(self, url: str, lines: List[str], options: Optional[Dict[str, Any]]) -> CustomFilterInfo:
        header = parse_filter_header(lines)
        rules_count = count_rules(lines)
        if rules_count <= 0:
            raise CustomFilterError("The filter list does not contain any rules.")
        title = str((options or {}).get("title") or "").strip() or header.get("title") or url
        existing = self._find_by_url(url)
        return CustomFilterInfo(
            url=url,
            title=title,
            description=header.get("description", ""),
            homepage=header.get("homepage", ""),
            version=header.get("version", ""),
            time_updated=parse_time_ms(header.get("timeupdated") or header.get("last_modified")) or _now_ms(),
            expires=header.get("expires", ""),
            rules_count=rules_count,
            subscribed_id=existing,
        )

    def _find_by_url(self, url: str) -> Optional[int]:
        self.init_db()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT filter_id FROM custom_filters WHERE url=? AND removed=0 ORDER BY filter_id LIMIT 1",
                (url,),
            ).fetchone()
        return int(row[0]) if row else None

    def get_custom_filter_info(self, url: str, options: Optional[Dict[str, Any]] = None) -> CustomFilterInfo:
        """Download and describe a list without subscribing to it."""
        return self._describe(url, self._download(url), options)

    def add_custom_filter(self, url: str, options: Optional[Dict[str, Any]] = None) -> int:
        lines = self._download(url)
        info = self._describe(url, lines, options)
        trusted = bool((options or {}).get("trusted"))
        now = _now_ms()

        with self._lock:
            if info.subscribed_id is not None:
                filter_id = info.subscribed_id
                logger.info("Custom filter %s already subscribed as %s", url, filter_id)
                with self._connect() as conn:
                    conn.execute(
                        """
                        UPDATE custom_filters
                        SET version=?, time_updated=?, checksum=?, rules_count=?, last_check_time=?
                        WHERE filter_id=?
                        """,
                        (
                            info.version,
                            info.time_updated,
                            _checksum(lines),
                            info.rules_count,
                            now,
                            int(filter_id),
                        ),
                    )
            else:
                with self._connect() as conn:
                    row = conn.execute("SELECT MAX(filter_id) FROM custom_filters").fetchone()
                    last = int(row[0]) if row and row[0] is not None else const.CUSTOM_FILTERS_START_ID - 1
                    filter_id = max(const.CUSTOM_FILTERS_START_ID, last + 1)
                    conn.execute(
                        """
                        INSERT INTO custom_filters(
                            filter_id, url, title, description, homepage, version, time_updated,
                            last_check_time, trusted, checksum, rules_count, removed
                        ) VALUES(?,?,?,?,?,?,?,?,?,?,?,0)
                        """,
                        (
                            filter_id,
                            url,
                            info.title,
                            info.description,
                            info.homepage,
                            info.version,
                            info.time_updated,
                            now,
                            int(trusted),
                            _checksum(lines),
                            info.rules_count,
                        ),
                    )

        flt = self.cache.get_filter(filter_id)
        if flt is None:
            flt = Filter(
                filter_id=filter_id,
                group_id=const.CUSTOM_FILTERS_GROUP_ID,
                name=info.title,
                description=info.description,
                homepage=info.homepage,
                version=info.version,
                custom_url=url,
                trusted=trusted,
                last_update_time=info.time_updated,
            )
            self.cache.set_filter(flt)
        flt.version = info.version
        flt.last_update_time = info.time_updated
        flt.last_check_time = now
        flt.loaded = True
        self.notifier.notify_listeners(const.SUCCESS_DOWNLOAD_FILTER, flt)
        self.notifier.notify_listeners(const.UPDATE_FILTER_RULES, flt, lines)
        logger.info("Custom filter %s added from %s (%d rules)", filter_id, url, info.rules_count)
        return filter_id

    def update_custom_filter(self, filter_id: int) -> Optional[int]:
        """Re-download one custom filter.

        Returns the id when new content was applied, None when the list did
        not change or could not be fetched.
        """
        flt = self.cache.get_filter(filter_id)
        if flt is None or not flt.custom_url:
            return None
        url = flt.custom_url
        try:
            lines = self._download(url)
            header = parse_filter_header(lines)
        except CustomFilterError as e:
            logger.warning("Custom filter %s update failed: %s", filter_id, e)
            return None

        now = _now_ms()
        checksum = _checksum(lines)
        new_version = header.get("version", "")
        with self._connect() as conn:
            row = conn.execute(
                "SELECT checksum, version FROM custom_filters WHERE filter_id=?", (int(filter_id),)
            ).fetchone()
            old_checksum = str(row["checksum"]) if row else ""
            old_version = str(row["version"]) if row else ""
            if new_version and old_version:
                changed = is_greater_version(new_version, old_version)
            else:
                changed = checksum != old_checksum
            conn.execute(
                "UPDATE custom_filters SET last_check_time=? WHERE filter_id=?",
                (now, int(filter_id)),
            )
            if changed:
                time_updated = parse_time_ms(header.get("timeupdated") or header.get("last_modified")) or now
                conn.execute(
                    """
                    UPDATE custom_filters
                    SET version=?, time_updated=?, checksum=?, rules_count=?
                    WHERE filter_id=?
                    """,
                    (new_version, time_updated, checksum, count_rules(lines), int(filter_id)),
                )

        # The filter may have been removed while we were downloading.
        flt = self.cache.get_filter(filter_id)
        if flt is None:
            return None
        flt.last_check_time = now
        if not changed:
            logger.debug("Custom filter %s is up to date", filter_id)
            return None

        flt.version = new_version
        flt.last_update_time = time_updated
        flt.loaded = True
        self.notifier.notify_listeners(const.SUCCESS_DOWNLOAD_FILTER, flt)
        self.notifier.notify_listeners(const.UPDATE_FILTER_RULES, flt, lines)
        logger.info("Custom filter %s updated", filter_id)
        return int(filter_id)

    def remove_custom_filter(self, flt: Filter) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute("UPDATE custom_filters SET removed=1 WHERE filter_id=?", (int(flt.filter_id),))
        flt.removed = True
        self.cache.remove_filter(flt.filter_id)
        logger.info("Custom filter %s removed", flt.filter_id)

    def purge_custom_filter(self, filter_id: int) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute("DELETE FROM custom_filters WHERE filter_id=?", (int(filter_id),))


def _checksum(lines: List[str]) -> str:
    h = hashlib.sha256()
    for ln in lines:
        if ln.startswith("!"):
            continue
        h.update(ln.encode("utf-8", errors="replace"))
        h.update(b"\n")
    return h.hexdigest()

