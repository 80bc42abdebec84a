from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from services import filter_constants as const
from services.errors import ServiceClientError
from services.filter_models import Filter, FilterMetadata
from services.filters_cache import FiltersCache
from services.filters_state import FiltersStateStore
from services.logutil import log_exception_throttled
from services.notifier import Notifier
from services.service_client import ServiceClient
from services.settings_store import SettingsStore
from services.version_utils import is_greater_version


logger = logging.getLogger(__name__)


TimerFactory = Callable[[float, Callable[[], None]], Any]


class AutoUpdateTimer:
    """One-shot timer handle; starting it again replaces the pending run."""

    def __init__(self, name: str, timer_factory: TimerFactory = threading.Timer):
        self.name = name
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Any = None
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def active(self) -> bool:
        with self._lock:
            return self._timer is not None

    def start(self, delay_seconds: float, fn: Callable[[], None]) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1
            gen = self._generation

            def run() -> None:
                with self._lock:
                    if gen != self._generation:
                        return
                    self._timer = None
                fn()

            t = self._timer_factory(max(0.0, float(delay_seconds)), run)
            t.daemon = True
            try:
                t.name = self.name
            except AttributeError:
                pass
            t.start()
            self._timer = t

    reschedule = start

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._generation += 1

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


@dataclass(frozen=True)
class FiltersToUpdate:
    filter_ids: List[int] = field(default_factory=list)
    custom_filter_ids: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.filter_ids) + len(self.custom_filter_ids)


@dataclass(frozen=True)
class UpdateResult:
    success: bool
    force_update: bool
    last_check_timestamp: int
    updated_filters: List[Filter] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "forceUpdate": self.force_update,
            "lastCheckTimestamp": self.last_check_timestamp,
        }
        if self.success:
            payload["updatedFilters"] = list(self.updated_filters)
        return payload


class FiltersUpdater:
    """Decides which filters are due, downloads them and keeps the autoupdate timer."""

    def __init__(
        self,
        cache: FiltersCache,
        state: FiltersStateStore,
        client: ServiceClient,
        custom_filters: Any,
        notifier: Notifier,
        settings: SettingsStore,
        *,
        clock: Callable[[], float] = time.time,
        timer_factory: TimerFactory = threading.Timer,
        download_workers: int = 4,
    ):
        self.cache = cache
        self.state = state
        self.client = client
        self.custom_filters = custom_filters
        self.notifier = notifier
        self.settings = settings
        self._clock = clock

        self._first_run_timer = AutoUpdateTimer("filters-first-update", timer_factory)
        self._autoupdate_timer = AutoUpdateTimer("filters-autoupdate", timer_factory)
        self._reload_timer = AutoUpdateTimer("filters-reload", timer_factory)

        # Every update check, timer-driven ones included, runs on _jobs so only
        # one is in flight. Downloads fan out on _downloads. A job never waits on
        # its own executor.
        self._jobs = ThreadPoolExecutor(max_workers=1, thread_name_prefix="filters-update")
        self._downloads = ThreadPoolExecutor(
            max_workers=max(1, int(download_workers)), thread_name_prefix="filters-download"
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _update_period_ms(self) -> int:
        return int(self.settings.get_update_filters_period()) * 60 * 60 * 1000

    # Last check timestamp

    def set_filters_update_last_check(self, value: int) -> None:
        self.state.set_item(const.FILTERS_UPDATE_LAST_CHECK_KEY, int(value))

    def get_filters_update_last_check(self) -> Optional[int]:
        v = self.state.get_item(const.FILTERS_UPDATE_LAST_CHECK_KEY)
        return int(v) if v is not None else None

    # Selection

    def select_filter_ids_to_update(
        self, force_update: bool, filters: Optional[Sequence[Filter]] = None
    ) -> FiltersToUpdate:
        subset = None if filters is None else {int(f.filter_id) for f in filters}

        custom_ids = [
            f.filter_id
            for f in self.custom_filters.load_custom_filters()
            if not f.removed and f.enabled and (subset is None or f.filter_id in subset)
        ]

        if filters is None:
            candidates = self.cache.get_filters()
        else:
            candidates = [self.cache.get_filter(f.filter_id) for f in filters]

        period_ms = self._update_period_ms()
        now = self._now_ms()
        filter_ids: List[int] = []
        for flt in candidates:
            if flt is None or flt.custom_url:
                continue
            if not (flt.installed and flt.enabled):
                continue
            need_update = (
                force_update
                or not flt.last_check_time
                or (now - int(flt.last_check_time)) >= period_ms
            )
            if need_update:
                filter_ids.append(flt.filter_id)

        return FiltersToUpdate(filter_ids=filter_ids, custom_filter_ids=custom_ids)

    # Update check

    def check_anti_banner_filters_update(
        self, force_update: bool = False, filters: Optional[Sequence[Filter]] = None
    ) -> UpdateResult:
        """Run one update cycle and publish exactly one popup event.

        Never raises: failures end up in `UpdateResult.success`.
        """
        force_update = bool(force_update)
        current = self._now_ms()
        try:
            self.set_filters_update_last_check(current)
        except Exception:
            log_exception_throttled(
                logger,
                "filters_update.last_check",
                interval_seconds=300.0,
                message="Failed to record filters update check time",
            )

        try:
            result = self._check_update(force_update, filters, current)
        except Exception:
            logger.exception("Filters update check failed")
            result = UpdateResult(success=False, force_update=force_update, last_check_timestamp=current)

        self.notifier.notify_listeners(const.UPDATE_FILTERS_SHOW_POPUP, result.to_payload())
        return result

    def _check_update(
        self, force_update: bool, filters: Optional[Sequence[Filter]], current: int
    ) -> UpdateResult:
        logger.info("Start checking filters updates..")
        to_update = self.select_filter_ids_to_update(force_update, filters)
        if to_update.total == 0:
            return UpdateResult(success=True, force_update=force_update, last_check_timestamp=current)

        logger.info("Checking updates for %d filters", to_update.total)

        custom_futures = self._submit_custom_updates(to_update.custom_filter_ids)
        try:
            try:
                metadata_list = self._load_filters_metadata_from_backend(to_update.filter_ids)
            except ServiceClientError as e:
                logger.error(
                    "Error retrieving metadata for filters %s, cause: %s", to_update.filter_ids, e
                )
                return UpdateResult(success=False, force_update=force_update, last_check_timestamp=current)

            to_load: List[FilterMetadata] = []
            for meta in metadata_list:
                flt = self.cache.get_filter(meta.filter_id)
                if flt is not None and meta.version and is_greater_version(meta.version, flt.version):
                    logger.info("Updating filter %s to version %s", flt.filter_id, meta.version)
                    to_load.append(meta)

            success, loaded_ids = self.load_filters_from_backend(to_load)
            if not success:
                return UpdateResult(success=False, force_update=force_update, last_check_timestamp=current)

            updated: List[Filter] = []
            for fid in loaded_ids:
                flt = self.cache.get_filter(fid)
                if flt is not None:
                    updated.append(flt)
        finally:
            custom_updated = self._collect_custom_updates(custom_futures)

        logger.info("Filters updated successfully")
        return UpdateResult(
            success=True,
            force_update=force_update,
            last_check_timestamp=current,
            updated_filters=updated + custom_updated,
        )

    def check_anti_banner_filters_update_async(
        self, force_update: bool = False, filters: Optional[Sequence[Filter]] = None
    ) -> "Future[UpdateResult]":
        return self._jobs.submit(self.check_anti_banner_filters_update, force_update, filters)

    def _queued_check(self, force_update: bool, filters: Optional[Sequence[Filter]] = None) -> UpdateResult:
        # Must not be called from a _jobs worker.
        return self.check_anti_banner_filters_update_async(force_update, filters).result()

    def _load_filters_metadata_from_backend(self, filter_ids: List[int]) -> List[FilterMetadata]:
        if not filter_ids:
            return []
        metadata_list = self.client.load_filters_metadata(filter_ids)
        logger.debug(
            "Retrieved response from server for %d filters, result: %d metadata",
            len(filter_ids),
            len(metadata_list),
        )
        return metadata_list

    # Rules download

    def load_filters_from_backend(self, metadata_list: Iterable[FilterMetadata]) -> Tuple[bool, List[int]]:
        """Download every filter in the list concurrently.

        The batch succeeds only if every download succeeds; on any failure the
        loaded ids are dropped from the result. Each download still runs to the
        end and publishes its own events.
        """
        metas = list(metadata_list)
        if not metas:
            return True, []
        futures = [(m.filter_id, self._downloads.submit(self.load_filter_rules, m, True)) for m in metas]
        wait([f for (_, f) in futures])

        loaded: List[int] = []
        ok = True
        for fid, fut in futures:
            try:
                if fut.result():
                    loaded.append(fid)
                else:
                    ok = False
            except Exception:
                log_exception_throttled(
                    logger,
                    "filters_update.load_filter_rules",
                    fid,
                    interval_seconds=60.0,
                    message="Unexpected error while loading filter %s",
                )
                ok = False
        if not ok:
            return False, []
        return True, loaded

    def load_filter_rules(self, metadata: Union[FilterMetadata, Filter], force_remote: bool = False) -> bool:
        """Download one filter: IDLE -> DOWNLOADING -> LOADED | FAILED."""
        if isinstance(metadata, Filter):
            metadata = FilterMetadata.from_filter(metadata)
        filter_id = int(metadata.filter_id)

        flt = self.cache.get_filter(filter_id)
        if flt is None:
            logger.warning("Cannot load rules for unknown filter %s", filter_id)
            return False

        flt.is_downloading = True
        self.notifier.notify_listeners(const.START_DOWNLOAD_FILTER, flt)

        try:
            rules = self.client.load_filter_rules(filter_id, force_remote)
        except ServiceClientError as e:
            logger.error("Error retrieving rules for filter %s, cause: %s", filter_id, e)
            current = self.cache.get_filter(filter_id) or flt
            current.is_downloading = False
            if current is not flt:
                flt.is_downloading = False
            self.notifier.notify_listeners(const.ERROR_DOWNLOAD_FILTER, current)
            return False

        current = self.cache.get_filter(filter_id)
        if current is None:
            # Removed while downloading.
            flt.is_downloading = False
            logger.info("Filter %s was removed during download; dropping rules", filter_id)
            self.notifier.notify_listeners(const.ERROR_DOWNLOAD_FILTER, flt)
            return False

        logger.info("Retrieved response from server for filter %s, rules count: %d", filter_id, len(rules))
        if current is not flt:
            flt.is_downloading = False
        current.is_downloading = False
        current.version = metadata.version
        current.last_update_time = metadata.time_updated
        current.last_check_time = self._now_ms()
        current.loaded = True
        self.notifier.notify_listeners(const.SUCCESS_DOWNLOAD_FILTER, current)
        self.notifier.notify_listeners(const.UPDATE_FILTER_RULES, current, rules)
        return True

    # Custom filters

    def _submit_custom_updates(self, custom_filter_ids: Iterable[int]) -> List[Tuple[int, "Future[Optional[int]]"]]:
        futures = []
        for fid in custom_filter_ids:
            flt = self.cache.get_filter(fid)
            if flt is None:
                continue
            futures.append((flt.filter_id, self._downloads.submit(self.custom_filters.update_custom_filter, flt.filter_id)))
            self.notifier.notify_listeners(const.FILTER_ADD_REMOVE, flt)
        return futures

    def _collect_custom_updates(self, futures: List[Tuple[int, "Future[Optional[int]]"]]) -> List[Filter]:
        updated: List[Filter] = []
        for fid, fut in futures:
            try:
                result = fut.result()
            except Exception:
                log_exception_throttled(
                    logger,
                    "filters_update.custom",
                    fid,
                    interval_seconds=60.0,
                    message="Custom filter %s update failed",
                )
                continue
            if result:
                flt = self.cache.get_filter(result)
                if flt is not None:
                    updated.append(flt)
        if futures:
            logger.info("Custom filters updated")
        return updated

    def update_custom_filters(self, custom_filter_ids: Iterable[int]) -> List[Filter]:
        """Update custom filters concurrently; failures are left out of the result."""
        return self._collect_custom_updates(self._submit_custom_updates(custom_filter_ids))

    # Single filter

    def check_filter_update(self, flt: Filter) -> Optional[UpdateResult]:
        current = self.cache.get_filter(flt.filter_id) or flt
        if not current.enabled:
            return None
        # Skip filters that were downloaded moments ago.
        if self._now_ms() - int(current.last_check_time or 0) < const.ENABLED_FILTERS_SKIP_TIMEOUT_MS:
            return None
        return self._queued_check(True, [current])

    # Scheduling

    def _run_scheduled_check(self, force_update: bool = False) -> None:
        try:
            self._queued_check(force_update)
        except Exception:
            log_exception_throttled(
                logger,
                "filters_update.scheduled",
                interval_seconds=300.0,
                message="Error update filters",
            )

    def _arm_autoupdate(self) -> None:
        period_ms = self._update_period_ms()
        if period_ms <= 0:
            # Autoupdate switched off by the user.
            self._autoupdate_timer.cancel()
            logger.info("Filters autoupdate is disabled")
            return
        self._autoupdate_timer.start(period_ms / 1000.0, self._on_autoupdate_timer)

    def _on_autoupdate_timer(self) -> None:
        gen = self._autoupdate_timer.generation
        self._run_scheduled_check(False)
        if self._autoupdate_timer.generation == gen:
            self._arm_autoupdate()

    def schedule_filters_update(self, is_first_run: bool = False) -> None:
        self._first_run_timer.start(
            const.UPDATE_FILTERS_DELAY_MS / 1000.0,
            lambda: self._run_scheduled_check(is_first_run is True),
        )
        self._arm_autoupdate()

    def rerun_auto_update_timer(self) -> None:
        """Re-arm the periodic check after the update period changed."""
        self._autoupdate_timer.cancel()
        self._arm_autoupdate()

    @property
    def autoupdate_active(self) -> bool:
        return self._autoupdate_timer.active

    def reset_filters_version(self) -> None:
        for flt in self.cache.get_filters():
            logger.debug("Reset version for filter %s", flt.filter_id)
            flt.version = const.RESET_VERSION

    def _reset_and_check(self) -> UpdateResult:
        self.reset_filters_version()
        return self.check_anti_banner_filters_update(True)

    def _reload(self) -> None:
        try:
            self._jobs.submit(self._reset_and_check).result()
        except Exception:
            log_exception_throttled(
                logger,
                "filters_update.reload",
                interval_seconds=300.0,
                message="Filters reload failed",
            )

    def reload_anti_banner_filters(self) -> None:
        logger.info("Schedule filters reload..")
        self._reload_timer.start(const.RELOAD_FILTERS_DELAY_MS / 1000.0, self._reload)

    def shutdown(self) -> None:
        self._first_run_timer.cancel()
        self._autoupdate_timer.cancel()
        self._reload_timer.cancel()
        self._jobs.shutdown(wait=False)
        self._downloads.shutdown(wait=False)
