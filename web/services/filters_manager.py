from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from services import filter_constants as const
from services.custom_filters import CustomFilterInfo, CustomFiltersStore
from services.errors import CustomFilterError, FilterNotFoundError
from services.filter_models import Filter, FilterMetadata, Group, GroupState
from services.filters_cache import FiltersCache
from services.filters_categories import get_recommended_filter_ids_by_group_id
from services.filters_state import FiltersStateStore, get_filters_state_store
from services.filters_update import FiltersUpdater, UpdateResult
from services.logutil import log_exception_throttled
from services.notifier import Notifier, get_notifier
from services.rules_storage import RulesStorage, get_rules_storage
from services.service_client import ServiceClient, get_service_client
from services.settings_store import SettingsStore, get_settings_store


logger = logging.getLogger(__name__)


def _remove_duplicates(ids: Iterable[int]) -> List[int]:
    seen: Set[int] = set()
    out: List[int] = []
    for x in ids or []:
        i = int(x)
        if i in seen:
            continue
        seen.add(i)
        out.append(i)
    return out


class FiltersManager:
    """Enable/disable/install/remove semantics for filters and groups."""

    def __init__(
        self,
        cache: FiltersCache,
        state: FiltersStateStore,
        client: ServiceClient,
        custom_filters: CustomFiltersStore,
        notifier: Notifier,
        settings: SettingsStore,
        updater: FiltersUpdater,
    ):
        self.cache = cache
        self.state = state
        self.client = client
        self.custom_filters = custom_filters
        self.notifier = notifier
        self.settings = settings
        self.updater = updater

        # Install/enable chains run here one after another.
        self._jobs = ThreadPoolExecutor(max_workers=1, thread_name_prefix="filters-manager")
        self._init_lock = threading.Lock()
        self._initialized = False

    # Startup

    def init(self) -> None:
        """Load bundled metadata and custom filters into the registry."""
        with self._init_lock:
            if self._initialized:
                return
            self._load_metadata(self.client.load_local_filters_metadata())
            self.custom_filters.register_all()
            if self.cache.get_group(const.CUSTOM_FILTERS_GROUP_ID) is None:
                self.cache.set_group(Group(group_id=const.CUSTOM_FILTERS_GROUP_ID, name="Custom"))
            self.get_filters()
            self.get_groups()
            self._initialized = True
        logger.info(
            "Filters registry loaded: %d filters, %d groups",
            len(self.cache.get_filters()),
            len(self.cache.get_groups()),
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _load_metadata(self, metadata: Dict[str, Any]) -> None:
        for raw in metadata.get("groups") or []:
            try:
                group = Group.from_json(raw)
            except (TypeError, ValueError, KeyError):
                logger.warning("Skipping malformed group metadata: %r", raw)
                continue
            if self.cache.get_group(group.group_id) is None:
                self.cache.set_group(group)
        for raw in metadata.get("filters") or []:
            try:
                meta = FilterMetadata.from_json(raw)
            except (TypeError, ValueError, KeyError):
                logger.warning("Skipping malformed filter metadata: %r", raw)
                continue
            if self.cache.get_filter(meta.filter_id) is None:
                self.cache.set_filter(Filter.from_metadata(meta))

    # Queries

    def get_filter_by_id(self, filter_id: int) -> Filter:
        flt = self.cache.get_filter(filter_id)
        if flt is None:
            raise FilterNotFoundError(filter_id)
        return flt

    def get_filters(self) -> List[Filter]:
        """Registry filters with persisted version and state merged in."""
        versions = self.state.get_filters_version()
        states = self.state.get_filters_state()
        filters = self.cache.get_filters()
        for flt in filters:
            version_info = versions.get(flt.filter_id)
            state_info = states.get(flt.filter_id)
            if version_info is not None:
                flt.version = version_info.version
                flt.last_check_time = max(int(flt.last_check_time or 0), version_info.last_check_time)
                flt.last_update_time = version_info.last_update_time
            if state_info is not None:
                flt.enabled = state_info.enabled
                flt.installed = state_info.installed
                flt.loaded = state_info.loaded
        return filters

    def get_enabled_filters(self) -> List[Filter]:
        return [f for f in self.get_filters() if f.enabled]

    def get_custom_filters(self) -> List[Filter]:
        return [f for f in self.get_filters() if f.custom_url]

    def get_groups(self) -> List[Group]:
        states = self.state.get_group_state()
        groups = self.cache.get_groups()
        for group in groups:
            st = states.get(group.group_id)
            if st is not None:
                group.state = st
        return groups

    def is_filter_enabled(self, filter_id: int) -> bool:
        flt = self.cache.get_filter(filter_id)
        return bool(flt is not None and flt.enabled)

    def is_group_enabled(self, group_id: int) -> bool:
        group = self.cache.get_group(group_id)
        return bool(group is not None and group.enabled)

    def is_trusted_filter(self, filter_id: int) -> bool:
        if int(filter_id) < const.CUSTOM_FILTERS_START_ID:
            return True
        return self.get_filter_by_id(filter_id).trusted is True

    # Groups

    def enable_group(self, group_id: int) -> None:
        group = self.cache.get_group(group_id)
        if group is None or group.state is GroupState.ENABLED:
            return
        group.state = GroupState.ENABLED
        self.notifier.notify_listeners(const.FILTER_GROUP_ENABLE_DISABLE, group)
        logger.info("Group %s enabled", group_id)

    def disable_group(self, group_id: int) -> None:
        group = self.cache.get_group(group_id)
        if group is None or group.state is not GroupState.ENABLED:
            return
        group.state = GroupState.DISABLED
        self.notifier.notify_listeners(const.FILTER_GROUP_ENABLE_DISABLE, group)
        logger.info("Group %s disabled", group_id)

    def enable_filters_group(self, group_id: int) -> Optional["Future[List[int]]"]:
        """Enable a group; the first enable also adds its recommended filters."""
        group = self.cache.get_group(group_id)
        future = None
        if group is not None and group.state is GroupState.NEVER_SET:
            future = self.add_and_enable_filters(self._recommended_ids(group_id))
        self.enable_group(group_id)
        return future

    def disable_filters_group(self, group_id: int) -> None:
        self.disable_group(group_id)

    def _recommended_ids(self, group_id: int) -> List[int]:
        return get_recommended_filter_ids_by_group_id(self.cache, group_id, self.settings.get_locale())

    def add_and_enable_filters_by_group_id(self, group_id: int) -> "Future[List[int]]":
        return self.add_and_enable_filters(self._recommended_ids(group_id))

    def disable_anti_banner_filters_by_group_id(self, group_id: int) -> None:
        self.disable_filters(self._recommended_ids(group_id))

    def offer_groups_and_filters(self) -> List[int]:
        return [const.AD_BLOCKING_ID, const.PRIVACY_ID, const.LANGUAGE_SPECIFIC_ID]

    # Filters

    def enable_filter(self, filter_id: int) -> None:
        flt = self.cache.get_filter(filter_id)
        if flt is None:
            return
        flt.enabled = True

        group_id = flt.group_id
        group = self.cache.get_group(group_id)
        never_set = group is not None and group.state is GroupState.NEVER_SET
        if (
            never_set
            or int(filter_id) == const.SEARCH_AND_SELF_PROMO_FILTER_ID
            or group_id == const.CUSTOM_FILTERS_GROUP_ID
        ):
            self.enable_group(group_id)

        self.notifier.notify_listeners(const.FILTER_ENABLE_DISABLE, flt)
        logger.info("Filter %s enabled successfully", filter_id)

    def disable_filters(self, filter_ids: Iterable[int]) -> None:
        for filter_id in _remove_duplicates(filter_ids):
            flt = self.cache.get_filter(filter_id)
            if flt is None or not flt.enabled:
                continue
            flt.enabled = False
            self.notifier.notify_listeners(const.FILTER_ENABLE_DISABLE, flt)
            logger.info("Filter %s disabled successfully", filter_id)

    def add_anti_banner_filter(self, filter_id: int) -> bool:
        """Make sure the filter's rules are present locally.

        Returns True once the filter is installed.
        """
        flt = self.get_filter_by_id(filter_id)
        if flt.installed:
            return True

        if flt.loaded:
            success = True
        else:
            success = self.updater.load_filter_rules(flt, False)

        if success:
            flt = self.cache.get_filter(filter_id)
            if flt is None:
                return False
            flt.installed = True
            self.notifier.notify_listeners(const.FILTER_ADD_REMOVE, flt)
            logger.info("Filter %s added successfully", filter_id)
        return success

    def _add_and_enable(self, filter_ids: List[int]) -> List[int]:
        enabled: List[int] = []
        for filter_id in filter_ids:
            try:
                ok = self.add_anti_banner_filter(filter_id)
            except FilterNotFoundError:
                logger.warning("Cannot add unknown filter %s", filter_id)
                continue
            if ok:
                self.enable_filter(filter_id)
                enabled.append(filter_id)
        return enabled

    def add_and_enable_filters(self, filter_ids: Iterable[int]) -> "Future[List[int]]":
        """Install and enable filters strictly one after another, in order."""
        ids = _remove_duplicates(filter_ids)
        return self._jobs.submit(self._add_and_enable, ids)

    def _enable_and_update(self, filter_id: int) -> bool:
        if not self.add_anti_banner_filter(filter_id):
            return False
        self.enable_filter(filter_id)
        flt = self.cache.get_filter(filter_id)
        if flt is not None and not flt.custom_url:
            self.updater.check_filter_update(flt)
        return True

    def enable_and_update_filter(self, filter_id: int) -> "Future[bool]":
        return self._jobs.submit(self._enable_and_update, filter_id)

    def remove_filter(self, filter_id: int) -> None:
        flt = self.cache.get_filter(filter_id)
        if flt is None:
            return

        logger.debug("Remove filter %s", filter_id)
        flt.enabled = False
        flt.installed = False
        self.notifier.notify_listeners(const.FILTER_ENABLE_DISABLE, flt)
        self.notifier.notify_listeners(const.FILTER_ADD_REMOVE, flt)

        if flt.custom_url:
            self.custom_filters.remove_custom_filter(flt)
        else:
            self.cache.remove_filter(filter_id)

    # Cleanup

    def update_filters_json(self, metadata: Dict[str, Any]) -> None:
        self.client.write_local_filters_metadata(metadata)

    def remove_obsolete_filters(self) -> List[int]:
        """Drop filters that the service no longer publishes.

        A local filter survives only if a remote filter has the same id and
        name; ids are sometimes reused for unrelated lists.
        """
        local = self.client.load_local_filters_metadata()
        remote = self.client.load_remote_filters_metadata()
        self.update_filters_json(remote)

        remote_keys: Set[Tuple[int, str]] = set()
        for raw in remote.get("filters") or []:
            try:
                meta = FilterMetadata.from_json(raw)
            except (TypeError, ValueError, KeyError):
                continue
            remote_keys.add((meta.filter_id, meta.name))

        obsolete: List[int] = []
        for raw in local.get("filters") or []:
            try:
                meta = FilterMetadata.from_json(raw)
            except (TypeError, ValueError, KeyError):
                continue
            if (meta.filter_id, meta.name) not in remote_keys:
                obsolete.append(meta.filter_id)

        for filter_id in obsolete:
            logger.info("Removing obsolete filter %s", filter_id)
            self.remove_filter(filter_id)
            self.state.remove_filter(filter_id)
        return obsolete

    def clean_removed_custom_filters(self) -> List[int]:
        removed: List[int] = []
        for flt in self.custom_filters.load_custom_filters():
            if not flt.removed:
                continue
            self.remove_filter(flt.filter_id)
            self.state.remove_filter(flt.filter_id)
            self.custom_filters.purge_custom_filter(flt.filter_id)
            removed.append(flt.filter_id)
        if removed:
            logger.info("Cleaned %d removed custom filters", len(removed))
        return removed

    # Updates

    def check_anti_banner_filters_update(self, force_update: bool = False) -> "Future[UpdateResult]":
        return self.updater.check_anti_banner_filters_update_async(force_update)

    def get_filters_update_last_check(self) -> Optional[int]:
        return self.updater.get_filters_update_last_check()

    # Custom filters

    def subscribe_to_custom_filter(
        self,
        url: str,
        options: Optional[Dict[str, Any]],
        on_success: Callable[[Filter], None],
        on_error: Optional[Callable[[Optional[str]], None]] = None,
    ) -> None:
        on_error = on_error or (lambda error=None: None)
        logger.info("Downloading custom filter from %s", url)
        if not (url or "").strip():
            on_error("URL is required.")
            return

        try:
            filter_id = self.custom_filters.add_custom_filter(url.strip(), options)
        except CustomFilterError as e:
            on_error(str(e))
            return

        flt = self.cache.get_filter(filter_id)
        if flt is None:
            on_error(None)
            return
        logger.info("Custom filter info downloaded")
        on_success(flt)

    def load_custom_filter_info(
        self,
        url: str,
        options: Optional[Dict[str, Any]],
        on_success: Callable[[CustomFilterInfo], None],
        on_error: Optional[Callable[[Optional[str]], None]] = None,
    ) -> None:
        on_error = on_error or (lambda error=None: None)
        logger.info("Downloading custom filter info from %s", url)
        if not (url or "").strip():
            on_error("URL is required.")
            return

        try:
            info = self.custom_filters.get_custom_filter_info(url.strip(), options)
        except CustomFilterError as e:
            on_error(str(e))
            return
        logger.info("Custom filter data downloaded")
        on_success(info)

    def shutdown(self) -> None:
        self._jobs.shutdown(wait=False)
        self.updater.shutdown()


_manager: Optional[FiltersManager] = None
_manager_lock = threading.Lock()


def build_filters_manager(
    *,
    cache: Optional[FiltersCache] = None,
    state: Optional[FiltersStateStore] = None,
    client: Optional[ServiceClient] = None,
    notifier: Optional[Notifier] = None,
    settings: Optional[SettingsStore] = None,
    rules_storage: Optional[RulesStorage] = None,
    **updater_kwargs: Any,
) -> FiltersManager:
    """Wire the registry, stores and updater together."""
    cache = cache or FiltersCache()
    state = state or get_filters_state_store()
    client = client or get_service_client()
    notifier = notifier or get_notifier()
    settings = settings or get_settings_store()
    rules_storage = rules_storage or get_rules_storage()

    custom = CustomFiltersStore(cache, client, notifier, db_path=state.db_path)
    state.attach(notifier)
    rules_storage.attach(notifier)

    updater = FiltersUpdater(cache, state, client, custom, notifier, settings, **updater_kwargs)
    return FiltersManager(cache, state, client, custom, notifier, settings, updater)


def get_filters_manager() -> FiltersManager:
    global _manager
    with _manager_lock:
        if _manager is None:
            workers = (os.environ.get("FILTERS_DOWNLOAD_WORKERS") or "").strip()
            try:
                download_workers = int(workers) if workers else 4
            except ValueError:
                download_workers = 4
            _manager = build_filters_manager(download_workers=download_workers)
        # A failed init is retried on the next call.
        if not _manager.initialized:
            try:
                _manager.init()
            except Exception:
                log_exception_throttled(
                    logger,
                    "filters_manager.init",
                    interval_seconds=300.0,
                    message="Failed to load filters metadata",
                )
        return _manager
