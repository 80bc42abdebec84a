from __future__ import annotations

import threading
from typing import Dict, List, Optional

from services.filter_models import Filter, Group


class FiltersCache:
    """In-memory registry of filters and groups keyed by id.

    Callers keep ids, not objects: always look the filter up again right
    before changing it.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._filters: Dict[int, Filter] = {}
        self._groups: Dict[int, Group] = {}

    def get_filter(self, filter_id: int) -> Optional[Filter]:
        with self._lock:
            return self._filters.get(int(filter_id))

    def set_filter(self, flt: Filter) -> None:
        with self._lock:
            self._filters[int(flt.filter_id)] = flt

    def remove_filter(self, filter_id: int) -> Optional[Filter]:
        with self._lock:
            return self._filters.pop(int(filter_id), None)

    def get_filters(self) -> List[Filter]:
        with self._lock:
            return list(self._filters.values())

    def get_group(self, group_id: int) -> Optional[Group]:
        with self._lock:
            return self._groups.get(int(group_id))

    def set_group(self, group: Group) -> None:
        with self._lock:
            self._groups[int(group.group_id)] = group

    def get_groups(self) -> List[Group]:
        with self._lock:
            return list(self._groups.values())
