from __future__ import annotations

from typing import Iterable, List

from services import filter_constants as const
from services.filter_models import Filter
from services.filters_cache import FiltersCache


def _locale_matches(flt: Filter, locale: str) -> bool:
    loc = (locale or "").strip().lower().replace("-", "_")
    if not loc:
        return False
    base = loc.split("_", 1)[0]
    for lang in flt.languages or []:
        lang_n = (lang or "").strip().lower().replace("-", "_")
        if lang_n == loc or lang_n == base or lang_n.split("_", 1)[0] == base:
            return True
    return False


def is_recommended(flt: Filter, locale: str = "en") -> bool:
    if const.RECOMMENDED_TAG_ID not in (flt.tags or []):
        return False
    if flt.group_id == const.LANGUAGE_SPECIFIC_ID:
        return _locale_matches(flt, locale)
    return True


def get_recommended_filter_ids_by_group_id(
    cache: FiltersCache, group_id: int, locale: str = "en"
) -> List[int]:
    """Recommended built-in filters of a group, in display order."""
    filters: Iterable[Filter] = (
        f for f in cache.get_filters() if f.group_id == int(group_id) and not f.is_custom
    )
    picked = [f for f in filters if is_recommended(f, locale)]
    picked.sort(key=lambda f: (f.display_number, f.filter_id))
    return [f.filter_id for f in picked]
