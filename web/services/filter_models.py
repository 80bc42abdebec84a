from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from services.filter_constants import CUSTOM_FILTERS_START_ID


class GroupState(enum.Enum):
    NEVER_SET = "never_set"
    ENABLED = "enabled"
    DISABLED = "disabled"

    @classmethod
    def from_enabled(cls, enabled: Optional[bool]) -> "GroupState":
        if enabled is None:
            return cls.NEVER_SET
        return cls.ENABLED if enabled else cls.DISABLED


def parse_time_ms(value: Any) -> int:
    """Accept epoch seconds/ms or an ISO-8601 string; returns epoch ms (0 if unknown)."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        v = int(value)
        # Anything below 10^11 is seconds (that is before 1973 in ms).
        return v * 1000 if 0 < v < 100_000_000_000 else max(0, v)
    s = str(value).strip()
    if s.isdigit():
        return parse_time_ms(int(s))
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"):
        try:
            dt = datetime.datetime.strptime(s, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=datetime.timezone.utc)
        return int(dt.timestamp() * 1000)
    return 0


def _as_int_list(value: Any) -> List[int]:
    out: List[int] = []
    for v in value or []:
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            continue
    return out


@dataclass(frozen=True)
class FilterMetadata:
    filter_id: int
    name: str = ""
    group_id: int = 0
    version: str = ""
    time_updated: int = 0
    description: str = ""
    homepage: str = ""
    subscription_url: str = ""
    display_number: int = 0
    languages: Tuple[str, ...] = ()
    tags: Tuple[int, ...] = ()

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "FilterMetadata":
        def pick(*keys: str, default: Any = None) -> Any:
            for k in keys:
                if k in data and data[k] is not None:
                    return data[k]
            return default

        return cls(
            filter_id=int(pick("filterId", "filter_id", "id")),
            name=str(pick("name", default="")),
            group_id=int(pick("groupId", "group_id", default=0)),
            version=str(pick("version", default="")),
            time_updated=parse_time_ms(pick("timeUpdated", "time_updated")),
            description=str(pick("description", default="")),
            homepage=str(pick("homepage", default="")),
            subscription_url=str(pick("subscriptionUrl", "subscription_url", default="")),
            display_number=int(pick("displayNumber", "display_number", default=0) or 0),
            languages=tuple(str(x) for x in (pick("languages", default=[]) or [])),
            tags=tuple(_as_int_list(pick("tags", default=[]))),
        )

    @classmethod
    def from_filter(cls, flt: "Filter") -> "FilterMetadata":
        return cls(
            filter_id=flt.filter_id,
            name=flt.name,
            group_id=flt.group_id,
            version=flt.version,
            time_updated=flt.last_update_time,
            description=flt.description,
            homepage=flt.homepage,
            subscription_url=flt.subscription_url,
            display_number=flt.display_number,
            languages=tuple(flt.languages),
            tags=tuple(flt.tags),
        )


@dataclass
class Filter:
    filter_id: int
    group_id: int
    name: str = ""
    description: str = ""
    homepage: str = ""
    subscription_url: str = ""
    display_number: int = 0
    languages: List[str] = field(default_factory=list)
    tags: List[int] = field(default_factory=list)
    version: str = ""
    custom_url: Optional[str] = None
    enabled: bool = False
    installed: bool = False
    loaded: bool = False
    trusted: bool = False
    last_check_time: int = 0
    last_update_time: int = 0
    is_downloading: bool = False
    removed: bool = False

    @property
    def is_custom(self) -> bool:
        return bool(self.custom_url) or self.filter_id >= CUSTOM_FILTERS_START_ID

    @classmethod
    def from_metadata(cls, meta: FilterMetadata) -> "Filter":
        return cls(
            filter_id=meta.filter_id,
            group_id=meta.group_id,
            name=meta.name,
            description=meta.description,
            homepage=meta.homepage,
            subscription_url=meta.subscription_url,
            display_number=meta.display_number,
            languages=list(meta.languages),
            tags=list(meta.tags),
            version=meta.version,
            last_update_time=meta.time_updated,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filterId": self.filter_id,
            "groupId": self.group_id,
            "name": self.name,
            "description": self.description,
            "homepage": self.homepage,
            "version": self.version,
            "customUrl": self.custom_url,
            "enabled": self.enabled,
            "installed": self.installed,
            "loaded": self.loaded,
            "trusted": self.trusted,
            "lastCheckTime": self.last_check_time,
            "lastUpdateTime": self.last_update_time,
            "isDownloading": self.is_downloading,
            "tags": list(self.tags),
            "languages": list(self.languages),
        }


@dataclass
class Group:
    group_id: int
    name: str = ""
    display_number: int = 0
    state: GroupState = GroupState.NEVER_SET

    @property
    def enabled(self) -> bool:
        return self.state is GroupState.ENABLED

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Group":
        gid = data.get("groupId", data.get("group_id"))
        return cls(
            group_id=int(gid),
            name=str(data.get("groupName") or data.get("name") or ""),
            display_number=int(data.get("displayNumber") or data.get("display_number") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "name": self.name,
            "displayNumber": self.display_number,
            "enabled": self.enabled,
            "state": self.state.value,
        }
