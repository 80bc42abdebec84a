import json
import os
import sys
from typing import Any, Dict, List, Optional


WEB_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if WEB_DIR not in sys.path:
    sys.path.insert(0, WEB_DIR)

from services.errors import ServiceClientError  # noqa: E402
from services.filters_cache import FiltersCache  # noqa: E402
from services.filters_manager import build_filters_manager  # noqa: E402
from services.filters_state import FiltersStateStore  # noqa: E402
from services.notifier import Notifier  # noqa: E402
from services.rules_storage import RulesStorage  # noqa: E402
from services.service_client import ServiceClient  # noqa: E402
from services.settings_store import SettingsStore  # noqa: E402


METADATA_URL = "https://service.test/filters.json"
RULES_URL = "https://service.test/filters/{filter_id}.txt"


def rules_url(filter_id: int) -> str:
    return RULES_URL.format(filter_id=filter_id)


class FakeServiceClient(ServiceClient):
    """ServiceClient whose HTTP layer is a dict of url -> body (or exception)."""

    def __init__(self, local_dir: str):
        super().__init__(local_filters_dir=local_dir, metadata_url=METADATA_URL, rules_url=RULES_URL)
        self.responses: Dict[str, Any] = {}
        self.requests: List[str] = []

    def fetch_text(self, url: str) -> str:
        self.requests.append(url)
        resp = self.responses.get(url)
        if resp is None:
            raise ServiceClientError(f"404 for {url}")
        if isinstance(resp, BaseException):
            raise resp
        if callable(resp):
            return resp()
        return resp

    def set_remote_metadata(self, filters: List[Dict[str, Any]], groups: Optional[List[Dict[str, Any]]] = None) -> None:
        self.responses[METADATA_URL] = json.dumps({"groups": groups or [], "filters": filters})

    def set_rules(self, filter_id: int, body: Any) -> None:
        self.responses[rules_url(filter_id)] = body

    def write_bundled(self, filters: List[Dict[str, Any]], groups: List[Dict[str, Any]]) -> None:
        os.makedirs(self.local_filters_dir, exist_ok=True)
        with open(self.local_metadata_path, "w", encoding="utf-8") as f:
            json.dump({"groups": groups, "filters": filters}, f)

    @property
    def rules_requests(self) -> List[str]:
        return [u for u in self.requests if u != METADATA_URL]


class FakeTimer:
    created: List["FakeTimer"] = []

    def __init__(self, delay: float, fn):
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False
        self.fired = False
        self.daemon = False
        self.name = ""
        FakeTimer.created.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fired = True
        self.fn()


class Clock:
    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms / 1000.0

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class Recorder:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def __call__(self, event: str, *args: Any) -> None:
        self.events.append((event,) + args)

    def kinds(self) -> List[str]:
        return [e[0] for e in self.events]

    def of(self, kind: str) -> List[tuple]:
        return [e for e in self.events if e[0] == kind]


def filter_json(filter_id: int, group_id: int = 1, name: Optional[str] = None, version: str = "1.0.0", **extra) -> Dict[str, Any]:
    d = {
        "filterId": filter_id,
        "groupId": group_id,
        "name": name or f"Filter {filter_id}",
        "version": version,
        "timeUpdated": "2024-01-02T03:04:05+0000",
        "displayNumber": filter_id,
        "tags": [],
        "languages": [],
    }
    d.update(extra)
    return d


DEFAULT_GROUPS = [
    {"groupId": 1, "groupName": "Ad Blocking", "displayNumber": 1},
    {"groupId": 2, "groupName": "Privacy", "displayNumber": 2},
    {"groupId": 7, "groupName": "Language-specific", "displayNumber": 7},
]


class Env:
    """Fully wired manager with fakes for network and timers."""

    def __init__(self, tmp_path, filters=None, groups=None, update_period_hours: int = 1):
        FakeTimer.created = []
        self.tmp = str(tmp_path)
        db = os.path.join(self.tmp, "filters.db")
        self.client = FakeServiceClient(os.path.join(self.tmp, "bundled"))
        self.client.write_bundled(filters if filters is not None else [], groups if groups is not None else DEFAULT_GROUPS)
        self.cache = FiltersCache()
        self.state = FiltersStateStore(db_path=db)
        self.settings = SettingsStore(db_path=db, defaults={"update_period_hours": str(update_period_hours)})
        self.notifier = Notifier()
        self.rules = RulesStorage(rules_dir=os.path.join(self.tmp, "rules"))
        self.clock = Clock()
        self.manager = build_filters_manager(
            cache=self.cache,
            state=self.state,
            client=self.client,
            notifier=self.notifier,
            settings=self.settings,
            rules_storage=self.rules,
            clock=self.clock,
            timer_factory=FakeTimer,
            download_workers=3,
        )
        self.updater = self.manager.updater
        self.recorder = Recorder()
        self.notifier.add_listener(self.recorder)
        self.manager.init()

    def close(self) -> None:
        self.manager.shutdown()

    def filter(self, filter_id: int):
        return self.cache.get_filter(filter_id)

    def install(self, filter_id: int, *, enabled: bool = True, last_check_ms_ago: Optional[int] = None, version: Optional[str] = None):
        flt = self.cache.get_filter(filter_id)
        flt.installed = True
        flt.loaded = True
        flt.enabled = enabled
        if version is not None:
            flt.version = version
        if last_check_ms_ago is not None:
            flt.last_check_time = self.clock.now_ms - last_check_ms_ago
        self.state.update_filter_state(flt)
        self.state.update_filter_version(flt)
        return flt
