from __future__ import annotations

import logging
import os
from typing import Any, List, Optional

from services import filter_constants as const
from services.filter_models import Filter
from services.logutil import log_exception_throttled
from services.notifier import Notifier


logger = logging.getLogger(__name__)


class RulesStorage:
    """Keeps the latest downloaded rules of each filter on disk."""

    def __init__(self, rules_dir: str = "/var/lib/filterhub/rules"):
        self.rules_dir = rules_dir

    def rules_path(self, filter_id: int) -> str:
        return os.path.join(self.rules_dir, f"filter_{int(filter_id)}.txt")

    def save_rules(self, filter_id: int, rules: List[str]) -> None:
        path = self.rules_path(filter_id)
        tmp = path + ".tmp"
        os.makedirs(self.rules_dir, exist_ok=True)
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                for rule in rules or []:
                    f.write(rule)
                    f.write("\n")
            os.replace(tmp, path)
        except OSError:
            try:
                if os.path.exists(tmp):
                    os.unlink(tmp)
            except OSError:
                pass
            raise
        logger.debug("Saved %d rules for filter %s", len(rules or []), filter_id)

    def load_rules(self, filter_id: int) -> List[str]:
        try:
            with open(self.rules_path(filter_id), "r", encoding="utf-8", errors="replace") as f:
                return [ln.rstrip("\r\n") for ln in f if ln.strip()]
        except FileNotFoundError:
            return []

    def remove_rules(self, filter_id: int) -> None:
        try:
            os.unlink(self.rules_path(filter_id))
        except FileNotFoundError:
            pass

    def _on_event(self, event: str, *args: Any) -> None:
        if not args or not isinstance(args[0], Filter):
            return
        flt: Filter = args[0]
        try:
            if event == const.UPDATE_FILTER_RULES:
                rules = args[1] if len(args) > 1 else []
                self.save_rules(flt.filter_id, list(rules or []))
            elif event == const.FILTER_ADD_REMOVE and not flt.installed:
                self.remove_rules(flt.filter_id)
        except OSError:
            log_exception_throttled(
                logger,
                f"rules_storage.{event}",
                flt.filter_id,
                interval_seconds=300.0,
                message="Failed to store rules for filter %s",
            )

    def attach(self, notifier: Notifier) -> int:
        return notifier.add_listener(self._on_event, const.UPDATE_FILTER_RULES, const.FILTER_ADD_REMOVE)


_storage: Optional[RulesStorage] = None


def get_rules_storage() -> RulesStorage:
    global _storage
    if _storage is None:
        _storage = RulesStorage(rules_dir=os.environ.get("FILTERS_RULES_DIR", "/var/lib/filterhub/rules"))
    return _storage
