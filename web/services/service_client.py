from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from services.errors import ServiceClientError
from services.filter_models import FilterMetadata
from services.logutil import log_exception_throttled, log_warning_throttled


logger = logging.getLogger(__name__)


_USER_AGENT = "filterhub/filters-update"

DEFAULT_METADATA_URL = "https://filters.adtidy.org/extension/safari/filters.json"
DEFAULT_RULES_URL = "https://filters.adtidy.org/extension/safari/filters/{filter_id}_optimized.txt"


def split_rules(text: str) -> List[str]:
    return [ln.strip() for ln in (text or "").splitlines() if ln.strip()]


class ServiceClient:
    """Talks to the filters service and reads the bundled filter copies."""

    def __init__(
        self,
        local_filters_dir: str = "/var/lib/filterhub/filters",
        metadata_url: str = DEFAULT_METADATA_URL,
        rules_url: str = DEFAULT_RULES_URL,
        timeout_seconds: float = 30.0,
        max_bytes: int = 64 * 1024 * 1024,
    ):
        self.local_filters_dir = local_filters_dir
        self.metadata_url = metadata_url
        self.rules_url = rules_url
        self.timeout_seconds = float(timeout_seconds)
        self.max_bytes = int(max_bytes) if int(max_bytes) > 0 else 64 * 1024 * 1024

    @property
    def local_metadata_path(self) -> str:
        return os.path.join(self.local_filters_dir, "filters.json")

    def local_rules_path(self, filter_id: int) -> str:
        return os.path.join(self.local_filters_dir, f"filter_{int(filter_id)}.txt")

    def fetch_text(self, url: str) -> str:
        """GET `url` and decode it as UTF-8. Raises ServiceClientError."""
        u = urlparse(url or "")
        if u.scheme not in ("http", "https"):
            raise ServiceClientError("Only http/https URLs are supported.")

        req = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
        chunks: List[bytes] = []
        total = 0
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                cl = resp.headers.get("Content-Length")
                if cl is not None and cl.strip().isdigit() and int(cl) > self.max_bytes:
                    raise ServiceClientError(f"Download too large (Content-Length={cl}).")
                while True:
                    chunk = resp.read(256 * 1024)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > self.max_bytes:
                        raise ServiceClientError(f"Download exceeded limit ({self.max_bytes} bytes).")
                    chunks.append(chunk)
        except ServiceClientError:
            raise
        except (urllib.error.URLError, OSError, ValueError) as e:
            # socket.timeout is an OSError, so a hung server ends up here too.
            raise ServiceClientError(f"Request to {url} failed: {e}") from e
        return b"".join(chunks).decode("utf-8", errors="replace")

    def fetch_json(self, url: str) -> Any:
        text = self.fetch_text(url)
        try:
            return json.loads(text)
        except ValueError as e:
            raise ServiceClientError(f"Invalid JSON from {url}") from e

    def load_remote_filters_metadata(self) -> Dict[str, Any]:
        data = self.fetch_json(self.metadata_url)
        if not isinstance(data, dict) or not isinstance(data.get("filters"), list):
            raise ServiceClientError("Filters metadata has no 'filters' list.")
        return data

    def load_local_filters_metadata(self) -> Dict[str, Any]:
        path = self.local_metadata_path
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            log_warning_throttled(
                logger,
                "service_client.local_metadata.missing",
                path,
                interval_seconds=3600.0,
                message="Bundled filters metadata not found at %s",
            )
            return {"groups": [], "filters": []}
        except (OSError, ValueError) as e:
            raise ServiceClientError(f"Unable to read {path}") from e
        if not isinstance(data, dict):
            return {"groups": [], "filters": []}
        data.setdefault("groups", [])
        data.setdefault("filters", [])
        return data

    def load_filters_metadata(self, filter_ids: Iterable[int]) -> List[FilterMetadata]:
        wanted = {int(x) for x in filter_ids}
        if not wanted:
            return []
        data = self.load_remote_filters_metadata()
        out: List[FilterMetadata] = []
        for raw in data.get("filters") or []:
            try:
                meta = FilterMetadata.from_json(raw)
            except (TypeError, ValueError, KeyError):
                log_exception_throttled(
                    logger,
                    "service_client.metadata.parse",
                    interval_seconds=300.0,
                    message="Skipping malformed filter metadata entry",
                )
                continue
            if meta.filter_id in wanted:
                out.append(meta)
        return out

    def load_filter_rules(self, filter_id: int, force_remote: bool = True) -> List[str]:
        """Rules of one filter; bundled copy first unless `force_remote`."""
        if not force_remote:
            local = self._read_local_rules(filter_id)
            if local is not None:
                logger.debug("Using bundled rules for filter %s", filter_id)
                return local
        url = self.rules_url.format(filter_id=int(filter_id))
        return split_rules(self.fetch_text(url))

    def _read_local_rules(self, filter_id: int) -> Optional[List[str]]:
        path = self.local_rules_path(filter_id)
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return split_rules(f.read())
        except FileNotFoundError:
            return None
        except OSError:
            log_exception_throttled(
                logger,
                "service_client.local_rules",
                path,
                interval_seconds=300.0,
                message="Failed to read bundled rules %s",
            )
            return None

    def write_local_filters_metadata(self, metadata: Dict[str, Any]) -> None:
        """Replace the bundled filters.json snapshot."""
        os.makedirs(self.local_filters_dir, exist_ok=True)
        path = self.local_metadata_path
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=4)
        os.replace(tmp, path)
        logger.info("Filters metadata snapshot updated at %s", path)


_client: Optional[ServiceClient] = None


def get_service_client() -> ServiceClient:
    global _client
    if _client is None:
        def _env_int(name: str, default: int) -> int:
            v = (os.environ.get(name) or "").strip()
            if not v:
                return int(default)
            try:
                return int(v)
            except ValueError:
                return int(default)

        _client = ServiceClient(
            local_filters_dir=os.environ.get("FILTERS_LOCAL_DIR", "/var/lib/filterhub/filters"),
            metadata_url=os.environ.get("FILTERS_METADATA_URL", DEFAULT_METADATA_URL),
            rules_url=os.environ.get("FILTERS_RULES_URL", DEFAULT_RULES_URL),
            timeout_seconds=_env_int("FILTERS_FETCH_TIMEOUT", 30),
            max_bytes=_env_int("FILTERS_MAX_DOWNLOAD_BYTES", 64 * 1024 * 1024),
        )
    return _client
