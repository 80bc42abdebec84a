from __future__ import annotations

import os
import re


class FilterNotFoundError(LookupError):
    """Raised when a filter id that must exist is missing from the registry."""

    def __init__(self, filter_id: int):
        super().__init__(f"Filter with id {filter_id} not found")
        self.filter_id = filter_id


class ServiceClientError(RuntimeError):
    """Metadata or rules could not be fetched from the filters service."""


class CustomFilterError(ValueError):
    """A custom filter URL could not be turned into a filter (user facing)."""


def expose_internal_errors() -> bool:
    return (os.environ.get("EXPOSE_INTERNAL_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 1].rstrip() + "…"
    return s


def public_error_message(
    e: BaseException,
    *,
    default: str = "Operation failed. Check server logs for details.",
    max_len: int = 200,
) -> str:
    """Return a message that is safe to show to API clients.

    ValueError (including CustomFilterError) messages describe bad input and
    are returned as-is; anything else is replaced by `default` unless
    EXPOSE_INTERNAL_ERRORS is set.
    """
    if expose_internal_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=max_len)
        return detail or default

    if isinstance(e, ValueError):
        msg = clean_text(str(e), max_len=max_len)
        return msg or default

    if isinstance(e, FilterNotFoundError):
        return clean_text(str(e.args[0] if e.args else ""), max_len=max_len) or default

    return default
