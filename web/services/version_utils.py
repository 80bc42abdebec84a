from __future__ import annotations

import re
from typing import Optional, Tuple


_MAX_PARTS = 4


def _parse(version: Optional[str]) -> Tuple[int, ...]:
    parts = []
    for p in (version or "").strip().split("."):
        m = re.match(r"\d+", p.strip())
        parts.append(int(m.group(0)) if m else 0)
    parts = parts[:_MAX_PARTS]
    while len(parts) < _MAX_PARTS:
        parts.append(0)
    return tuple(parts)


def compare_versions(left: Optional[str], right: Optional[str]) -> int:
    """Compare dotted versions part by part; missing parts count as zero.

    Returns 1, 0 or -1.
    """
    a = _parse(left)
    b = _parse(right)
    if a > b:
        return 1
    if a < b:
        return -1
    return 0


def is_greater_version(left: Optional[str], right: Optional[str]) -> bool:
    return compare_versions(left, right) > 0
