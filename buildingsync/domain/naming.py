# buildingsync/domain/naming.py
from __future__ import annotations

from collections import Counter
from typing import Any, Iterable


def majority_name(counts: Counter | dict[str, int]) -> str | None:
    """
    Name with the highest observation count.

    Ties go to the name seen first. That order comes from the feed, which does
    not promise a stable ordering, so a tie can resolve differently between runs.
    """
    best: str | None = None
    best_count = 0
    for name, count in counts.items():
        if count > best_count:
            best, best_count = name, count
    return best


def count_names(records: Iterable[dict[str, Any]], field: str = "BuildingName") -> Counter:
    out: Counter = Counter()
    for rec in records:
        v = rec.get(field)
        if isinstance(v, str) and v.strip():
            out[v.strip()] += 1
    return out
