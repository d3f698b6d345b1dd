# buildingsync/domain/media.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

MAX_GALLERY = 3

_THUMB_MARKERS = ("rs:fit:240:240",)
_LARGE_MARKERS = ("rs:fit:1920:1920",)


@dataclass(frozen=True)
class PhotoRow:
    listing_id: int
    media_url: str | None
    order_number: int | None = None


def pick_thumbnails(rows: Iterable[PhotoRow], limit: int = MAX_GALLERY) -> list[str]:
    """At most one photo per listing, first `limit` distinct listings in row order."""
    seen: set[int] = set()
    thumbs: list[str] = []
    for row in rows:
        if row.listing_id in seen or not row.media_url:
            continue
        seen.add(row.listing_id)
        thumbs.append(row.media_url)
        if len(thumbs) >= limit:
            break
    return thumbs


def _order(item: dict[str, Any]) -> int:
    try:
        return int(item.get("Order"))
    except (TypeError, ValueError):
        return 999


def _base_image_id(item: dict[str, Any], fallback: int) -> str:
    url = item.get("MediaURL")
    if url:
        tail = str(url).rsplit("/", 1)[-1]
        base = tail.split(".", 1)[0]
        if base:
            return base
    return str(item.get("MediaKey") or f"anon-{fallback}")


def filter_two_variants(media: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Reduce feed Media rows to a thumbnail and a large variant per image, in
    photo order. Each kept row gets a `variant_type` of "thumbnail" or "large".
    """
    if not media:
        return []

    groups: dict[str, list[dict[str, Any]]] = {}
    for idx, item in enumerate(sorted(media, key=_order)):
        groups.setdefault(_base_image_id(item, idx), []).append(item)

    out: list[dict[str, Any]] = []
    for variants in groups.values():
        thumb = next((v for v in variants if _is_variant(v, _THUMB_MARKERS, "Thumbnail")), None)
        large = next((v for v in variants if _is_variant(v, _LARGE_MARKERS, "Large")), None)
        if thumb:
            out.append({**thumb, "variant_type": "thumbnail"})
        if large:
            out.append({**large, "variant_type": "large"})
    return out


def _is_variant(item: dict[str, Any], markers: tuple[str, ...], size_desc: str) -> bool:
    url = item.get("MediaURL") or ""
    if not url:
        return False
    return any(m in url for m in markers) or item.get("ImageSizeDescription") == size_desc
