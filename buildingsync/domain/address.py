# buildingsync/domain/address.py
from __future__ import annotations

import re

# Directional / suffix tokens that never identify a street on their own.
STREET_STOP_WORDS: frozenset[str] = frozenset({"st", "e", "w", "n", "s"})

MIN_KEY_LEN = 3

_PARENTHETICAL = re.compile(r"\(.*?\)")
_UNIT_TAIL = re.compile(r"\bunit\b\s*\d*.*", re.IGNORECASE)
_FURNISHED_TAIL = re.compile(r"\s*furnished.*", re.IGNORECASE)
_FURN_TAIL = re.compile(r"\s*furn$", re.IGNORECASE)
_SPACES = re.compile(r"\s+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def clean_street_name(street_name: str | None) -> str:
    """Lower-case and strip notes, unit and furnished tails, and dots."""
    if not street_name:
        return ""
    s = street_name.lower().strip()
    s = _PARENTHETICAL.sub("", s)
    s = _UNIT_TAIL.sub("", s)
    s = _FURNISHED_TAIL.sub("", s)
    s = _FURN_TAIL.sub("", s)
    s = s.replace(".", " ")
    return _SPACES.sub(" ", s).strip()


def street_key(street_name: str | None) -> str:
    """
    Canonical street token used for clustering.

      "King St W (Furnished)" -> "king"
      "King Street West"      -> "king"

    Returns "" when nothing usable is left (record is unclusterable).
    """
    s = clean_street_name(street_name)
    if not s:
        return ""

    for word in s.split(" "):
        # house numbers sometimes leak into the street name field
        if word in STREET_STOP_WORDS or word.isdigit():
            continue
        if len(word) >= MIN_KEY_LEN:
            return word

    collapsed = s.replace(" ", "")
    return collapsed if len(collapsed) >= MIN_KEY_LEN else ""


def cluster_key(street_number: str | None, street_name: str | None) -> tuple[str, str] | None:
    """(street_number, street_key), lower-cased; None if either part is missing."""
    num = (street_number or "").strip()
    key = street_key(street_name)
    if not num or not key:
        return None
    return num.lower(), key


def full_street_name(street_name: str | None, suffix: str | None, direction: str | None) -> str:
    return " ".join(p for p in (street_name, suffix, direction) if p)


def canonical_address(street_number: str, full_street: str, city: str | None) -> str:
    return f"{street_number} {full_street}, {city or ''}".rstrip(", ").strip()


def building_slug(name: str | None, street_number: str, full_street: str, city: str | None) -> str:
    """
    Deterministic slug. The building name is left out when absent so that an
    unnamed building still gets a stable, address-only slug.
    """
    parts = [name.strip() if name and name.strip() else None, street_number, full_street, city]
    joined = " ".join(p for p in parts if p).lower()
    return _NON_ALNUM.sub("-", joined).strip("-")


def leading_word(value: str | None) -> str:
    """First whitespace-separated token, lower-cased ("" when empty)."""
    parts = (value or "").strip().split()
    return parts[0].lower() if parts else ""
