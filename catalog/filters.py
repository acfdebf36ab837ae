"""Query filter model, cache-key derivation, and the field capability table.

The store and upstream do not support the same predicates: upstream can filter
on name/status/species/gender but not on origin, while the store can filter on
everything. ``FIELD_RULES`` is the one place that asymmetry is recorded.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel


class PredicateKind(str, Enum):
    EXACT = "exact"
    SUBSTRING = "substring"  # case-insensitive


class FieldRule(NamedTuple):
    store: PredicateKind
    upstream: bool  # False => unsupported upstream, applied locally after fetch


# Order is load-bearing: it fixes the cache key layout.
FIELD_RULES: Dict[str, FieldRule] = {
    "name": FieldRule(PredicateKind.SUBSTRING, upstream=True),
    "status": FieldRule(PredicateKind.EXACT, upstream=True),
    "species": FieldRule(PredicateKind.EXACT, upstream=True),
    "gender": FieldRule(PredicateKind.EXACT, upstream=True),
    "origin": FieldRule(PredicateKind.EXACT, upstream=False),
}

CACHE_PREFIX = "characters"


class CharacterFilter(BaseModel):
    """Sparse set of optional predicates over character fields."""

    name: Optional[str] = None
    status: Optional[str] = None
    species: Optional[str] = None
    gender: Optional[str] = None
    origin: Optional[str] = None


def _present(flt: CharacterFilter | None) -> Iterator[Tuple[str, str]]:
    """Yield (field, value) for non-empty fields in FIELD_RULES order."""
    if flt is None:
        return
    for field in FIELD_RULES:
        value = getattr(flt, field)
        if value:
            yield field, value


def build_filter_key(flt: CharacterFilter | None) -> str:
    """Return the canonical key for a filter, or ``"all"`` when nothing is set.

    Values are used verbatim: ``name:Rick`` and ``name:rick`` are different keys.
    """
    parts = [f"{field}:{value}" for field, value in _present(flt)]
    return "|".join(parts) if parts else "all"


def cache_key(flt: CharacterFilter | None) -> str:
    return f"{CACHE_PREFIX}:{build_filter_key(flt)}"


def store_predicates(
    flt: CharacterFilter | None,
) -> List[Tuple[str, PredicateKind, str]]:
    return [(f, FIELD_RULES[f].store, v) for f, v in _present(flt)]


def upstream_params(flt: CharacterFilter | None) -> Dict[str, str]:
    """Query parameters upstream understands; local-only fields are dropped."""
    return {f: v for f, v in _present(flt) if FIELD_RULES[f].upstream}


def local_only_fields(flt: CharacterFilter | None) -> Dict[str, str]:
    return {f: v for f, v in _present(flt) if not FIELD_RULES[f].upstream}


def matches_local_only(record: Dict[str, Any], flt: CharacterFilter | None) -> bool:
    """Apply the predicates upstream could not (exact match on origin)."""
    return all(record.get(f) == v for f, v in local_only_fields(flt).items())
