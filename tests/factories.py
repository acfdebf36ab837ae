"""Builders for upstream payloads and local records used across tests."""

from typing import Any, Dict, List, Optional

UPSTREAM_URL = "https://rickandmortyapi.com/api"
CHARACTER_URL_RE = r"^https://rickandmortyapi\.com/api/character(?:/)?(?:\?.*)?$"


def raw_character(
    id: int,
    name: str = "Rick Sanchez",
    status: str = "Alive",
    species: str = "Human",
    gender: str = "Male",
    origin: Optional[str] = "Earth (C-137)",
) -> Dict[str, Any]:
    """Upstream shape: origin is nested under 'origin': {'name': ..., 'url': ...}."""
    return {
        "id": id,
        "name": name,
        "status": status,
        "species": species,
        "gender": gender,
        "origin": {"name": origin or "", "url": ""},
        "image": f"https://rickandmortyapi.com/api/character/avatar/{id}.jpeg",
        "url": f"https://rickandmortyapi.com/api/character/{id}",
    }


def record(id: int, **overrides) -> Dict[str, Any]:
    """Local (normalized) shape of ``raw_character(id, **overrides)``."""
    raw = raw_character(id, **overrides)
    return {
        "id": id,
        "name": raw["name"],
        "status": raw["status"],
        "species": raw["species"],
        "gender": raw["gender"],
        "image": raw["image"],
        "origin": raw["origin"]["name"] or "Unknown",
    }


def page_payload(
    results: List[Dict[str, Any]], pages: int = 1, next: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "info": {"count": len(results), "pages": pages, "next": next, "prev": None},
        "results": results,
    }
