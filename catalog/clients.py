"""Client for the upstream Rick & Morty character API.

One GET per page, no retries: a failed page is reported as ``UpstreamError``
and the caller decides what to skip. Re-invocation (next scheduled tick, next
query) is the only retry mechanism.
"""

import logging
from typing import Any, Dict, List, NamedTuple, Optional

import httpx

DEFAULT_BASE_URL = "https://rickandmortyapi.com/api"

log = logging.getLogger(__name__)


class UpstreamError(Exception):
    """Network, status, or parse failure against the upstream API."""


class UpstreamPage(NamedTuple):
    results: List[Dict[str, Any]]
    pages: int  # total page count reported by upstream (0 if unknown)
    next: Optional[str]


EMPTY_PAGE = UpstreamPage(results=[], pages=0, next=None)


def _validate_base_url(base_url: str) -> str:
    if not base_url or not base_url.strip():
        raise ValueError("upstream base URL is required")
    try:
        url = httpx.URL(base_url.strip())
    except httpx.InvalidURL as exc:
        raise ValueError(f"invalid upstream base URL: {base_url!r}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f"upstream base URL must be absolute http(s): {base_url!r}")
    return str(url).rstrip("/")


def normalize_character(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce an upstream character into the local record shape.

    Args:
        raw: Character dict as returned by upstream (``origin`` is nested).

    Returns:
        Record dict with an int ``id`` and ``origin`` flattened to its name,
        or ``"Unknown"`` when upstream has none.

    Raises:
        ValueError: If ``id`` or ``image`` is missing, or ``id`` is not numeric.
    """
    if raw.get("id") is None or not raw.get("image"):
        raise ValueError(f"character missing id or image: {raw.get('id')!r}")

    origin = raw.get("origin")
    if isinstance(origin, dict):
        origin = origin.get("name")

    return {
        "id": int(raw["id"]),
        "name": raw.get("name"),
        "status": raw.get("status"),
        "species": raw.get("species"),
        "gender": raw.get("gender"),
        "image": raw["image"],
        "origin": origin or "Unknown",
    }


class UpstreamClient:
    """Paginated access to ``<base_url>/character``.

    The base URL is validated at construction so a missing or malformed
    endpoint fails at startup instead of on the first request.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = _validate_base_url(base_url)
        self.character_url = f"{self.base_url}/character"
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch_page(
        self, page: int, params: Optional[Dict[str, str]] = None
    ) -> UpstreamPage:
        """Fetch one page of characters.

        Args:
            page: 1-based page number.
            params: Upstream-supported filters (name/status/species/gender).

        Returns:
            The page's raw results and pagination info. A 404 is upstream's
            way of saying "no matches" and comes back as an empty page.

        Raises:
            UpstreamError: On transport errors, other error statuses, or a
                body that is not the expected JSON shape.
        """
        query: Dict[str, Any] = {"page": page, **(params or {})}
        try:
            resp = await self._http.get(self.character_url, params=query)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"request failed page={page}: {exc!r}") from exc

        if resp.status_code == 404:
            log.debug("upstream.no_results page=%d params=%s", page, params)
            return EMPTY_PAGE
        if resp.status_code >= 400:
            raise UpstreamError(f"upstream status={resp.status_code} page={page}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamError(f"invalid JSON page={page}") from exc

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise UpstreamError(f"missing results page={page}")
        info = data.get("info") or {}
        try:
            pages = int(info.get("pages") or 0)
        except (TypeError, ValueError) as exc:
            raise UpstreamError(f"bad page count page={page}") from exc
        return UpstreamPage(results=results, pages=pages, next=info.get("next"))

    async def probe(self) -> bool:
        """Return True if the upstream API root answers HTTP 200."""
        try:
            r = await self._http.get(self.base_url, timeout=5.0)
            return r.status_code == 200
        except httpx.HTTPError:
            return False
