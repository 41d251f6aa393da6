"""ShinyBoard client.

Fetches a player's shinies page by page. Each page names the next one via
``next_page_url``, so one player's pages are read in sequence while
different players are fetched concurrently on the same event loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

import aiohttp

log = logging.getLogger(__name__)

SECONDARY_FIELDS: Tuple[str, ...] = (
    "encounter_count",
    "encounter_method",
    "date_caught",
    "variant",
    "nickname",
    "ivs",
    "nature",
    "location",
)


class PageFetchError(RuntimeError):
    """A ShinyBoard page could not be fetched or decoded."""


@dataclass
class FetchResult:
    """Everything fetched for one player, plus why fetching stopped early (if it did)."""

    username: str
    lookup_name: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def user_shinies_url(base_url: str, lookup_name: str, page: int = 1) -> str:
    name = quote(lookup_name.strip(), safe="")
    return f"{base_url.rstrip('/')}/users/{name}/shinies?page={page}"


def flatten_shiny(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten one API shiny into a secondary record.

    Only fields present in the payload are carried over, so a field the API
    omits never overwrites a stored value.
    """
    pokemon = raw.get("pokemon")
    name = pokemon.get("name") if isinstance(pokemon, Mapping) else None
    record: Dict[str, Any] = {
        field_name: raw[field_name] for field_name in SECONDARY_FIELDS if field_name in raw
    }
    record["pokemon_name"] = name.strip().lower() if isinstance(name, str) else ""
    return record


async def _get_page(session: aiohttp.ClientSession, url: str) -> Dict[str, Any]:
    async with session.get(url) as resp:
        if resp.status >= 400:
            raise PageFetchError(f"HTTP {resp.status} for {url}")
        try:
            payload = await resp.json(content_type=None)
        except ValueError as exc:
            raise PageFetchError(f"Invalid JSON from {url}: {exc}") from exc
    if not isinstance(payload, dict):
        raise PageFetchError(f"Unexpected payload type from {url}: {type(payload).__name__}")
    return payload


async def iter_shiny_pages(
    session: aiohttp.ClientSession,
    first_url: str,
    *,
    max_pages: int,
) -> AsyncIterator[List[Dict[str, Any]]]:
    """Yield flattened records one page at a time.

    Finite: ends when a page has no ``next_page_url``, when a URL repeats or
    after ``max_pages``. Not resumable; start again from the first URL.
    Raises ``PageFetchError`` (or an ``aiohttp.ClientError``) on failure.
    """
    url: Optional[str] = first_url
    seen: set[str] = set()
    while url:
        if url in seen:
            log.warning("Pagination loop detected at %s; stopping", url)
            return
        if len(seen) >= max_pages:
            log.warning("Reached max_pages=%d before %s; stopping", max_pages, url)
            return
        seen.add(url)

        payload = await _get_page(session, url)
        shinies = payload.get("shinies")
        page = [flatten_shiny(s) for s in shinies if isinstance(s, Mapping)] if isinstance(shinies, list) else []
        yield page

        next_url = payload.get("next_page_url")
        url = next_url if isinstance(next_url, str) and next_url else None


async def fetch_user_shinies(
    session: aiohttp.ClientSession,
    username: str,
    lookup_name: str,
    *,
    base_url: str,
    max_pages: int,
) -> FetchResult:
    """Collect all of a player's shinies across pages.

    Never raises for network or payload errors: a failing page ends the
    sequence and whatever was collected so far is returned, with
    ``FetchResult.error`` set.
    """
    result = FetchResult(username=username, lookup_name=lookup_name)
    first_url = user_shinies_url(base_url, lookup_name)
    try:
        async for page in iter_shiny_pages(session, first_url, max_pages=max_pages):
            result.records.extend(page)
            result.pages += 1
            log.debug("%s: page %d -> %d shinies", lookup_name, result.pages, len(page))
    except (PageFetchError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
        result.error = str(exc) or type(exc).__name__
        log.warning(
            "%s: fetch stopped after %d page(s): %s",
            lookup_name,
            result.pages,
            result.error,
        )
    return result


async def fetch_all_users(
    lookups: Sequence[Tuple[str, str]],
    *,
    base_url: str,
    timeout_seconds: float,
    max_pages: int,
    session: Optional[aiohttp.ClientSession] = None,
) -> Dict[str, FetchResult]:
    """Fetch every ``(username, lookup_name)`` pair concurrently.

    Returns results keyed by ``username``.
    """
    if session is None:
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as owned:
            return await fetch_all_users(
                lookups,
                base_url=base_url,
                timeout_seconds=timeout_seconds,
                max_pages=max_pages,
                session=owned,
            )

    results = await asyncio.gather(
        *(
            fetch_user_shinies(
                session,
                username,
                lookup_name,
                base_url=base_url,
                max_pages=max_pages,
            )
            for username, lookup_name in lookups
        )
    )
    return {r.username: r for r in results}
