"""Web search fan-out against the Firecrawl search API."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

log = logging.getLogger(__name__)

FIRECRAWL_SEARCH_URL = "https://api.firecrawl.dev/v1/search"
SEARCH_RESULTS_PER_QUERY = 5

_USER_AGENT = "ConciergeBot/1.0 (+https://concierge.local)"
_TIMEOUT = 30.0


def _normalize_result(raw: dict[str, Any]) -> dict[str, str]:
    return {
        "title": str(raw.get("title") or ""),
        "url": str(raw.get("url") or ""),
        "description": str(raw.get("description") or ""),
        "markdown": str(raw.get("markdown") or ""),
    }


async def _search_one(
    client: httpx.AsyncClient, query: str, api_key: str, limit: int,
) -> list[dict[str, str]]:
    """Run one search; any failure yields an empty list for this query only."""
    try:
        resp = await client.post(
            FIRECRAWL_SEARCH_URL,
            json={"query": query, "limit": limit, "scrapeOptions": {"formats": ["markdown"]}},
            headers={"Authorization": f"Bearer {api_key}"},
        )
        if resp.status_code != 200:
            log.warning("Search failed for query=%r: HTTP %s", query, resp.status_code)
            return []
        data = resp.json().get("data") or []
    except Exception as exc:
        log.warning("Search failed for query=%r: %s", query, exc)
        return []
    return [_normalize_result(r) for r in data if isinstance(r, dict)]


async def search_web(
    queries: list[str],
    api_key: str | None,
    limit: int = SEARCH_RESULTS_PER_QUERY,
) -> list[dict[str, str]]:
    """Issue all *queries* concurrently and flatten the results in query order.

    Without an API key the search is skipped and an empty list is returned.
    """
    if not api_key:
        log.info("FIRECRAWL_API_KEY not set, skipping web search")
        return []
    if not queries:
        return []

    async with httpx.AsyncClient(
        timeout=httpx.Timeout(_TIMEOUT),
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        batches = await asyncio.gather(*(_search_one(client, q, api_key, limit) for q in queries))

    results = [r for batch in batches for r in batch]
    log.info("Web search: %d queries, %d results", len(queries), len(results))
    return results
