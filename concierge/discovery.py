"""Partner discovery: query planning, web search, LLM extraction, outreach.

Pipeline
--------
1. **Query planning**: canned phrases for the requested category (suffixed
   with the first region) merged with three LLM-generated queries tailored to
   the free-text requirements.  LLM failure here only loses the tailored queries.
2. **Web search**: all queries fan out concurrently (see ``concierge.search``).
3. **Extraction**: search snippets plus the requirements go to the LLM through
   a forced ``suggest_partners`` tool call.  Each returned entry is validated
   against :class:`~concierge.schemas.CandidateSuggestion`; malformed output
   degrades to an empty list while gateway errors abort the request.
4. **Derivation**: ``validated_email`` from the website domain and
   ``match_score`` from the priority tier.
5. **Outreach** (optional): invites for the top high-priority candidates.

Results are cached by request fingerprint for ``CACHE_TTL_HOURS``; outreach
requests never read the cache.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from concierge import cache
from concierge.llm import AnalysisFailure, LLMClient, MalformedOutputError
from concierge.outreach import InviteSender, dispatch_outreach, infer_email
from concierge.schemas import CandidateSuggestion, DiscoveryRequest
from concierge.search import search_web

log = logging.getLogger(__name__)


class DiscoveryInputError(ValueError):
    """The discovery request is missing required input."""


MAX_QUERIES = 6
AI_QUERY_COUNT = 3
MAX_EXTRACTION_RESULTS = 15
SNIPPET_CHARS = 300
MAX_SUGGESTIONS = 10

PRIORITY_SCORES = {"high": 90, "medium": 70, "low": 50}

PARTNER_CATEGORIES = (
    "aviation", "yacht", "hospitality", "dining", "events",
    "security", "real_estate", "automotive", "wellness", "art_collectibles",
)

CATEGORY_QUERIES: dict[str, tuple[str, ...]] = {
    "aviation": ("luxury private jet charter company", "VIP aviation services", "executive aircraft management"),
    "yacht": ("luxury yacht charter company", "superyacht broker", "mega yacht rental services"),
    "hospitality": ("luxury hotel management company", "five star resort operator", "exclusive villa rental"),
    "dining": ("Michelin star restaurant group", "private chef services luxury", "exclusive dining experiences"),
    "events": ("luxury event planning company", "VIP access entertainment", "exclusive experiences provider"),
    "security": ("executive protection services", "luxury security company", "VIP close protection"),
    "real_estate": ("luxury real estate agency", "exclusive property broker", "high-end property management"),
    "automotive": ("luxury car rental company", "exotic car dealership", "collector car broker"),
    "wellness": ("luxury spa resort", "exclusive wellness retreat", "VIP medical concierge"),
    "art_collectibles": ("fine art gallery", "luxury auction house", "collectibles broker"),
}

QUERY_SYSTEM_PROMPT = """\
You are a search query expert for a luxury concierge company sourcing service \
partners. Given a partner brief, write 3 highly specific web search queries \
that would surface real companies matching it.

Respond with ONLY a JSON array of 3 strings, e.g.:
["query one", "query two", "query three"]
"""

EXTRACTION_SYSTEM_PROMPT = """\
You are a partner sourcing analyst for an ultra-luxury concierge service. \
From the web search results and the brief, identify real companies that could \
serve as vetted partners. Only include companies that plausibly exist; prefer \
those with a website in the results.

For each company assign a priority:
- high: strong fit with the brief, premium positioning, clear coverage of the region
- medium: reasonable fit with gaps
- low: tangential fit

Keep description under 100 characters and match_reason under 50 characters. \
Return at most 10 companies by calling the suggest_partners tool.
"""

SUGGESTION_TOOL = "suggest_partners"
SUGGESTION_TOOL_DESCRIPTION = "Return partner suggestions extracted from the search results."
SUGGESTION_TOOL_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "suggestions": {
            "type": "array",
            "maxItems": MAX_SUGGESTIONS,
            "items": {
                "type": "object",
                "properties": {
                    "company_name": {"type": "string"},
                    "category": {"type": "string", "enum": list(PARTNER_CATEGORIES)},
                    "subcategory": {"type": "string"},
                    "description": {"type": "string", "description": "Under 100 characters"},
                    "website": {"type": "string"},
                    "coverage_regions": {"type": "array", "items": {"type": "string"}},
                    "priority": {"type": "string", "enum": ["high", "medium", "low"]},
                    "match_reason": {"type": "string", "description": "Under 50 characters"},
                },
                "required": ["company_name", "category", "description", "priority", "match_reason"],
            },
        },
    },
    "required": ["suggestions"],
}


# ---------------------------------------------------------------------------
# Query planning
# ---------------------------------------------------------------------------


def template_queries(category: str | None, regions: list[str] | None) -> list[str]:
    """Canned queries for *category*, each suffixed with the first region."""
    phrases = CATEGORY_QUERIES.get((category or "").strip().lower(), ())
    region = (regions or [None])[0]
    if region:
        return [f"{p} {region}" for p in phrases]
    return list(phrases)


def _describe_brief(requirements: str, regions: list[str] | None, category: str | None) -> str:
    lines = [f"REQUIREMENTS: {requirements}"]
    if category:
        lines.append(f"CATEGORY: {category}")
    if regions:
        lines.append(f"REGIONS: {', '.join(regions)}")
    return "\n".join(lines)


async def generate_ai_queries(
    client: LLMClient, requirements: str, regions: list[str] | None, category: str | None,
) -> list[str]:
    """Ask the LLM for tailored queries; any failure yields ``[]``."""
    try:
        raw = await client.call(QUERY_SYSTEM_PROMPT, _describe_brief(requirements, regions, category))
    except Exception as exc:
        log.warning("AI query generation failed: %s", exc)
        return []
    if not isinstance(raw, list):
        log.warning("AI query generation returned %s, expected a list", type(raw).__name__)
        return []
    return [q.strip() for q in raw if isinstance(q, str) and q.strip()][:AI_QUERY_COUNT]


async def plan_queries(
    client: LLMClient, requirements: str, regions: list[str] | None = None, category: str | None = None,
) -> list[str]:
    """Merge template and AI queries, dropping exact duplicates, capped at MAX_QUERIES."""
    if not requirements or not requirements.strip():
        raise DiscoveryInputError("Requirements text is required")
    queries = template_queries(category, regions) + await generate_ai_queries(
        client, requirements, regions, category,
    )
    return list(dict.fromkeys(queries))[:MAX_QUERIES]


# ---------------------------------------------------------------------------
# Candidate extraction
# ---------------------------------------------------------------------------


def format_search_results(results: list[dict[str, str]]) -> str:
    """Render at most MAX_EXTRACTION_RESULTS results with truncated snippets."""
    blocks: list[str] = []
    for idx, r in enumerate(results[:MAX_EXTRACTION_RESULTS], start=1):
        snippet = (r.get("description") or r.get("markdown") or "")[:SNIPPET_CHARS]
        blocks.append(f"[{idx}] {r.get('title', '')}\nURL: {r.get('url', '')}\n{snippet}")
    return "\n\n".join(blocks)


def parse_suggestions(raw: Any) -> list[CandidateSuggestion]:
    """Validate the tool payload; invalid entries are dropped, a bad container yields ``[]``."""
    items = raw.get("suggestions") if isinstance(raw, dict) else None
    if not isinstance(items, list):
        log.warning("Extraction payload has no suggestions list")
        return []
    suggestions: list[CandidateSuggestion] = []
    for item in items[:MAX_SUGGESTIONS]:
        if not isinstance(item, dict):
            continue
        try:
            s = CandidateSuggestion.model_validate(
                {k: v for k, v in item.items() if k not in ("validated_email", "match_score")}
            )
        except ValidationError as exc:
            log.warning("Dropping malformed suggestion %r: %s", item.get("company_name"), exc.error_count())
            continue
        s.validated_email = infer_email(s.website, s.company_name)
        s.match_score = PRIORITY_SCORES[s.priority]
        suggestions.append(s)
    return suggestions


async def extract_candidates(
    client: LLMClient,
    requirements: str,
    regions: list[str] | None,
    category: str | None,
    search_results: list[dict[str, str]],
) -> list[CandidateSuggestion]:
    """Turn search results into validated suggestions.

    Raises :class:`~concierge.llm.RateLimitError`,
    :class:`~concierge.llm.QuotaExhaustedError` or
    :class:`~concierge.llm.AnalysisFailure` on gateway errors.
    """
    user = _describe_brief(requirements, regions, category)
    if search_results:
        user += "\n\nWEB SEARCH RESULTS:\n" + format_search_results(search_results)
    else:
        user += "\n\nNo web search results are available; suggest well-known companies you are confident exist."
    try:
        raw = await client.call_tool(
            EXTRACTION_SYSTEM_PROMPT, user,
            SUGGESTION_TOOL, SUGGESTION_TOOL_DESCRIPTION, SUGGESTION_TOOL_PARAMETERS,
        )
    except MalformedOutputError as exc:
        log.warning("Extraction output malformed, returning no suggestions: %s", exc)
        return []
    return parse_suggestions(raw)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass
class DiscoveryResult:
    response: dict[str, Any]
    cache_key: str
    cache_value: dict[str, Any] | None  # None when served from cache


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def run_discovery(
    session: Session,
    request: DiscoveryRequest,
    client: LLMClient,
    sender: InviteSender | None = None,
    search_api_key: str | None = None,
) -> DiscoveryResult:
    """Run the discovery pipeline for one request.

    The cache is read here but written by the caller from
    ``DiscoveryResult.cache_value``, outside the response path.
    """
    start = time.monotonic()
    requirements = (request.requirements or "").strip()
    if not requirements:
        raise DiscoveryInputError("Requirements text is required")
    if not client.configured:
        raise AnalysisFailure("AI service not configured")

    key = cache.cache_key(requirements, request.category, request.regions)
    if not request.auto_outreach:
        cached = cache.read_cached(session, key)
        if cached is not None:
            log.info("Discovery cache hit for %s", key)
            return DiscoveryResult(
                response={**cached, "cached": True, "processingTime": _elapsed_ms(start)},
                cache_key=key, cache_value=None,
            )

    queries = await plan_queries(client, requirements, request.regions, request.category)
    log.info("Discovery queries: %s", queries)
    results = await search_web(queries, search_api_key)
    suggestions = await extract_candidates(client, requirements, request.regions, request.category, results)

    payload: dict[str, Any] = {
        "success": True,
        "suggestions": [s.model_dump() for s in suggestions],
        "searchQueries": queries,
        "webResultsCount": len(results),
        "message": f"Found {len(suggestions)} potential partners",
    }

    response = dict(payload)
    if request.auto_outreach:
        if sender is None:
            raise RuntimeError("auto outreach requested without an invite sender")
        outreach = await dispatch_outreach(suggestions, sender)
        contacted = sum(1 for r in outreach if r["success"])
        response["autoOutreachResults"] = outreach
        response["message"] = f"{payload['message']}, contacted {contacted}"
    response["processingTime"] = _elapsed_ms(start)

    return DiscoveryResult(response=response, cache_key=key, cache_value=payload)
