"""Tests for the partner discovery pipeline.

Covers: query planning, web search fan-out, candidate extraction and
the run_discovery orchestration including cache reuse.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from concierge import cache
from concierge.discovery import (
    MAX_EXTRACTION_RESULTS,
    MAX_QUERIES,
    SNIPPET_CHARS,
    DiscoveryInputError,
    extract_candidates,
    format_search_results,
    parse_suggestions,
    plan_queries,
    run_discovery,
    template_queries,
)
from concierge.llm import AnalysisFailure, MalformedOutputError, RateLimitError
from concierge.models import Base
from concierge.schemas import DiscoveryRequest
from concierge.search import _search_one, search_web


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def _suggestion(name="Azure Yachts", priority="high", website="https://www.azureyachts.com", **extra):
    item = {
        "company_name": name,
        "category": "yacht",
        "description": "Superyacht charters across the Riviera",
        "website": website,
        "coverage_regions": ["Monaco"],
        "priority": priority,
        "match_reason": "Riviera fleet",
    }
    item.update(extra)
    return item


def make_llm(ai_queries=None, suggestions=None):
    llm = MagicMock()
    llm.configured = True
    llm.call = AsyncMock(return_value=ai_queries if ai_queries is not None else [])
    llm.call_tool = AsyncMock(return_value={"suggestions": suggestions or []})
    llm.call_text = AsyncMock(return_value="")
    return llm


# ---------------------------------------------------------------------------
# Query planning
# ---------------------------------------------------------------------------


class TestTemplateQueries:
    def test_suffixes_first_region(self):
        queries = template_queries("yacht", ["Monaco", "Sardinia"])
        assert queries == [
            "luxury yacht charter company Monaco",
            "superyacht broker Monaco",
            "mega yacht rental services Monaco",
        ]

    def test_without_region(self):
        assert template_queries("security", None) == [
            "executive protection services", "luxury security company", "VIP close protection",
        ]

    def test_unknown_or_missing_category(self):
        assert template_queries("space_travel", ["Paris"]) == []
        assert template_queries(None, ["Paris"]) == []


class TestPlanQueries:
    @pytest.mark.asyncio
    async def test_merges_and_dedupes(self):
        llm = make_llm(ai_queries=["superyacht broker Monaco", "Monaco yacht concierge partners"])
        queries = await plan_queries(llm, "Crewed yacht for 12 guests", ["Monaco"], "yacht")
        assert queries == [
            "luxury yacht charter company Monaco",
            "superyacht broker Monaco",
            "mega yacht rental services Monaco",
            "Monaco yacht concierge partners",
        ]
        assert len(queries) == len(set(queries))

    @pytest.mark.asyncio
    async def test_caps_at_max(self):
        llm = make_llm(ai_queries=["q1", "q2", "q3", "q4", "q5"])
        queries = await plan_queries(llm, "Private jets", ["Dubai"], "aviation")
        assert len(queries) == MAX_QUERIES
        # Only the first three AI queries are considered
        assert queries[3:] == ["q1", "q2", "q3"]

    @pytest.mark.asyncio
    async def test_ai_failure_keeps_template_queries(self):
        llm = make_llm()
        llm.call.side_effect = RateLimitError("slow down", status_code=429)
        queries = await plan_queries(llm, "Chef for a villa dinner", ["Mykonos"], "dining")
        assert queries == template_queries("dining", ["Mykonos"])

    @pytest.mark.asyncio
    async def test_ai_non_list_ignored(self):
        llm = make_llm(ai_queries={"queries": ["x"]})
        queries = await plan_queries(llm, "Anything", None, None)
        assert queries == []

    @pytest.mark.asyncio
    async def test_requires_requirements(self):
        with pytest.raises(DiscoveryInputError):
            await plan_queries(make_llm(), "   ", None, "yacht")


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------


class TestSearch:
    @pytest.mark.asyncio
    async def test_no_api_key_skips(self):
        assert await search_web(["q"], None) == []
        assert await search_web([], "key") == []

    @pytest.mark.asyncio
    async def test_search_one_normalizes(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["limit"] == 5
            assert request.headers["authorization"] == "Bearer key"
            return httpx.Response(200, json={"data": [
                {"title": "Azure", "url": "https://azure.example", "description": "Charters"},
                "not-a-dict",
            ]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            results = await _search_one(client, "yacht charter", "key", 5)
        assert results == [{
            "title": "Azure", "url": "https://azure.example", "description": "Charters", "markdown": "",
        }]

    @pytest.mark.asyncio
    async def test_search_one_non_200_is_empty(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "boom"}))
        async with httpx.AsyncClient(transport=transport) as client:
            assert await _search_one(client, "q", "key", 5) == []

    @pytest.mark.asyncio
    async def test_one_failed_query_does_not_abort_batch(self):
        async def fake_search_one(client, query, api_key, limit):
            if query == "bad":
                return []
            return [{"title": query, "url": f"https://{query}.example", "description": "", "markdown": ""}]

        with patch("concierge.search._search_one", side_effect=fake_search_one):
            results = await search_web(["first", "bad", "second"], "key")
        assert [r["title"] for r in results] == ["first", "second"]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class TestExtraction:
    def test_format_search_results_truncates(self):
        results = [
            {"title": f"T{i}", "url": f"https://t{i}.example", "description": "x" * 1000}
            for i in range(20)
        ]
        text = format_search_results(results)
        assert f"[{MAX_EXTRACTION_RESULTS}]" in text
        assert f"[{MAX_EXTRACTION_RESULTS + 1}]" not in text
        assert "x" * SNIPPET_CHARS in text
        assert "x" * (SNIPPET_CHARS + 1) not in text

    def test_parse_derives_email_and_score(self):
        parsed = parse_suggestions({"suggestions": [
            _suggestion(),
            _suggestion(name="Harbour Chefs", priority="MEDIUM", website="harbourchefs.fr"),
            _suggestion(name="No Site", priority="low", website=None),
        ]})
        assert [s.company_name for s in parsed] == ["Azure Yachts", "Harbour Chefs", "No Site"]
        assert [s.match_score for s in parsed] == [90, 70, 50]
        assert parsed[0].validated_email == "info@azureyachts.com"
        assert parsed[1].priority == "medium"
        assert parsed[1].validated_email == "info@harbourchefs.fr"
        assert parsed[2].validated_email is None

    def test_parse_drops_invalid_entries(self):
        parsed = parse_suggestions({"suggestions": [
            _suggestion(name="   "),
            _suggestion(name="Bad Category", category="spaceflight"),
            _suggestion(name="Bad Priority", priority="urgent"),
            "junk",
            _suggestion(name="Kept"),
        ]})
        assert [s.company_name for s in parsed] == ["Kept"]

    def test_parse_ignores_model_supplied_derived_fields(self):
        parsed = parse_suggestions({"suggestions": [
            _suggestion(match_score=5, validated_email="ceo@elsewhere.com"),
        ]})
        assert parsed[0].match_score == 90
        assert parsed[0].validated_email == "info@azureyachts.com"

    def test_parse_bad_container(self):
        assert parse_suggestions(None) == []
        assert parse_suggestions({"suggestions": "nope"}) == []

    @pytest.mark.asyncio
    async def test_malformed_output_is_soft(self):
        llm = make_llm()
        llm.call_tool.side_effect = MalformedOutputError("bad json")
        assert await extract_candidates(llm, "Jets", None, "aviation", []) == []

    @pytest.mark.asyncio
    async def test_gateway_errors_propagate(self):
        llm = make_llm()
        llm.call_tool.side_effect = RateLimitError("Rate limit exceeded", status_code=429)
        with pytest.raises(RateLimitError):
            await extract_candidates(llm, "Jets", None, "aviation", [])

    @pytest.mark.asyncio
    async def test_results_included_in_prompt(self):
        llm = make_llm(suggestions=[_suggestion()])
        await extract_candidates(
            llm, "Yacht", ["Monaco"], "yacht",
            [{"title": "Azure Yachts", "url": "https://azureyachts.com", "description": "Charters"}],
        )
        user_prompt = llm.call_tool.call_args.args[1]
        assert "WEB SEARCH RESULTS" in user_prompt
        assert "Azure Yachts" in user_prompt
        assert "REGIONS: Monaco" in user_prompt


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class TestRunDiscovery:
    @pytest.mark.asyncio
    async def test_requires_requirements(self, session):
        with pytest.raises(DiscoveryInputError):
            await run_discovery(session, DiscoveryRequest(requirements=""), make_llm())

    @pytest.mark.asyncio
    async def test_unconfigured_client(self, session):
        llm = make_llm()
        llm.configured = False
        with pytest.raises(AnalysisFailure):
            await run_discovery(session, DiscoveryRequest(requirements="Jets"), llm)

    @pytest.mark.asyncio
    async def test_fresh_run(self, session):
        llm = make_llm(ai_queries=["Monaco crewed yachts"], suggestions=[_suggestion()])
        request = DiscoveryRequest(requirements="Crewed yacht", category="yacht", regions=["Monaco"])
        with patch("concierge.discovery.search_web", new=AsyncMock(return_value=[{"title": "A"}] * 4)):
            result = await run_discovery(session, request, llm)

        resp = result.response
        assert resp["success"] is True
        assert resp["webResultsCount"] == 4
        assert resp["message"] == "Found 1 potential partners"
        assert "cached" not in resp
        assert "autoOutreachResults" not in resp
        assert resp["suggestions"][0]["match_score"] == 90
        assert "Monaco crewed yachts" in resp["searchQueries"]
        assert result.cache_value is not None
        assert "processingTime" not in result.cache_value

    @pytest.mark.asyncio
    async def test_cache_hit_skips_pipeline(self, session):
        llm = make_llm(suggestions=[_suggestion()])
        request = DiscoveryRequest(requirements="Crewed yacht", category="yacht", regions=["Monaco"])
        with patch("concierge.discovery.search_web", new=AsyncMock(return_value=[])):
            first = await run_discovery(session, request, llm)
            cache.store(session, first.cache_key, first.cache_value)
            session.commit()
            second = await run_discovery(session, request, llm)

        assert llm.call_tool.await_count == 1
        assert second.cache_value is None
        assert second.response["cached"] is True
        assert second.response["suggestions"] == first.response["suggestions"]
        assert isinstance(second.response["processingTime"], int)

    @pytest.mark.asyncio
    async def test_auto_outreach_bypasses_cache(self, session):
        llm = make_llm(suggestions=[_suggestion(), _suggestion(name="Blue Line", website="blueline.mc")])
        sender = MagicMock()
        sender.send_invite = AsyncMock(return_value={"success": True, "invite_link": "https://x/invite"})
        request = DiscoveryRequest(requirements="Crewed yacht", category="yacht", regions=["Monaco"])

        with patch("concierge.discovery.search_web", new=AsyncMock(return_value=[])):
            first = await run_discovery(session, request, llm)
            cache.store(session, first.cache_key, first.cache_value)
            session.commit()
            outreach_request = request.model_copy(update={"auto_outreach": True})
            result = await run_discovery(session, outreach_request, llm, sender)

        assert llm.call_tool.await_count == 2
        assert "cached" not in result.response
        assert [r["company"] for r in result.response["autoOutreachResults"]] == ["Azure Yachts", "Blue Line"]
        assert result.response["message"] == "Found 2 potential partners, contacted 2"
        assert "autoOutreachResults" not in result.cache_value

    def test_auto_outreach_accepts_camel_case_alias(self):
        request = DiscoveryRequest.model_validate({"requirements": "x", "autoOutreach": True})
        assert request.auto_outreach is True

    @pytest.mark.asyncio
    async def test_failed_queries_only_drop_their_results(self, session):
        llm = make_llm(ai_queries=["q1", "q2", "q3"], suggestions=[_suggestion()])
        request = DiscoveryRequest(requirements="Private jet", category="aviation", regions=["Dubai"])

        async def flaky_search_one(client, query, api_key, limit):
            if query in ("q1", "q3"):
                return []
            return [{"title": query, "url": "", "description": "", "markdown": ""}]

        with patch("concierge.search._search_one", side_effect=flaky_search_one):
            result = await run_discovery(session, request, llm, search_api_key="key")

        assert len(result.response["searchQueries"]) == 6
        assert result.response["webResultsCount"] == 4
        assert result.response["success"] is True
