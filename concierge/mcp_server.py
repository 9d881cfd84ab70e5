from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from concierge import compliance, services
from concierge.db import get_session, init_db, session_scope
from concierge.discovery import DiscoveryInputError, run_discovery
from concierge.invites import InviteClient
from concierge.llm import LLMCallError, LLMClient
from concierge.schemas import DiscoveryRequest, KycRequest

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def concierge_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Concierge",
    instructions=(
        "Concierge sources luxury service partners and screens partners and clients "
        "for KYC/AML risk. Use discover_partners() to find candidates for a brief, "
        "run_kyc_check() to screen an entity, then get_verification(id) and "
        "list_alerts() to review the outcome."
    ),
    lifespan=concierge_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("concierge://overview")
def concierge_overview() -> str:
    """Overview of the concierge tools: data model, risk scoring and outcomes."""
    return json.dumps({
        "system": "Concierge partner discovery and compliance screening",
        "data_model": {
            "suggestion": "A prospective partner found on the web and ranked high/medium/low.",
            "verification": "One KYC/AML screening run for a partner, client or user.",
            "alert": "A sanctions, PEP, adverse-media or document finding raised by a verification.",
        },
        "partner_categories": [
            "aviation", "yacht", "hospitality", "dining", "events",
            "security", "real_estate", "automotive", "wellness", "art_collectibles",
        ],
        "risk_levels": {"low": "<20", "medium": "20-39", "high": "40-59", "critical": ">=60"},
        "statuses": {"approved": "<40", "manual_review": "40-59", "rejected": ">=60"},
        "workflow": [
            "1. discover_partners(requirements, category, regions)",
            "2. run_kyc_check(entity_type, entity_id)",
            "3. get_verification(verification_id) for factors and alerts",
            "4. list_alerts(status='open') to triage",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Discovery
# ---------------------------------------------------------------------------


@mcp.tool()
async def discover_partners(
    requirements: str,
    category: str | None = None,
    regions: list[str] | None = None,
    auto_outreach: bool = False,
) -> dict:
    """Search the web for prospective partners matching a brief.

    Args:
        requirements: Free-text description of the partner needed.
        category: One of the partner categories (see concierge://overview).
        regions: Regions the partner must cover; the first one sharpens search queries.
        auto_outreach: Invite up to three high-priority candidates.
    """
    request = DiscoveryRequest(
        requirements=requirements, category=category, regions=regions, auto_outreach=auto_outreach,
    )
    with session_scope() as session:
        try:
            result = await run_discovery(
                session, request, LLMClient(), InviteClient(),
                search_api_key=os.environ.get("FIRECRAWL_API_KEY"),
            )
        except (DiscoveryInputError, LLMCallError) as exc:
            return {"success": False, "error": str(exc)}
    if result.cache_value is not None:
        services.persist_discovery(get_session, result)
    return result.response


# ---------------------------------------------------------------------------
# Tools: Compliance
# ---------------------------------------------------------------------------


@mcp.tool()
async def run_kyc_check(
    entity_type: str,
    entity_id: str,
    document_id: str | None = None,
    verification_level: str = "standard",
) -> dict:
    """Screen a partner, client or user and store the verification.

    Args:
        entity_type: partner, client or user.
        entity_id: Partner id, or the profile's user id for clients and users.
        document_id: Extracted document to check against the profile.
        verification_level: basic, standard or enhanced.
    """
    try:
        request = KycRequest(
            entity_type=entity_type, entity_id=entity_id, document_id=document_id,
            verification_level=verification_level,
            trigger="document_uploaded" if document_id else "manual",
        )
    except ValidationError as exc:
        return {"error": f"Invalid request: {exc.error_count()} field(s) rejected"}
    with session_scope() as session:
        try:
            return await compliance.run_kyc_check(session, request, LLMClient())
        except compliance.EntityNotFoundError as exc:
            return {"error": str(exc)}


@mcp.tool()
def get_verification(verification_id: str) -> dict:
    """Get a verification with its risk factors and alerts."""
    with session_scope() as session:
        v = services.get_verification(session, verification_id)
        if v is None:
            return {"error": f"Verification {verification_id} not found"}
        return services.verification_detail(v)


@mcp.tool()
def list_alerts(
    entity_type: str | None = None,
    entity_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """List AML alerts, newest first, optionally filtered by entity or status."""
    with session_scope() as session:
        return services.list_alerts(
            session, entity_type=entity_type, entity_id=entity_id, status=status, limit=limit,
        )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Concierge MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
