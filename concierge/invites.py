"""Partner invitations: prospect bookkeeping and the HTTP client used by outreach."""
from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from concierge.models import PartnerProspect
from concierge.schemas import InviteRequest

log = logging.getLogger(__name__)

DEFAULT_INVITE_URL = "http://127.0.0.1:8001/api/partner-invite"
DEFAULT_INVITE_BASE_URL = "https://concierge.local"
HIGH_PRIORITY_MATCH_SCORE = 80

_TIMEOUT = 15.0


class InviteError(Exception):
    """An invite could not be created."""


class InviteValidationError(InviteError, ValueError):
    """The invite request lacks a company name or contact email."""


def build_invite_link(token: str, req: InviteRequest) -> str:
    base = os.environ.get("INVITE_BASE_URL", DEFAULT_INVITE_BASE_URL).rstrip("/")
    params = {"invite": token, "company": req.company_name, "email": req.contact_email}
    if req.contact_name:
        params["name"] = req.contact_name
    if req.category:
        params["category"] = req.category
    if req.website:
        params["website"] = req.website
    return f"{base}/partner-apply?{urlencode(params)}"


def _find_prospect(session: Session, req: InviteRequest) -> PartnerProspect | None:
    if req.prospect_id:
        return session.execute(
            select(PartnerProspect).where(PartnerProspect.id == req.prospect_id)
        ).scalars().first()
    return session.execute(
        select(PartnerProspect).where(PartnerProspect.email == req.contact_email)
    ).scalars().first()


def create_invite(session: Session, req: InviteRequest) -> dict[str, Any]:
    """Record (or refresh) a prospect and return its invite link (caller must commit)."""
    if not req.company_name or not req.contact_email:
        raise InviteValidationError("Company name and email are required")

    token = str(uuid.uuid4())
    prospect = _find_prospect(session, req)
    if prospect is None:
        prospect = PartnerProspect(
            company_name=req.company_name,
            email=req.contact_email,
            contact_name=req.contact_name or "",
            category=req.category,
            subcategory=req.subcategory or "",
            website=req.website or "",
            description=req.description or "",
            coverage_regions_json=json.dumps(req.coverage_regions or []),
            source="ai_discovery_auto" if req.auto_outreach else "ai_discovery",
            priority="high" if (req.match_score or 0) >= HIGH_PRIORITY_MATCH_SCORE else "medium",
            notes=req.match_reason or "",
        )
        session.add(prospect)
    prospect.status = "contacted"
    prospect.invite_token = token
    prospect.match_score = req.match_score
    prospect.last_contacted_at = datetime.now(UTC)
    session.flush()

    log.info("Invite issued for %s <%s>", req.company_name, req.contact_email)
    return {"success": True, "prospect_id": prospect.id, "invite_link": build_invite_link(token, req)}


class InviteClient:
    """Sends invite requests to the partner-invite endpoint over HTTP."""

    def __init__(
        self, url: str | None = None, timeout: float = _TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url or os.environ.get("PARTNER_INVITE_URL", DEFAULT_INVITE_URL)
        self._timeout = timeout
        self._transport = transport

    async def send_invite(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
            resp = await client.post(self.url, json=payload)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.status_code >= 400 or not data.get("success"):
            raise InviteError(data.get("error") or f"Invite endpoint returned HTTP {resp.status_code}")
        return data
