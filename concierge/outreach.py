"""Contact email inference and automatic outreach for discovered partners."""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Protocol
from urllib.parse import urlsplit

from concierge.schemas import CandidateSuggestion

log = logging.getLogger(__name__)

# Mailbox local-parts tried in order when guessing a contact address.
EMAIL_PREFIXES = ("info", "contact", "hello", "enquiries", "partnerships", "business")

BLOCKED_EMAIL_PATTERNS = ("noreply", "no-reply", "donotreply", "mailer-daemon", "postmaster")

MAX_OUTREACH = 3

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$")


class InviteSender(Protocol):
    async def send_invite(self, payload: dict[str, Any]) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Email inference
# ---------------------------------------------------------------------------


def is_valid_email(email: str | None) -> bool:
    """Syntactic check plus rejection of automated-sender mailboxes."""
    if not email or not _EMAIL_RE.match(email):
        return False
    lowered = email.lower()
    return not any(p in lowered for p in BLOCKED_EMAIL_PATTERNS)


def website_domain(website: str | None) -> str | None:
    """Return the lowercased host of *website* without a leading ``www.``."""
    url = (website or "").strip()
    if not url:
        return None
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    return host.removeprefix("www.")


def infer_email(website: str | None, company_name: str | None = None) -> str | None:
    """Guess a contact address from the website's domain.

    *company_name* is accepted for logging only; the guess depends on the
    domain alone.  When no prefix validates, ``info@<domain>`` is returned
    without re-validation.
    """
    domain = website_domain(website)
    if domain is None:
        return None
    for prefix in EMAIL_PREFIXES:
        candidate = f"{prefix}@{domain}"
        if is_valid_email(candidate):
            return candidate
    log.debug("No valid mailbox for %s (%s), falling back to info@", domain, company_name)
    return f"info@{domain}"


# ---------------------------------------------------------------------------
# Outreach dispatch
# ---------------------------------------------------------------------------


def select_outreach_targets(suggestions: list[CandidateSuggestion]) -> list[CandidateSuggestion]:
    """High-priority candidates with an email or website, capped at MAX_OUTREACH."""
    eligible = [
        s for s in suggestions
        if s.priority == "high" and (s.validated_email or s.website)
    ]
    return eligible[:MAX_OUTREACH]


def _invite_payload(suggestion: CandidateSuggestion, email: str) -> dict[str, Any]:
    return {
        "company_name": suggestion.company_name,
        "contact_email": email,
        "category": suggestion.category,
        "subcategory": suggestion.subcategory,
        "website": suggestion.website,
        "description": suggestion.description,
        "coverage_regions": suggestion.coverage_regions or [],
        "match_score": suggestion.match_score,
        "match_reason": suggestion.match_reason,
        "auto_outreach": True,
    }


async def _reach_out(suggestion: CandidateSuggestion, sender: InviteSender) -> dict[str, Any]:
    email = suggestion.validated_email or infer_email(suggestion.website, suggestion.company_name)
    if not is_valid_email(email):
        return {"company": suggestion.company_name, "email": email, "success": False,
                "error": "No valid contact email"}
    try:
        data = await sender.send_invite(_invite_payload(suggestion, email))
    except Exception as exc:
        log.warning("Outreach to %s <%s> failed: %s", suggestion.company_name, email, exc)
        return {"company": suggestion.company_name, "email": email, "success": False, "error": str(exc)}
    log.info("Invited %s <%s>", suggestion.company_name, email)
    return {"company": suggestion.company_name, "email": email, "success": True,
            "invite_link": data.get("invite_link")}


async def dispatch_outreach(
    suggestions: list[CandidateSuggestion], sender: InviteSender,
) -> list[dict[str, Any]]:
    """Invite the top high-priority candidates concurrently.

    Each failure is reported in its own result entry; results keep candidate order.
    """
    targets = select_outreach_targets(suggestions)
    if not targets:
        return []
    return list(await asyncio.gather(*(_reach_out(s, sender) for s in targets)))
