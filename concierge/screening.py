"""Individual KYC/AML risk screens.

Every screen returns a :class:`ScreenResult` holding the risk factors and
alert drafts it produced.  The final risk score is the plain sum of all
factor ``score_impact`` values, so screens are independent and their order
does not change the total.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from rapidfuzz.distance import Levenshtein

from concierge.llm import LLMClient
from concierge.models import ExtractedField
from concierge.schemas import RiskFactor
from concierge.utils import extract_json_object

log = logging.getLogger(__name__)

HIGH_RISK_COUNTRIES = (
    "north korea", "iran", "syria", "cuba", "crimea",
    "donetsk", "luhansk", "belarus", "myanmar", "venezuela",
)

PEP_INDICATORS = (
    "minister", "president", "senator", "congressman", "ambassador",
    "governor", "mayor", "judge", "general", "admiral", "royal family",
    "parliament", "legislature", "central bank", "state-owned",
)

GEOGRAPHY_IMPACT = 30
PEP_IMPACT = 20
AI_SANCTIONS_IMPACT = 40
AI_PEP_IMPACT = 15
AI_ADVERSE_MEDIA_IMPACT = 25
NAME_MISMATCH_IMPACT = 15
DOCUMENT_EXPIRED_IMPACT = 10
DOCUMENT_EXPIRING_IMPACT = 5
LOW_CONFIDENCE_IMPACT = 5

EXPIRY_WARNING_DAYS = 90
LOW_CONFIDENCE = 0.7
MAX_LOW_CONFIDENCE_FIELDS = 2
NAME_DISTANCE_RATIO = 0.2


@dataclass
class AlertDraft:
    alert_type: str
    severity: str
    title: str
    description: str
    match_details: dict[str, Any]
    match_score: float


@dataclass
class ScreenResult:
    factors: list[RiskFactor] = field(default_factory=list)
    alerts: list[AlertDraft] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def score(self) -> int:
        return sum(f.score_impact for f in self.factors)


@dataclass
class EntityRecord:
    """Screenable attributes of a partner or profile."""
    entity_type: str
    entity_id: str
    name: str
    country: str = ""
    email: str = ""
    title: str = ""
    bio: str = ""
    description: str = ""


# ---------------------------------------------------------------------------
# Deterministic screens
# ---------------------------------------------------------------------------


def screen_geography(country: str) -> ScreenResult:
    """Flag entities whose country contains a high-risk jurisdiction name."""
    result = ScreenResult()
    lowered = (country or "").lower()
    if not any(c in lowered for c in HIGH_RISK_COUNTRIES):
        return result
    result.factors.append(RiskFactor(
        category="geography",
        description=f"Entity is based in or associated with high-risk jurisdiction: {country}",
        severity="high",
        score_impact=GEOGRAPHY_IMPACT,
    ))
    result.alerts.append(AlertDraft(
        alert_type="sanctions_match",
        severity="high",
        title="High-Risk Jurisdiction",
        description=f"Entity is associated with {country}, which is on the high-risk countries list",
        match_details={"country": country, "list": "FATF High-Risk Countries"},
        match_score=1.0,
    ))
    return result


def pep_indicators_found(entity: EntityRecord) -> list[str]:
    haystacks = [entity.name.lower(), entity.title.lower(), entity.bio.lower()]
    return [i for i in PEP_INDICATORS if any(i in h for h in haystacks)]


def name_indicators(name: str) -> list[str]:
    lowered = name.lower()
    return [i for i in PEP_INDICATORS if i in lowered]


def screen_pep(entity: EntityRecord) -> ScreenResult:
    """Flag entities whose name, title or bio contains a PEP indicator."""
    result = ScreenResult()
    indicators = pep_indicators_found(entity)
    if not indicators:
        return result
    result.factors.append(RiskFactor(
        category="pep",
        description="Entity may be a Politically Exposed Person based on title/bio analysis",
        severity="medium",
        score_impact=PEP_IMPACT,
    ))
    result.alerts.append(AlertDraft(
        alert_type="pep_match",
        severity="medium",
        title="Potential PEP Detected",
        description=f"{entity.name} shows indicators of political exposure. Enhanced due diligence recommended.",
        match_details={"indicators_found": name_indicators(entity.name)},
        match_score=0.7,
    ))
    return result


# ---------------------------------------------------------------------------
# AI screen
# ---------------------------------------------------------------------------

AI_SCREEN_SYSTEM_PROMPT = """\
You are a compliance screening expert. Analyze names and entities for potential \
sanctions, PEP status, or adverse media concerns. Be thorough but avoid false \
positives. Return structured JSON.
"""

_AI_SCREEN_TEMPLATE = """\
Screen this entity for compliance concerns:

Name: {name}
Type: {kind}
Country: {country}
Additional Info: {info}

Check for:
1. Known sanctioned entities (OFAC, EU, UN lists)
2. Political exposure (PEP indicators)
3. Adverse media (fraud, money laundering, corruption)
4. Name variations that might match watchlists

Return JSON:
{{
  "overall_risk": "low|medium|high|critical",
  "sanctions_concern": {{ "found": boolean, "details": "explanation" }},
  "pep_concern": {{ "found": boolean, "details": "explanation" }},
  "adverse_media_concern": {{ "found": boolean, "details": "explanation" }},
  "name_variations": ["list of possible name variations to check"],
  "recommendation": "approve|enhanced_due_diligence|reject|manual_review"
}}
"""


def _concern(analysis: dict[str, Any], key: str) -> tuple[bool, str]:
    value = analysis.get(key)
    if not isinstance(value, dict):
        return False, ""
    return value.get("found") is True, str(value.get("details") or "")


def build_ai_screen_prompt(entity: EntityRecord) -> str:
    return _AI_SCREEN_TEMPLATE.format(
        name=entity.name,
        kind="Business/Company" if entity.entity_type == "partner" else "Individual",
        country=entity.country or "Unknown",
        info=entity.bio or entity.description or "None provided",
    )


def interpret_ai_analysis(analysis: dict[str, Any], entity: EntityRecord, pep_already_flagged: bool) -> ScreenResult:
    """Convert the model's JSON verdict into factors and alerts."""
    result = ScreenResult(details={
        "overall_risk": analysis.get("overall_risk"),
        "recommendation": analysis.get("recommendation"),
        "name_variations": analysis.get("name_variations") or [],
    })

    found, details = _concern(analysis, "sanctions_concern")
    if found:
        result.factors.append(RiskFactor(
            category="sanctions", description=details, severity="critical", score_impact=AI_SANCTIONS_IMPACT,
        ))
        result.alerts.append(AlertDraft(
            alert_type="sanctions_match", severity="critical", title="Potential Sanctions Match",
            description=details, match_details={"source": "AI_screening", "name": entity.name}, match_score=0.9,
        ))

    found, details = _concern(analysis, "pep_concern")
    if found and not pep_already_flagged:
        result.factors.append(RiskFactor(
            category="pep", description=details, severity="medium", score_impact=AI_PEP_IMPACT,
        ))

    found, details = _concern(analysis, "adverse_media_concern")
    if found:
        result.factors.append(RiskFactor(
            category="adverse_media", description=details, severity="high", score_impact=AI_ADVERSE_MEDIA_IMPACT,
        ))
        result.alerts.append(AlertDraft(
            alert_type="adverse_media", severity="high", title="Adverse Media Found",
            description=details, match_details={"source": "AI_media_screening"}, match_score=0.75,
        ))
    return result


async def screen_with_ai(client: LLMClient | None, entity: EntityRecord, pep_already_flagged: bool) -> ScreenResult:
    """LLM sanctions/PEP/adverse-media screen.

    Skipped when no client is configured or the entity has no name; any
    failure is logged and yields an empty result.
    """
    if client is None or not client.configured or not entity.name:
        return ScreenResult()
    try:
        text = await client.call_text(AI_SCREEN_SYSTEM_PROMPT, build_ai_screen_prompt(entity))
        analysis = extract_json_object(text)
        if analysis is None:
            log.warning("AI screen for %s returned no JSON object", entity.entity_id)
            return ScreenResult()
        result = interpret_ai_analysis(analysis, entity, pep_already_flagged)
    except Exception as exc:
        log.error("AI screening error for %s %s: %s", entity.entity_type, entity.entity_id, exc)
        return ScreenResult()
    log.info("AI risk assessment for %s: %s", entity.entity_id, result.details.get("overall_risk"))
    return result


# ---------------------------------------------------------------------------
# Document consistency
# ---------------------------------------------------------------------------

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_name(name: str) -> str:
    return _NON_ALNUM.sub("", name.lower())


def fuzzy_match(a: str, b: str) -> bool:
    """Names match when equal, one contains the other, or edit distance is within 20%."""
    n1, n2 = normalize_name(a), normalize_name(b)
    if n1 == n2 or n1 in n2 or n2 in n1:
        return True
    max_dist = int(max(len(n1), len(n2)) * NAME_DISTANCE_RATIO)
    return Levenshtein.distance(n1, n2) <= max_dist


def _parse_expiry(value: str) -> datetime | None:
    """Parse an ISO date or timestamp; date-only and naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (ValueError, AttributeError):
        return None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed


def screen_document(
    fields: list[ExtractedField], entity: EntityRecord, now: datetime | None = None,
) -> tuple[ScreenResult, bool]:
    """Compare extracted document fields with the stored profile.

    Returns the screen result and whether every field met the confidence bar.
    """
    result = ScreenResult()
    if not fields:
        return result, False
    now = now or datetime.now(UTC)
    by_name = {f.field_name: f for f in fields}

    doc_name_field = by_name.get("full_name") or by_name.get("company_name")
    doc_name = doc_name_field.field_value if doc_name_field else ""
    if doc_name and entity.name and not fuzzy_match(doc_name, entity.name):
        result.factors.append(RiskFactor(
            category="identity",
            description=f'Name discrepancy: Document shows "{doc_name}", profile shows "{entity.name}"',
            severity="medium",
            score_impact=NAME_MISMATCH_IMPACT,
        ))
        result.alerts.append(AlertDraft(
            alert_type="document_discrepancy",
            severity="medium",
            title="Name Mismatch Detected",
            description=f'Document name "{doc_name}" does not match profile name "{entity.name}"',
            match_details={"document_name": doc_name, "profile_name": entity.name},
            match_score=0.6,
        ))

    expiry_field = by_name.get("expiry_date")
    expiry = _parse_expiry(expiry_field.field_value) if expiry_field and expiry_field.field_value else None
    if expiry is not None:
        if expiry < now:
            result.factors.append(RiskFactor(
                category="documentation",
                description=f"Document expired on {expiry_field.field_value}",
                severity="medium",
                score_impact=DOCUMENT_EXPIRED_IMPACT,
            ))
        elif expiry < now + timedelta(days=EXPIRY_WARNING_DAYS):
            result.factors.append(RiskFactor(
                category="documentation",
                description=f"Document expires soon: {expiry_field.field_value}",
                severity="low",
                score_impact=DOCUMENT_EXPIRING_IMPACT,
            ))

    low_confidence = [f for f in fields if f.confidence < LOW_CONFIDENCE]
    if len(low_confidence) > MAX_LOW_CONFIDENCE_FIELDS:
        result.factors.append(RiskFactor(
            category="documentation",
            description=f"{len(low_confidence)} document fields have low extraction confidence",
            severity="low",
            score_impact=LOW_CONFIDENCE_IMPACT,
        ))

    return result, not low_confidence
