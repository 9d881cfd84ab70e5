"""Pydantic request/response schemas for the concierge API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

PartnerCategory = Literal[
    "aviation", "yacht", "hospitality", "dining", "events",
    "security", "real_estate", "automotive", "wellness", "art_collectibles",
]
Priority = Literal["high", "medium", "low"]
Severity = Literal["low", "medium", "high", "critical"]


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class DiscoveryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    requirements: str | None = None
    regions: list[str] | None = None
    category: str | None = None
    auto_outreach: bool = Field(False, alias="autoOutreach")


class CandidateSuggestion(BaseModel):
    company_name: str
    category: PartnerCategory
    subcategory: str | None = None
    description: str = ""
    website: str | None = None
    coverage_regions: list[str] | None = None
    priority: Priority
    match_reason: str = ""
    validated_email: str | None = None
    match_score: int = 0

    @field_validator("company_name")
    @classmethod
    def company_name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company_name must not be empty")
        return v

    @field_validator("category", "priority", mode="before")
    @classmethod
    def lowercase_enum(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class OutreachResult(BaseModel):
    company: str
    email: str | None = None
    success: bool
    invite_link: str | None = None
    error: str | None = None


class DiscoveryResponse(BaseModel):
    success: bool = True
    suggestions: list[CandidateSuggestion]
    searchQueries: list[str]
    webResultsCount: int
    autoOutreachResults: list[OutreachResult] | None = None
    processingTime: int
    message: str
    cached: bool | None = None


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class KycRequest(BaseModel):
    entity_type: Literal["partner", "client", "user"]
    entity_id: str
    trigger: str = "manual"
    document_id: str | None = None
    verification_level: Literal["basic", "standard", "enhanced"] = "standard"


class RiskFactor(BaseModel):
    category: str
    description: str
    severity: Severity
    score_impact: int


class KycResponse(BaseModel):
    success: bool = True
    verification_id: str
    status: str
    risk_score: int
    risk_level: str
    risk_factors: list[RiskFactor]
    alerts: int
    documents_verified: bool
    recommendation: Literal["proceed", "enhanced_due_diligence", "block"]
    processing_time_ms: int


class AlertOut(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    kyc_verification_id: str
    alert_type: str
    severity: str
    title: str
    description: str
    source: str
    match_details: dict[str, Any] = {}
    match_score: float
    status: str


class VerificationOut(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    verification_level: str
    status: str
    pep_status: str | None = None
    sanctions_status: str | None = None
    documents_verified: bool
    risk_score: int
    risk_level: str | None = None
    risk_factors: list[RiskFactor] = []
    provider_response: dict[str, Any] = {}
    expires_at: str | None = None
    alerts: list[AlertOut] = []


# ---------------------------------------------------------------------------
# Partner invites
# ---------------------------------------------------------------------------


class InviteRequest(BaseModel):
    prospect_id: str | None = None
    company_name: str | None = None
    contact_email: str | None = None
    contact_name: str | None = None
    category: str = ""
    subcategory: str | None = None
    website: str | None = None
    description: str | None = None
    coverage_regions: list[str] | None = None
    match_score: float | None = None
    match_reason: str | None = None
    auto_outreach: bool = False
