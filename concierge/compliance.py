"""KYC/AML compliance checker: load entity, run screens, persist the verdict.

Lifecycle of a verification row::

    pending -> in_progress -> approved | manual_review | rejected

A run reuses the entity's ``pending`` row if one exists, otherwise inserts a
fresh row.  The lookup and the write are separate statements without a lock,
so two simultaneous triggers for one entity can both create rows.
"""
from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from concierge.llm import LLMClient
from concierge.models import (
    AmlAlert, DiscoveryLog, ExtractedField, KycVerification, Notification, Partner, Profile,
)
from concierge.schemas import KycRequest
from concierge.screening import (
    EntityRecord, ScreenResult, screen_document, screen_geography, screen_pep, screen_with_ai,
)

log = logging.getLogger(__name__)

VERIFICATION_VALIDITY_DAYS = 365

CHECKS_PERFORMED = ("country_screening", "pep_screening", "ai_screening", "document_verification")

# (minimum score, label), checked top-down
RISK_LEVEL_THRESHOLDS = ((60, "critical"), (40, "high"), (20, "medium"))
STATUS_THRESHOLDS = ((60, "rejected"), (40, "manual_review"), (20, "approved"))

RECOMMENDATIONS = {
    "approved": "proceed",
    "manual_review": "enhanced_due_diligence",
    "rejected": "block",
}


class EntityNotFoundError(LookupError):
    """The partner or profile to screen does not exist."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_risk_level(score: int) -> str:
    for floor, level in RISK_LEVEL_THRESHOLDS:
        if score >= floor:
            return level
    return "low"


def classify_status(score: int) -> str:
    """Verification outcome; uses its own cut points, independent of the risk level."""
    for floor, status in STATUS_THRESHOLDS:
        if score >= floor:
            return status
    return "approved"


def recommendation_for(status: str) -> str:
    return RECOMMENDATIONS.get(status, "block")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_entity(session: Session, entity_type: str, entity_id: str) -> EntityRecord:
    if entity_type == "partner":
        partner = session.execute(select(Partner).where(Partner.id == entity_id)).scalars().first()
        if partner is None:
            raise EntityNotFoundError("Partner not found")
        return EntityRecord(
            entity_type=entity_type, entity_id=entity_id,
            name=partner.company_name or partner.contact_name or "",
            country=partner.country or "", email=partner.email or "",
            title=partner.title or "", bio=partner.bio or "",
            description=partner.description or "",
        )
    profile = session.execute(select(Profile).where(Profile.user_id == entity_id)).scalars().first()
    if profile is None:
        raise EntityNotFoundError("Profile not found")
    return EntityRecord(
        entity_type=entity_type, entity_id=entity_id,
        name=profile.display_name or profile.full_name or "",
        country=profile.country or "", title=profile.title or "", bio=profile.bio or "",
    )


def open_verification(session: Session, request: KycRequest) -> KycVerification:
    """Move the entity's pending verification to in_progress, or start a new one."""
    verification = session.execute(
        select(KycVerification).where(
            KycVerification.entity_type == request.entity_type,
            KycVerification.entity_id == request.entity_id,
            KycVerification.status == "pending",
        )
    ).scalars().first()
    if verification is None:
        verification = KycVerification(
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            provider="internal",
        )
        session.add(verification)
    verification.status = "in_progress"
    verification.verification_level = request.verification_level
    session.flush()
    return verification


def load_document_fields(session: Session, document_id: str | None) -> list[ExtractedField]:
    if not document_id:
        return []
    return list(session.execute(
        select(ExtractedField).where(ExtractedField.document_id == document_id)
    ).scalars().all())


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


async def run_kyc_check(session: Session, request: KycRequest, client: LLMClient | None) -> dict[str, Any]:
    """Screen one entity and persist the verification, alerts and log rows.

    Commits twice: once when the verification enters ``in_progress`` and once
    with the final verdict.
    """
    start = time.monotonic()
    log.info("Starting %s verification for %s %s",
             request.verification_level, request.entity_type, request.entity_id)

    entity = load_entity(session, request.entity_type, request.entity_id)
    log.info("Checking entity %r from %s", entity.name, entity.country or "unknown country")

    verification = open_verification(session, request)
    session.commit()

    screens: list[ScreenResult] = [screen_geography(entity.country)]
    pep = screen_pep(entity)
    screens.append(pep)

    ai = await screen_with_ai(client, entity, pep_already_flagged=bool(pep.factors))
    screens.append(ai)

    documents_verified = False
    if request.document_id or request.trigger == "document_uploaded":
        doc, documents_verified = screen_document(load_document_fields(session, request.document_id), entity)
        screens.append(doc)

    factors = [f for s in screens for f in s.factors]
    alerts = [a for s in screens for a in s.alerts]
    risk_score = sum(f.score_impact for f in factors)
    risk_level = classify_risk_level(risk_score)
    status = classify_status(risk_score)
    log.info("Final risk score for %s: %d (%s), status %s", entity.entity_id, risk_score, risk_level, status)

    now = datetime.now(UTC)
    provider_response: dict[str, Any] = {
        "processing_time_ms": int((time.monotonic() - start) * 1000),
        "checks_performed": list(CHECKS_PERFORMED),
        "alerts_generated": len(alerts),
    }
    if ai.details:
        provider_response["ai_assessment"] = ai.details

    verification.status = status
    verification.pep_checked = True
    verification.pep_status = "potential_match" if any(a.alert_type == "pep_match" for a in alerts) else "clear"
    verification.sanctions_checked = True
    verification.sanctions_status = (
        "potential_match" if any(a.alert_type == "sanctions_match" for a in alerts) else "clear"
    )
    verification.documents_verified = documents_verified
    verification.documents_verified_at = now if documents_verified else None
    verification.risk_score = risk_score
    verification.risk_level = risk_level
    verification.risk_factors_json = json.dumps([f.model_dump() for f in factors])
    verification.provider_response_json = json.dumps(provider_response)
    verification.expires_at = now + timedelta(days=VERIFICATION_VALIDITY_DAYS)

    if alerts:
        session.add_all([
            AmlAlert(
                entity_type=request.entity_type,
                entity_id=request.entity_id,
                kyc_verification_id=verification.id,
                alert_type=a.alert_type,
                severity=a.severity,
                title=a.title,
                description=a.description,
                source="internal_kyc",
                match_details_json=json.dumps(a.match_details),
                match_score=a.match_score,
                status="open",
            )
            for a in alerts
        ])
        log.info("Created %d AML alerts for %s", len(alerts), entity.entity_id)

    if risk_level in ("high", "critical"):
        session.add(Notification(
            type="compliance_alert",
            title=f"High-Risk {request.entity_type} Detected",
            description=f"{entity.name} flagged with risk score {risk_score}. Requires immediate review.",
            action_url=f"/admin/compliance?verification={verification.id}",
            priority="high",
        ))

    processing_time_ms = int((time.monotonic() - start) * 1000)
    session.add(DiscoveryLog(
        kind="kyc_verification",
        source="kyc-aml-checker",
        metadata_json=json.dumps({
            "verification_id": verification.id,
            "entity_type": request.entity_type,
            "entity_id": request.entity_id,
            "verification_level": request.verification_level,
            "risk_score": risk_score,
            "risk_level": risk_level,
            "alerts_generated": len(alerts),
            "documents_verified": documents_verified,
            "processing_time_ms": processing_time_ms,
        }),
    ))
    session.commit()

    return {
        "success": True,
        "verification_id": verification.id,
        "status": status,
        "risk_score": risk_score,
        "risk_level": risk_level,
        "risk_factors": [f.model_dump() for f in factors],
        "alerts": len(alerts),
        "documents_verified": documents_verified,
        "recommendation": recommendation_for(status),
        "processing_time_ms": processing_time_ms,
    }
