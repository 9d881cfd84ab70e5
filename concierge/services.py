"""Shared business logic for the concierge API and MCP server."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from concierge import cache
from concierge.discovery import DiscoveryResult
from concierge.models import AmlAlert, DiscoveryLog, KycVerification
from concierge.utils import json_parse

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def alert_summary(alert: AmlAlert) -> dict[str, Any]:
    return {
        "id": alert.id, "entity_type": alert.entity_type, "entity_id": alert.entity_id,
        "kyc_verification_id": alert.kyc_verification_id, "alert_type": alert.alert_type,
        "severity": alert.severity, "title": alert.title, "description": alert.description,
        "source": alert.source, "match_details": json_parse(alert.match_details_json),
        "match_score": alert.match_score, "status": alert.status,
    }


def verification_detail(v: KycVerification) -> dict[str, Any]:
    return {
        "id": v.id, "entity_type": v.entity_type, "entity_id": v.entity_id,
        "verification_level": v.verification_level, "status": v.status,
        "pep_status": v.pep_status, "sanctions_status": v.sanctions_status,
        "documents_verified": v.documents_verified,
        "risk_score": v.risk_score, "risk_level": v.risk_level,
        "risk_factors": json_parse(v.risk_factors_json, []),
        "provider_response": json_parse(v.provider_response_json),
        "expires_at": v.expires_at.isoformat() if v.expires_at else None,
        "alerts": [alert_summary(a) for a in v.alerts],
    }


def discovery_log_summary(row: DiscoveryLog) -> dict[str, Any]:
    return {
        "id": row.id, "kind": row.kind, "source": row.source,
        "partners_found": row.partners_found, "error": row.error,
        "metadata": json_parse(row.metadata_json),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_verification(session: Session, verification_id: str) -> KycVerification | None:
    return session.execute(
        select(KycVerification).where(KycVerification.id == verification_id)
    ).scalars().first()


def list_alerts(
    session: Session, *, entity_type: str | None = None, entity_id: str | None = None,
    status: str | None = None, limit: int = 100,
) -> list[dict[str, Any]]:
    query = select(AmlAlert)
    if entity_type:
        query = query.where(AmlAlert.entity_type == entity_type)
    if entity_id:
        query = query.where(AmlAlert.entity_id == entity_id)
    if status:
        query = query.where(AmlAlert.status == status)
    query = query.order_by(AmlAlert.created_at.desc()).limit(limit)
    return [alert_summary(a) for a in session.execute(query).scalars().all()]


def recent_discovery_logs(session: Session, limit: int = 50) -> list[dict[str, Any]]:
    rows = session.execute(
        select(DiscoveryLog).order_by(DiscoveryLog.id.desc()).limit(limit)
    ).scalars().all()
    return [discovery_log_summary(r) for r in rows]


# ---------------------------------------------------------------------------
# Background persistence
# ---------------------------------------------------------------------------


def persist_discovery(session_factory: Callable[[], Session], result: DiscoveryResult) -> None:
    """Cache a fresh discovery payload and log the run, outside the response path.

    Each write runs in its own session; failures are logged and dropped.
    """
    if result.cache_value is None:
        return
    cache.store_detached(session_factory, result.cache_key, result.cache_value)

    try:
        session = session_factory()
        try:
            session.add(DiscoveryLog(
                kind="partner_discovery",
                source="ai-partner-discovery",
                partners_found=len(result.cache_value.get("suggestions", [])),
                metadata_json=json.dumps({
                    "search_queries": result.cache_value.get("searchQueries", []),
                    "web_results": result.cache_value.get("webResultsCount", 0),
                    "auto_outreach": "autoOutreachResults" in result.response,
                    "processing_time_ms": result.response.get("processingTime"),
                }),
            ))
            session.commit()
        finally:
            session.close()
    except Exception as exc:
        log.warning("Discovery log write failed: %s", exc)
