"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database with the LLM and invite
collaborators replaced by fakes.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from concierge.llm import AnalysisFailure, QuotaExhaustedError, RateLimitError
from concierge.models import Base, Partner

SUGGESTIONS = [{
    "company_name": "Sky Jets",
    "category": "aviation",
    "description": "Private jet charter",
    "website": "https://www.skyjets.com",
    "priority": "high",
    "match_reason": "Gulf coverage",
}]


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def fake_llm():
    llm = MagicMock()
    llm.configured = True
    llm.call = AsyncMock(return_value=["private jet charter Dubai"])
    llm.call_tool = AsyncMock(return_value={"suggestions": SUGGESTIONS})
    llm.call_text = AsyncMock(return_value="{}")
    return llm


@pytest.fixture()
def fake_sender():
    sender = MagicMock()
    sender.send_invite = AsyncMock(return_value={"success": True, "invite_link": "https://app/invite"})
    return sender


@pytest.fixture()
def client(test_db, fake_llm, fake_sender, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database."""
    monkeypatch.setenv("CONCIERGE_DB_PATH", str(tmp_path / "concierge.db"))
    monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)
    engine, TestSession = test_db
    from concierge.app import app, db_session, invite_client, llm_client, session_factory

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[session_factory] = lambda: TestSession
    app.dependency_overrides[llm_client] = lambda: fake_llm
    app.dependency_overrides[invite_client] = lambda: fake_sender
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with a high-risk partner pre-seeded."""
    c, TestSession = client
    session = TestSession()
    partner = Partner(company_name="Northwind Charter", country="Belarus", title="Ambassador")
    session.add(partner)
    session.commit()
    partner_id = partner.id
    session.close()
    return c, TestSession, partner_id


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class TestDiscoveryEndpoint:
    def test_missing_requirements(self, client):
        c, _ = client
        resp = c.post("/api/partner-discovery", json={"category": "aviation"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Requirements text is required"}

    @pytest.mark.parametrize("body", [{"requirements": 123}, {"requirements": ["Jets"]}])
    def test_non_string_requirements(self, client, body):
        c, _ = client
        resp = c.post("/api/partner-discovery", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Requirements text is required"}

    def test_malformed_fields(self, client, fake_llm):
        c, _ = client
        resp = c.post("/api/partner-discovery", json={"requirements": "Jets", "regions": "Dubai"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid request body"}
        fake_llm.call_tool.assert_not_awaited()

    def test_success_then_cached(self, client, fake_llm):
        c, _ = client
        body = {"requirements": "Jet from Dubai to Geneva", "category": "aviation", "regions": ["Dubai"]}
        resp = c.post("/api/partner-discovery", json=body)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["webResultsCount"] == 0
        assert data["suggestions"][0]["validated_email"] == "info@skyjets.com"
        assert data["suggestions"][0]["match_score"] == 90
        assert "cached" not in data

        again = c.post("/api/partner-discovery", json=body).json()
        assert again["cached"] is True
        assert again["suggestions"] == data["suggestions"]
        assert fake_llm.call_tool.await_count == 1

        logs = c.get("/api/discovery-logs").json()
        assert [row["kind"] for row in logs] == ["partner_discovery"]
        assert logs[0]["partners_found"] == 1

    def test_auto_outreach(self, client, fake_sender):
        c, _ = client
        resp = c.post("/api/partner-discovery", json={"requirements": "Jets", "autoOutreach": True})
        assert resp.status_code == 200
        data = resp.json()
        assert data["autoOutreachResults"] == [{
            "company": "Sky Jets", "email": "info@skyjets.com", "success": True,
            "invite_link": "https://app/invite",
        }]
        assert data["message"].endswith("contacted 1")
        fake_sender.send_invite.assert_awaited_once()

    @pytest.mark.parametrize("error,status", [
        (RateLimitError("Rate limit exceeded. Please try again later.", status_code=429), 429),
        (QuotaExhaustedError("AI credits exhausted. Please add credits.", status_code=402), 402),
        (AnalysisFailure("AI analysis failed", status_code=500), 500),
    ])
    def test_gateway_errors(self, client, fake_llm, error, status):
        c, _ = client
        fake_llm.call_tool.side_effect = error
        resp = c.post("/api/partner-discovery", json={"requirements": "Yacht in Monaco"})
        assert resp.status_code == status
        assert resp.json() == {"success": False, "error": str(error)}

    def test_not_configured(self, client, fake_llm):
        c, _ = client
        fake_llm.configured = False
        resp = c.post("/api/partner-discovery", json={"requirements": "Yacht"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "AI service not configured"

    def test_cors_preflight(self, client):
        c, _ = client
        resp = c.options("/api/partner-discovery", headers={
            "Origin": "https://app.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type",
        })
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class TestKycEndpoints:
    def test_check_and_inspect(self, seeded_client):
        c, _, partner_id = seeded_client
        resp = c.post("/api/kyc-check", json={"entity_type": "partner", "entity_id": partner_id})
        assert resp.status_code == 200
        data = resp.json()
        assert data["risk_score"] == 50
        assert data["status"] == "manual_review"
        assert data["recommendation"] == "enhanced_due_diligence"
        assert data["alerts"] == 2

        detail = c.get(f"/api/kyc/verifications/{data['verification_id']}").json()
        assert detail["status"] == "manual_review"
        assert detail["sanctions_status"] == "potential_match"
        assert len(detail["alerts"]) == 2
        assert detail["provider_response"]["alerts_generated"] == 2

        alerts = c.get("/api/kyc/alerts", params={"entity_id": partner_id, "status": "open"}).json()
        assert {a["alert_type"] for a in alerts} == {"sanctions_match", "pep_match"}
        assert c.get("/api/kyc/alerts", params={"entity_id": "someone-else"}).json() == []

    def test_unknown_partner(self, client):
        c, _ = client
        resp = c.post("/api/kyc-check", json={"entity_type": "partner", "entity_id": "missing"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Partner not found"}

    def test_invalid_entity_type(self, client):
        c, _ = client
        resp = c.post("/api/kyc-check", json={"entity_type": "vendor", "entity_id": "x"})
        assert resp.status_code == 422

    def test_unknown_verification(self, client):
        c, _ = client
        assert c.get("/api/kyc/verifications/nope").status_code == 404


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


class TestInviteEndpoint:
    def test_requires_email(self, client):
        c, _ = client
        resp = c.post("/api/partner-invite", json={"company_name": "Sky Jets"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_creates_invite(self, client):
        c, _ = client
        body = {"company_name": "Sky Jets", "contact_email": "info@skyjets.com", "category": "aviation"}
        first = c.post("/api/partner-invite", json=body).json()
        second = c.post("/api/partner-invite", json=body).json()
        assert first["success"] is True
        assert "partner-apply?invite=" in first["invite_link"]
        assert first["prospect_id"] == second["prospect_id"]
