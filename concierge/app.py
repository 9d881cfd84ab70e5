from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Generator

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from concierge import compliance, services
from concierge.db import get_session, init_db
from concierge.discovery import DiscoveryInputError, run_discovery
from concierge.invites import InviteClient, InviteValidationError, create_invite
from concierge.llm import LLMCallError, LLMClient, QuotaExhaustedError, RateLimitError
from concierge.schemas import (
    AlertOut,
    DiscoveryRequest,
    DiscoveryResponse,
    InviteRequest,
    KycRequest,
    KycResponse,
    VerificationOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Concierge",
    version="0.1.0",
    description=(
        "Partner discovery and compliance screening for a luxury concierge service. "
        "Find and auto-qualify prospective service partners, and screen partners "
        "and clients against sanctions, PEP and adverse-media heuristics. "
        "All endpoints accept and return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Discovery", "description": "Web search + LLM partner discovery. Requires an LLM API key."},
        {"name": "Compliance", "description": "KYC/AML screening, verifications and alerts."},
        {"name": "Invites", "description": "Partner prospect invitations."},
        {"name": "Admin", "description": "Operational logs."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_factory() -> Callable[[], Session]:
    """Factory for writes that outlive the request session."""
    return get_session


def llm_client() -> LLMClient:
    return LLMClient()


def invite_client() -> InviteClient:
    return InviteClient()


def _error(status: int, message: str, *, success_flag: bool = True) -> JSONResponse:
    body = {"success": False, "error": message} if success_flag else {"error": message}
    return JSONResponse(status_code=status, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    """Discovery reports malformed bodies as 400 in its own envelope; other routes keep the 422."""
    if request.url.path != "/api/partner-discovery":
        return await request_validation_exception_handler(request, exc)
    if any("requirements" in err.get("loc", ()) for err in exc.errors()):
        return _error(400, "Requirements text is required")
    return _error(400, "Invalid request body")


# ---------------------------------------------------------------------------
# Routes: Discovery
# ---------------------------------------------------------------------------


@app.post("/api/partner-discovery", response_model=DiscoveryResponse, response_model_exclude_none=True,
          tags=["Discovery"], summary="Discover and rank prospective partners, optionally inviting the best")
async def partner_discovery(
    body: DiscoveryRequest,
    background: BackgroundTasks,
    session: Session = Depends(db_session),
    factory: Callable[[], Session] = Depends(session_factory),
    client: LLMClient = Depends(llm_client),
    sender: InviteClient = Depends(invite_client),
):
    try:
        result = await run_discovery(
            session, body, client, sender,
            search_api_key=os.environ.get("FIRECRAWL_API_KEY"),
        )
    except DiscoveryInputError as exc:
        return _error(400, str(exc))
    except (RateLimitError, QuotaExhaustedError) as exc:
        return _error(exc.status_code or 500, str(exc))
    except LLMCallError as exc:
        log.error("Discovery analysis failed: %s", exc)
        return _error(500, str(exc))
    except Exception as exc:
        log.exception("Partner discovery error")
        return _error(500, str(exc) or "Unknown error")

    if result.cache_value is not None:
        background.add_task(services.persist_discovery, factory, result)
    return result.response


# ---------------------------------------------------------------------------
# Routes: Compliance
# ---------------------------------------------------------------------------


@app.post("/api/kyc-check", response_model=KycResponse,
          tags=["Compliance"], summary="Run KYC/AML screening for a partner, client or user")
async def kyc_check(
    body: KycRequest,
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
):
    try:
        return await compliance.run_kyc_check(session, body, client)
    except compliance.EntityNotFoundError as exc:
        return _error(404, str(exc), success_flag=False)
    except Exception as exc:
        session.rollback()
        log.exception("KYC check failed for %s %s", body.entity_type, body.entity_id)
        return _error(500, str(exc) or "Unknown error", success_flag=False)


@app.get("/api/kyc/verifications/{verification_id}", response_model=VerificationOut,
         tags=["Compliance"], summary="Get a verification with its alerts")
async def get_verification(verification_id: str, session: Session = Depends(db_session)):
    v = services.get_verification(session, verification_id)
    if v is None:
        raise HTTPException(404, "Verification not found")
    return services.verification_detail(v)


@app.get("/api/kyc/alerts", response_model=list[AlertOut],
         tags=["Compliance"], summary="List AML alerts, newest first")
async def list_alerts(
    entity_type: str | None = Query(None, description="partner, client or user"),
    entity_id: str | None = Query(None),
    status: str | None = Query(None, description="Alert status, e.g. open"),
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return services.list_alerts(
        session, entity_type=entity_type, entity_id=entity_id, status=status, limit=limit,
    )


# ---------------------------------------------------------------------------
# Routes: Invites
# ---------------------------------------------------------------------------


@app.post("/api/partner-invite", tags=["Invites"], summary="Create a partner prospect invite link")
async def partner_invite(body: InviteRequest, session: Session = Depends(db_session)):
    try:
        result = create_invite(session, body)
        session.commit()
    except InviteValidationError as exc:
        return _error(400, str(exc))
    except Exception as exc:
        session.rollback()
        log.exception("Partner invite failed for %s", body.company_name)
        return _error(500, str(exc) or "Unknown error")
    return result


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/discovery-logs", tags=["Admin"], summary="Recent discovery and verification log rows")
async def discovery_logs(limit: int = Query(50, ge=1, le=500), session: Session = Depends(db_session)):
    return services.recent_discovery_logs(session, limit=limit)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("concierge.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
