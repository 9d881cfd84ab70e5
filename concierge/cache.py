"""Discovery result cache on top of the generic ``settings`` table."""
from __future__ import annotations

import base64
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from concierge.models import Setting
from concierge.utils import json_parse

log = logging.getLogger(__name__)

CACHE_TTL_HOURS = 24
_KEY_PREFIX = "discovery_cache_"


def cache_key(requirements: str, category: str | None, regions: list[str] | None) -> str:
    """Fingerprint a discovery request.

    Truncating to 50 characters means long, similar requirement strings can
    share a key.
    """
    raw = f"{requirements}_{category or 'all'}_{','.join(regions or [])}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")[:50]


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt


def read_cached(session: Session, key: str, now: datetime | None = None) -> dict[str, Any] | None:
    """Return the cached payload for *key*, or None when missing, stale or unreadable."""
    try:
        row = session.execute(
            select(Setting).where(Setting.key == _KEY_PREFIX + key)
        ).scalars().first()
    except Exception as exc:
        log.warning("Cache read failed for %s: %s", key, exc)
        return None
    if row is None:
        return None
    now = now or datetime.now(UTC)
    if now - _as_utc(row.updated_at) >= timedelta(hours=CACHE_TTL_HOURS):
        log.debug("Cache entry %s is stale", key)
        return None
    value = json_parse(row.value_json, None)
    return value if isinstance(value, dict) else None


def store(session: Session, key: str, value: dict[str, Any]) -> None:
    """Upsert the payload for *key* (caller must commit)."""
    row = session.execute(
        select(Setting).where(Setting.key == _KEY_PREFIX + key)
    ).scalars().first()
    if row is None:
        row = Setting(key=_KEY_PREFIX + key)
        session.add(row)
    row.value_json = json.dumps(value)
    row.updated_at = datetime.now(UTC)


def store_detached(session_factory: Callable[[], Session], key: str, value: dict[str, Any]) -> None:
    """Write a cache entry in its own session; failures are logged, never raised."""
    try:
        session = session_factory()
        try:
            store(session, key, value)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
    except Exception as exc:
        log.warning("Cache write failed for %s: %s", key, exc)
