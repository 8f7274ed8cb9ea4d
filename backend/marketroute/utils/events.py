from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from marketroute.extensions import db
from marketroute.models import PlatformEvent
from marketroute.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def log_event(
    event_type: str,
    *,
    actor_id: str | None = None,
    subject_type: str | None = None,
    subject_id: str | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
    occurred_at: datetime | None = None,
) -> PlatformEvent | None:
    """Stage an audit event on the current session.

    The row rides on the caller's transaction, so it commits or rolls back
    together with the state change it describes. A repeated idempotency key
    returns the existing row. ``occurred_at`` stamps the event with the
    business clock of the caller instead of wall time.
    """
    key = (idempotency_key or "").strip()[:180] or None
    if key:
        existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
        if existing:
            return existing
    try:
        event = PlatformEvent(
            created_at=occurred_at or datetime.utcnow(),
            event_type=(event_type or "unknown").strip()[:80],
            actor_id=str(actor_id)[:64] if actor_id is not None else None,
            subject_type=(subject_type or "").strip()[:80] or None,
            subject_id=str(subject_id)[:120] if subject_id is not None else None,
            request_id=(get_request_id() or "").strip()[:80] or None,
            idempotency_key=key,
            severity=(severity or "INFO").strip().upper()[:16] or "INFO",
            metadata_json=_safe_json(metadata or {}),
        )
    except (TypeError, ValueError) as exc:
        logger.warning("platform_event_build_failed event=%s err=%s", event_type, exc)
        return None
    db.session.add(event)
    return event
