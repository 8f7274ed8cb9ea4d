from __future__ import annotations

from datetime import date, datetime, timezone

from flask import g, request

from marketroute.errors import Unauthorized, ValidationError

OPERATOR_ROLE = "operator"


def capture_actor() -> None:
    """Read the caller identity forwarded by the upstream auth gateway."""
    g.actor_id = (request.headers.get("X-Actor-Id") or "").strip()[:64] or None
    g.actor_role = (request.headers.get("X-Actor-Role") or "").strip().lower()[:32] or None


def current_actor_id() -> str | None:
    return getattr(g, "actor_id", None)


def require_actor() -> str:
    actor_id = current_actor_id()
    if not actor_id:
        raise Unauthorized("X-Actor-Id header required")
    return actor_id


def is_operator() -> bool:
    return getattr(g, "actor_role", None) == OPERATOR_ROLE


def require_operator() -> str:
    actor_id = require_actor()
    if not is_operator():
        raise Unauthorized("operator role required")
    return actor_id


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data


def parse_datetime(raw, field: str) -> datetime | None:
    """ISO-8601 to naive UTC. Offsets are converted; naive input is taken as UTC."""
    if raw in (None, ""):
        return None
    try:
        value = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_date(raw, field: str) -> date | None:
    if raw in (None, ""):
        return None
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)")
