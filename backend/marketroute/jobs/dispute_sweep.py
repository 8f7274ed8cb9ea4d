from __future__ import annotations

import logging
from datetime import datetime

from marketroute.errors import FulfillmentError
from marketroute.extensions import db
from marketroute.models import Order
from marketroute.services import order_service
from marketroute.services.order_service import OrderStatus
from marketroute.utils.job_runs import record_job_run
from marketroute.utils.settings import dispute_sweep_limit

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def due_for_release(now: datetime, *, limit: int) -> list[str]:
    rows = (
        db.session.query(Order.id)
        .filter(
            Order.status == OrderStatus.DELIVERED,
            Order.dispute_deadline.isnot(None),
            Order.dispute_deadline <= now,
        )
        .order_by(Order.dispute_deadline.asc(), Order.id.asc())
        .limit(int(limit))
        .all()
    )
    return [row[0] for row in rows]


def run_dispute_sweep(*, limit: int | None = None, now: datetime | None = None) -> dict:
    """Auto-release delivered orders whose dispute window has closed.

    Each order is handled on its own; one failure is counted and logged
    without stopping the sweep. Running it twice releases nothing twice.
    """
    started_at = _now()
    now = now or started_at
    limit = int(limit or dispute_sweep_limit())

    processed = 0
    released = 0
    skipped = 0
    errors = 0

    for order_id in due_for_release(now, limit=limit):
        processed += 1
        try:
            if order_service.auto_release(order_id, now=now):
                released += 1
            else:
                skipped += 1
        except FulfillmentError as exc:
            errors += 1
            logger.warning("dispute_sweep_order_failed order=%s code=%s msg=%s", order_id, exc.code, exc.message)
        except Exception:
            errors += 1
            db.session.rollback()
            logger.exception("dispute_sweep_order_crashed order=%s", order_id)

    result = {
        "ok": errors == 0,
        "processed": processed,
        "released": released,
        "skipped": skipped,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name="dispute_sweep",
        ok=errors == 0,
        started_at=started_at,
        summary=result,
        error=None if errors == 0 else f"errors={errors}",
    )
    return result


def run_reservation_expiry(*, limit: int | None = None, now: datetime | None = None) -> dict:
    started_at = _now()
    summary = order_service.expire_stale_reservations(now or started_at, limit=int(limit or dispute_sweep_limit()))
    result = {"ok": summary.get("errors", 0) == 0, **summary, "ts": _now().isoformat()}
    record_job_run(
        job_name="reservation_expiry",
        ok=result["ok"],
        started_at=started_at,
        summary=result,
        error=None if result["ok"] else f"errors={summary.get('errors')}",
    )
    return result


def run_once(*, limit: int | None = None) -> dict:
    """Run one sweep in a fresh app context; used by ops scripts."""
    from marketroute import create_app

    app = create_app()
    with app.app_context():
        return run_dispute_sweep(limit=limit)
