from __future__ import annotations

import logging
from datetime import date, datetime

from marketroute.services import scheduler_service
from marketroute.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)


def run_route_checkpoint(
    *,
    batch_date: date | None = None,
    slot: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Build the batch for one checkpoint, defaulting to the one that just fired."""
    started_at = datetime.utcnow()
    now = now or started_at
    if batch_date is None and slot:
        batch_date = scheduler_service.last_fired_date(slot, now)
    elif batch_date is None or not slot:
        batch_date, slot, _ = scheduler_service.latest_checkpoint(now)
    try:
        batch = scheduler_service.run_checkpoint(batch_date, slot, now=now)
    except Exception as exc:
        logger.exception("route_checkpoint_failed date=%s slot=%s", batch_date, slot)
        record_job_run(
            job_name="route_checkpoint",
            ok=False,
            started_at=started_at,
            summary={"batch_date": batch_date.isoformat(), "time_slot": slot},
            error=str(exc),
        )
        raise
    result = {
        "ok": True,
        "batch_date": batch_date.isoformat(),
        "time_slot": slot,
        "batch_id": batch.id if batch is not None else None,
        "order_count": int(batch.order_count or 0) if batch is not None else 0,
        "route_count": len(batch.routes) if batch is not None else 0,
        "ts": datetime.utcnow().isoformat(),
    }
    record_job_run(job_name="route_checkpoint", ok=True, started_at=started_at, summary=result)
    return result


def run_checkpoint_reconcile(*, now: datetime | None = None) -> dict:
    started_at = datetime.utcnow()
    try:
        summary = scheduler_service.reconcile_missed_checkpoints(now or started_at)
    except Exception as exc:
        logger.exception("route_reconcile_failed")
        record_job_run(job_name="route_reconcile", ok=False, started_at=started_at, error=str(exc))
        raise
    result = {"ok": True, **summary, "ts": datetime.utcnow().isoformat()}
    record_job_run(job_name="route_reconcile", ok=True, started_at=started_at, summary=result)
    return result
