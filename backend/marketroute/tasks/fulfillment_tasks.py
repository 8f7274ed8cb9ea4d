from __future__ import annotations

import json
import time
from datetime import date, datetime

from celery import shared_task
from flask import current_app

from marketroute.utils.notify import send_notification


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _retry_or_raise(task, task_name: str, exc: Exception, *, started: float, trace_id: str = "", **extra):
    if int(task.request.retries or 0) < int(task.max_retries or 0):
        countdown = _retry_countdown(int(task.request.retries or 0))
        _task_log(
            task_name,
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            detail=str(exc),
            countdown=countdown,
            **extra,
        )
        raise task.retry(exc=exc, countdown=countdown)
    _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc), **extra)
    raise exc


@shared_task(
    bind=True,
    name="marketroute.tasks.fulfillment_tasks.send_dispatch_notification",
    max_retries=5,
)
def send_dispatch_notification_task(
    self,
    *,
    recipient_id: str,
    event: str,
    payload: dict | None = None,
    reference: str = "",
    trace_id: str = "",
):
    started = time.perf_counter()
    ok = send_notification(recipient_id=recipient_id, event=event, payload=payload or {}, reference=reference)
    if ok:
        _task_log(
            "send_dispatch_notification",
            status="ok",
            started_at=started,
            trace_id=trace_id,
            dispatch_event=event,
            reference=reference,
        )
        return {"ok": True}
    if int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "send_dispatch_notification",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            dispatch_event=event,
            reference=reference,
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(f"dispatch_notify_failed:{event}"), countdown=countdown)
    # Notifications never block fulfillment; give up after the retry budget.
    _task_log(
        "send_dispatch_notification",
        status="failed",
        started_at=started,
        trace_id=trace_id,
        dispatch_event=event,
        reference=reference,
    )
    return {"ok": False}


@shared_task(
    bind=True,
    name="marketroute.tasks.fulfillment_tasks.run_dispute_sweep",
    max_retries=3,
)
def run_dispute_sweep_task(self, *, trace_id: str = ""):
    started = time.perf_counter()
    from marketroute.jobs.dispute_sweep import run_dispute_sweep

    try:
        result = run_dispute_sweep()
    except Exception as exc:
        _retry_or_raise(self, "run_dispute_sweep", exc, started=started, trace_id=trace_id)
    _task_log(
        "run_dispute_sweep",
        status="ok" if bool(result.get("ok")) else "partial",
        started_at=started,
        trace_id=trace_id,
        released=result.get("released"),
        errors=result.get("errors"),
    )
    return result


@shared_task(
    bind=True,
    name="marketroute.tasks.fulfillment_tasks.run_reservation_expiry",
    max_retries=3,
)
def run_reservation_expiry_task(self, *, trace_id: str = ""):
    started = time.perf_counter()
    from marketroute.jobs.dispute_sweep import run_reservation_expiry

    try:
        result = run_reservation_expiry()
    except Exception as exc:
        _retry_or_raise(self, "run_reservation_expiry", exc, started=started, trace_id=trace_id)
    _task_log(
        "run_reservation_expiry",
        status="ok" if bool(result.get("ok")) else "partial",
        started_at=started,
        trace_id=trace_id,
        cancelled=result.get("cancelled"),
    )
    return result


@shared_task(
    bind=True,
    name="marketroute.tasks.fulfillment_tasks.run_route_checkpoint",
    max_retries=3,
)
def run_route_checkpoint_task(self, *, batch_date: str = "", slot: str = "", trace_id: str = ""):
    started = time.perf_counter()
    from marketroute.jobs.route_runner import run_route_checkpoint

    parsed_date = date.fromisoformat(batch_date) if batch_date else None
    try:
        result = run_route_checkpoint(batch_date=parsed_date, slot=(slot or None))
    except Exception as exc:
        _retry_or_raise(
            self,
            "run_route_checkpoint",
            exc,
            started=started,
            trace_id=trace_id,
            batch_date=batch_date,
            slot=slot,
        )
    _task_log(
        "run_route_checkpoint",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        batch_id=result.get("batch_id"),
        batch_date=result.get("batch_date"),
        slot=result.get("time_slot"),
    )
    return result


@shared_task(
    bind=True,
    name="marketroute.tasks.fulfillment_tasks.reconcile_route_checkpoints",
    max_retries=3,
)
def reconcile_route_checkpoints_task(self, *, trace_id: str = ""):
    started = time.perf_counter()
    from marketroute.jobs.route_runner import run_checkpoint_reconcile

    try:
        result = run_checkpoint_reconcile()
    except Exception as exc:
        _retry_or_raise(self, "reconcile_route_checkpoints", exc, started=started, trace_id=trace_id)
    _task_log(
        "reconcile_route_checkpoints",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        created=result.get("created"),
        batch_id=result.get("batch_id"),
    )
    return result
