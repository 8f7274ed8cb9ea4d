from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_retry, worker_ready

from marketroute.utils.settings import (
    afternoon_checkpoint,
    dispute_sweep_interval_seconds,
    morning_checkpoint,
    scheduler_timezone,
)

_SIGNALS_BOUND = False


def _broker_url() -> str:
    return (
        (os.getenv("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or "redis://localhost:6379/0"
    )


def _result_backend(broker_url: str) -> str:
    return (
        (os.getenv("CELERY_RESULT_BACKEND") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or broker_url
    )


def _extract_trace_id(args, kwargs) -> str:
    if isinstance(kwargs, dict):
        trace_id = str(kwargs.get("trace_id") or "").strip()
        if trace_id:
            return trace_id
    if isinstance(args, (list, tuple)):
        for item in args:
            if isinstance(item, str) and item.strip().startswith("trace_"):
                return item.strip()
    return ""


def beat_schedule() -> dict:
    sweep_every = float(dispute_sweep_interval_seconds())
    morning_hour, morning_minute = morning_checkpoint()
    afternoon_hour, afternoon_minute = afternoon_checkpoint()
    return {
        "dispute-window-sweep": {
            "task": "marketroute.tasks.fulfillment_tasks.run_dispute_sweep",
            "schedule": sweep_every,
        },
        "reservation-expiry": {
            "task": "marketroute.tasks.fulfillment_tasks.run_reservation_expiry",
            "schedule": sweep_every,
        },
        "route-checkpoint-reconcile": {
            "task": "marketroute.tasks.fulfillment_tasks.reconcile_route_checkpoints",
            "schedule": sweep_every,
        },
        "route-checkpoint-morning": {
            "task": "marketroute.tasks.fulfillment_tasks.run_route_checkpoint",
            "schedule": crontab(hour=morning_hour, minute=morning_minute),
            "kwargs": {"slot": "morning"},
        },
        "route-checkpoint-afternoon": {
            "task": "marketroute.tasks.fulfillment_tasks.run_route_checkpoint",
            "schedule": crontab(hour=afternoon_hour, minute=afternoon_minute),
            "kwargs": {"slot": "afternoon"},
        },
    }


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_failure",
            "task_name": getattr(sender, "name", "") if sender is not None else "",
            "task_id": str(task_id or ""),
            "trace_id": _extract_trace_id(args, kwargs),
            "exception": str(exception or ""),
            "retry_count": int(extra.get("retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        if einfo is not None:
            payload["einfo"] = str(einfo)
        flask_app.logger.error(json.dumps(payload))

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        kwargs = getattr(request, "kwargs", None)
        args = getattr(request, "args", None)
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "trace_id": _extract_trace_id(args, kwargs),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        if einfo is not None:
            payload["einfo"] = str(einfo)
        flask_app.logger.warning(json.dumps(payload))

    @worker_ready.connect(weak=False)
    def _on_worker_ready(sender=None, **extra):
        # Catch up on a checkpoint missed while no worker was running.
        from marketroute.tasks.fulfillment_tasks import reconcile_route_checkpoints_task

        reconcile_route_checkpoints_task.delay(trace_id="trace_worker_ready")
        flask_app.logger.info(json.dumps({"event": "celery_worker_ready", "reconcile_enqueued": True}))

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    broker = _broker_url()
    backend = _result_backend(broker)
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone=scheduler_timezone(),
        enable_utc=True,
        beat_schedule=beat_schedule(),
    )
    celery.conf.update(flask_app.config.get("CELERY", {}))

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.set_default()
    celery.autodiscover_tasks(["marketroute.tasks"], related_name="fulfillment_tasks")
    _bind_task_observers(flask_app)
    return celery
