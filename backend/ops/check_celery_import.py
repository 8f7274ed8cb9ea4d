from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

REQUIRED_TASKS = (
    "marketroute.tasks.fulfillment_tasks.send_dispatch_notification",
    "marketroute.tasks.fulfillment_tasks.run_dispute_sweep",
    "marketroute.tasks.fulfillment_tasks.run_reservation_expiry",
    "marketroute.tasks.fulfillment_tasks.run_route_checkpoint",
    "marketroute.tasks.fulfillment_tasks.reconcile_route_checkpoints",
)


def main() -> int:
    try:
        from celery_app import celery
        import marketroute.tasks.fulfillment_tasks  # noqa: F401

        _ = str(celery.conf.broker_url or "")
        missing = [name for name in REQUIRED_TASKS if name not in celery.tasks]
        if missing:
            print(f"error: tasks not registered -> {', '.join(missing)}", file=sys.stderr)
            return 1
        beat = sorted((celery.conf.beat_schedule or {}).keys())
        print(f"ok: celery_app:celery import succeeded tasks={len(REQUIRED_TASKS)} beat={beat}")
        return 0
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
