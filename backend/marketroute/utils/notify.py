from __future__ import annotations

import logging

from marketroute.integrations.dispatch.factory import build_dispatch_notifier
from marketroute.utils.settings import dispatch_queue_enabled

logger = logging.getLogger(__name__)


def send_notification(*, recipient_id: str, event: str, payload: dict | None = None, reference: str = "") -> bool:
    """Deliver one notification synchronously. Returns False on any failure."""
    try:
        notifier = build_dispatch_notifier()
        result = notifier.notify(
            recipient_id=str(recipient_id),
            event=event,
            payload=payload or {},
            reference=reference,
        )
    except Exception as exc:
        logger.warning("dispatch_notify_error event=%s recipient=%s err=%s", event, recipient_id, exc)
        return False
    if not result.ok:
        logger.warning(
            "dispatch_notify_failed event=%s recipient=%s code=%s detail=%s",
            event,
            recipient_id,
            result.code,
            result.message,
        )
        return False
    return True


def notify(*, recipient_id: str | None, event: str, payload: dict | None = None, reference: str = "") -> None:
    """Fire-and-forget notification; never raises into state transitions."""
    if not recipient_id:
        return
    if dispatch_queue_enabled():
        try:
            from marketroute.tasks.fulfillment_tasks import send_dispatch_notification_task

            send_dispatch_notification_task.delay(
                recipient_id=str(recipient_id),
                event=event,
                payload=payload or {},
                reference=reference,
            )
            return
        except Exception as exc:
            logger.warning("dispatch_enqueue_failed event=%s err=%s; sending inline", event, exc)
    send_notification(recipient_id=recipient_id, event=event, payload=payload, reference=reference)
