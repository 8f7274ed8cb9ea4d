from __future__ import annotations

import logging
from datetime import datetime

from marketroute.errors import AlreadyResolved, NotDisputed, ValidationError
from marketroute.models import Order
from marketroute.services import ledger_service, reservation_service
from marketroute.services.order_service import OrderStatus, apply_transition, locked_order, notify_parties
from marketroute.utils.concurrency import product_locks

logger = logging.getLogger(__name__)


class DisputeOutcome:
    REFUND = "refund"
    RELEASE = "release"

    ALL = (REFUND, RELEASE)


def list_disputes(*, limit: int = 100) -> list[Order]:
    """Open disputes, oldest first, for the operator queue."""
    return (
        Order.query.filter(Order.status == OrderStatus.DISPUTED)
        .order_by(Order.disputed_at.asc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


def resolve_dispute(
    order_id: str,
    outcome: str,
    operator_id: str,
    note: str = "",
    *,
    now: datetime | None = None,
) -> Order:
    """Settle a disputed order as a refund to the buyer or a release to the seller.

    Resolving again with the same outcome returns the order unchanged; a
    different outcome raises AlreadyResolved.
    """
    choice = (outcome or "").strip().lower()
    if choice not in DisputeOutcome.ALL:
        raise ValidationError(f"outcome must be one of {', '.join(DisputeOutcome.ALL)}")
    if not operator_id:
        raise ValidationError("operator_id is required")
    now = now or datetime.utcnow()

    with locked_order(order_id) as order:
        if order.dispute_outcome:
            if order.dispute_outcome == choice:
                logger.info("dispute_resolve_replay order=%s outcome=%s", order.id, choice)
                return order
            raise AlreadyResolved(order.id, order.dispute_outcome)
        if order.status != OrderStatus.DISPUTED:
            raise NotDisputed(f"order {order.id} is not disputed (status={order.status})", order_id=order.id)

        target = OrderStatus.REFUNDED if choice == DisputeOutcome.REFUND else OrderStatus.RELEASED
        apply_transition(
            order,
            target,
            action=f"resolve dispute with {choice}",
            actor_id=operator_id,
            actor_type="operator",
            reason=(note or choice)[:240],
            metadata={"outcome": choice},
            now=now,
        )
        order.dispute_outcome = choice
        order.resolved_by = str(operator_id)
        order.resolved_at = now
        order.resolution_note = (note or "").strip()[:400] or None
        if choice == DisputeOutcome.REFUND:
            order.refunded_at = now
            if order.hold_id:
                ledger_service.refund(order.hold_id)
            with product_locks.hold(order.product_id):
                reservation_service.reopen(order.product_id)
        else:
            order.released_at = now
            if order.hold_id:
                ledger_service.release(order.hold_id)

    logger.info("dispute_resolved order=%s outcome=%s operator=%s", order.id, choice, operator_id)
    notify_parties(order, "dispute_resolved", {"outcome": choice})
    return order
