from __future__ import annotations

import json
import logging
import math
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from marketroute.errors import (
    Conflict,
    DisputeWindowExpired,
    FulfillmentError,
    InvalidTransition,
    NotFound,
    NotRouted,
    Unauthorized,
    ValidationError,
)
from marketroute.extensions import db
from marketroute.models import Order, OrderTransition, Route, RouteStop
from marketroute.services import ledger_service, reservation_service
from marketroute.utils.concurrency import account_locks, order_locks, product_locks, retry_on_conflict
from marketroute.utils.events import log_event
from marketroute.utils.notify import notify
from marketroute.utils.settings import currency, dispute_window_hours, reservation_ttl_hours

logger = logging.getLogger(__name__)


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    OUT_FOR_DELIVERY = "out_for_delivery"
    # Delivered orders sit in the dispute window until dispute_deadline.
    DELIVERED = "delivered"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"

    TERMINAL = {RELEASED, REFUNDED, CANCELLED}
    ALLOWED = {
        PENDING: {CONFIRMED, CANCELLED},
        CONFIRMED: {OUT_FOR_DELIVERY},
        OUT_FOR_DELIVERY: {DELIVERED},
        DELIVERED: {RELEASED, DISPUTED},
        DISPUTED: {REFUNDED, RELEASED},
        RELEASED: set(),
        REFUNDED: set(),
        CANCELLED: set(),
    }


PAYMENT_METHODS = ("wallet", "cash")


def _actor_type(order: Order, actor_id) -> str:
    if actor_id is None:
        return "system"
    actor = str(actor_id)
    if actor == order.buyer_id:
        return "buyer"
    if actor == order.seller_id:
        return "seller"
    return "user"


def _record_transition(
    order: Order,
    from_status: str,
    to_status: str,
    *,
    actor_id=None,
    actor_type: str = "system",
    reason: str = "",
    metadata: dict | None = None,
    now: datetime | None = None,
) -> OrderTransition:
    key = f"{order.id}:{from_status or 'new'}->{to_status}"
    existing = OrderTransition.query.filter_by(order_id=order.id, idempotency_key=key).first()
    if existing:
        return existing
    row = OrderTransition(
        order_id=order.id,
        from_status=from_status or "",
        to_status=to_status,
        actor_type=(actor_type or "system")[:32],
        actor_id=str(actor_id)[:64] if actor_id is not None else None,
        idempotency_key=key[:160],
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {}, default=str)[:4000],
        created_at=now or datetime.utcnow(),
    )
    db.session.add(row)
    log_event(
        f"order_{to_status}",
        actor_id=actor_id,
        occurred_at=now,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"order:{order.id}:{to_status}",
        metadata={"from": from_status, "to": to_status, "reason": reason, **(metadata or {})},
    )
    return row


def apply_transition(
    order: Order,
    to_status: str,
    *,
    action: str,
    actor_id=None,
    actor_type: str | None = None,
    reason: str = "",
    metadata: dict | None = None,
    now: datetime | None = None,
) -> OrderTransition:
    """Move ``order`` to ``to_status`` or raise InvalidTransition."""
    current = order.status or OrderStatus.PENDING
    allowed = OrderStatus.ALLOWED.get(current, set())
    if to_status not in allowed:
        raise InvalidTransition("order", current, action)
    row = _record_transition(
        order,
        current,
        to_status,
        actor_id=actor_id,
        actor_type=actor_type or _actor_type(order, actor_id),
        reason=reason,
        metadata=metadata,
        now=now,
    )
    order.status = to_status
    order.updated_at = now or datetime.utcnow()
    return row


@contextmanager
def locked_order(order_id: str):
    """Serialize work on one order and commit it as a single unit.

    Holds the in-process order lock and a row lock (``FOR UPDATE`` where the
    database supports it). Any error rolls the whole unit back.
    """
    key = str(order_id)
    with order_locks.hold(key):
        order = Order.query.filter_by(id=key).with_for_update().populate_existing().first()
        if order is None:
            db.session.rollback()
            raise NotFound(f"order {key} not found")
        try:
            yield order
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def notify_parties(order: Order, event: str, extra: dict | None = None) -> None:
    payload = {"order_id": order.id, "status": order.status, "product_id": order.product_id}
    payload.update(extra or {})
    for recipient in (order.buyer_id, order.seller_id):
        notify(recipient_id=recipient, event=event, payload=payload, reference=f"{order.id}:{event}")


def _coerce_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("amount must be a positive integer")
    if isinstance(amount, float) and (not math.isfinite(amount) or amount != int(amount)):
        raise ValidationError("amount must be a positive integer")
    value = int(amount)
    if value <= 0:
        raise ValidationError("amount must be a positive integer")
    return value


def _coerce_location(raw, label: str) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError(f"{label} location is required")
    try:
        lat = float(raw.get("latitude"))
        lng = float(raw.get("longitude"))
    except (TypeError, ValueError):
        raise ValidationError(f"{label} latitude and longitude are required")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise ValidationError(f"{label} coordinates out of range")
    return {
        "address": str(raw.get("address") or "").strip()[:240],
        "latitude": lat,
        "longitude": lng,
    }


def get_order(order_id: str) -> Order:
    order = db.session.get(Order, str(order_id))
    if order is None:
        raise NotFound(f"order {order_id} not found")
    return order


def list_orders(
    *,
    buyer_id: str | None = None,
    seller_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[Order]:
    q = Order.query
    if buyer_id is not None:
        q = q.filter(Order.buyer_id == str(buyer_id))
    if seller_id is not None:
        q = q.filter(Order.seller_id == str(seller_id))
    if status:
        if status not in OrderStatus.ALLOWED:
            raise ValidationError(f"unknown order status {status}")
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc()).limit(max(1, min(int(limit), 500))).all()


def order_history(order_id: str) -> list[OrderTransition]:
    get_order(order_id)
    return (
        OrderTransition.query.filter_by(order_id=str(order_id))
        .order_by(OrderTransition.created_at.asc(), OrderTransition.id.asc())
        .all()
    )


def create_order(
    buyer_id: str,
    product_id: str,
    amount: int,
    payment_method: str = "wallet",
    *,
    seller_id: str,
    pickup: dict | None = None,
    dropoff: dict | None = None,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    now: datetime | None = None,
) -> Order:
    """Open a pending order: reserve the product and, for wallet payment,
    place an escrow hold on the buyer's funds. Both happen or neither does."""
    if not buyer_id or not seller_id or not product_id:
        raise ValidationError("buyer_id, seller_id and product_id are required")
    if str(buyer_id) == str(seller_id):
        raise ValidationError("buyer cannot purchase their own product")
    value = _coerce_amount(amount)
    method = (payment_method or "wallet").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    pickup_loc = _coerce_location(pickup, "pickup")
    dropoff_loc = _coerce_location(dropoff, "dropoff")
    if (window_start is None) != (window_end is None):
        raise ValidationError("window_start and window_end must be given together")
    if window_start is not None and window_end is not None and window_start >= window_end:
        raise ValidationError("window_start must be before window_end")

    ttl = timedelta(hours=reservation_ttl_hours())

    def _attempt() -> Order:
        created = now or datetime.utcnow()
        with product_locks.hold(product_id), account_locks.hold(buyer_id):
            try:
                order = Order(
                    buyer_id=str(buyer_id),
                    seller_id=str(seller_id),
                    product_id=str(product_id),
                    amount=value,
                    currency=currency(),
                    payment_method=method,
                    status=OrderStatus.PENDING,
                    pickup_address=pickup_loc["address"],
                    pickup_latitude=pickup_loc["latitude"],
                    pickup_longitude=pickup_loc["longitude"],
                    dropoff_address=dropoff_loc["address"],
                    dropoff_latitude=dropoff_loc["latitude"],
                    dropoff_longitude=dropoff_loc["longitude"],
                    window_start=window_start,
                    window_end=window_end,
                    created_at=created,
                    updated_at=created,
                )
                db.session.add(order)
                db.session.flush()
                reservation_service.reserve(product_id, order.id, ttl, seller_id=seller_id, now=created)
                if method == "wallet":
                    escrow = ledger_service.hold(buyer_id, value, order.id, payee_id=seller_id)
                    order.hold_id = escrow.id
                _record_transition(
                    order,
                    "",
                    OrderStatus.PENDING,
                    actor_id=buyer_id,
                    actor_type="buyer",
                    reason="created",
                    metadata={"amount": value, "payment_method": method},
                    now=created,
                )
                db.session.commit()
            except IntegrityError as exc:
                db.session.rollback()
                raise Conflict(f"order for product {product_id} collided", product_id=str(product_id)) from exc
            except Exception:
                db.session.rollback()
                raise
        return order

    order = retry_on_conflict(_attempt, label=f"create_order:{product_id}")
    logger.info(
        "order_created order=%s product=%s buyer=%s amount=%s method=%s",
        order.id,
        order.product_id,
        order.buyer_id,
        order.amount,
        order.payment_method,
    )
    notify_parties(order, "order_created")
    return order


def confirm_order(order_id: str, actor_id: str | None = None, *, now: datetime | None = None) -> Order:
    now = now or datetime.utcnow()
    with locked_order(order_id) as order:
        if actor_id is not None and str(actor_id) != order.seller_id:
            raise Unauthorized("only the seller can confirm this order")
        apply_transition(order, OrderStatus.CONFIRMED, action="confirm", actor_id=actor_id, now=now)
        order.confirmed_at = now
        with product_locks.hold(order.product_id):
            reservation_service.hold_until_fulfilled(order.product_id, order.id)
    notify_parties(order, "order_confirmed")
    return order


def mark_out_for_delivery(
    order_id: str,
    route_id: str,
    actor_id: str | None = None,
    *,
    now: datetime | None = None,
) -> Order:
    from marketroute.services.scheduler_service import BatchStatus

    now = now or datetime.utcnow()
    with locked_order(order_id) as order:
        if order.status != OrderStatus.CONFIRMED:
            raise InvalidTransition("order", order.status, "mark out for delivery")
        route = db.session.get(Route, str(route_id)) if route_id else None
        stop = None
        if route is not None:
            stop = RouteStop.query.filter_by(route_id=route.id, order_id=order.id).first()
        if route is None or stop is None or route.batch is None or route.batch.status != BatchStatus.DISPATCHED:
            raise NotRouted(f"order {order.id} has no dispatched route {route_id}", order_id=order.id)
        if actor_id is not None and route.driver_id and str(actor_id) != route.driver_id:
            raise Unauthorized("only the assigned driver can pick up this order")
        apply_transition(
            order,
            OrderStatus.OUT_FOR_DELIVERY,
            action="mark out for delivery",
            actor_id=actor_id,
            actor_type="driver" if actor_id is not None else "system",
            metadata={"route_id": route.id},
            now=now,
        )
        order.route_id = route.id
        order.out_for_delivery_at = now
    notify_parties(order, "order_out_for_delivery", {"route_id": order.route_id})
    return order


def confirm_delivery(order_id: str, actor_id: str, *, now: datetime | None = None) -> Order:
    """Buyer confirms receipt; starts the dispute window."""
    now = now or datetime.utcnow()
    with locked_order(order_id) as order:
        if actor_id is None or str(actor_id) != order.buyer_id:
            raise Unauthorized("only the buyer can confirm delivery")
        apply_transition(order, OrderStatus.DELIVERED, action="confirm delivery", actor_id=actor_id, now=now)
        order.delivered_at = now
        order.dispute_deadline = now + timedelta(hours=dispute_window_hours())
        with product_locks.hold(order.product_id):
            reservation_service.mark_sold(order.product_id, order.id)
    notify_parties(order, "order_delivered", {"dispute_deadline": order.dispute_deadline.isoformat()})
    return order


def raise_dispute(order_id: str, actor_id: str, reason: str, *, now: datetime | None = None) -> Order:
    """Buyer disputes a delivered order before its deadline; escrow stays held."""
    now = now or datetime.utcnow()
    text = (reason or "").strip()
    with locked_order(order_id) as order:
        if actor_id is None or str(actor_id) != order.buyer_id:
            raise Unauthorized("only the buyer can dispute this order")
        if not text:
            raise ValidationError("a dispute reason is required")
        # Deadline wins over status so a sweep that already ran changes nothing.
        if order.dispute_deadline is not None and now >= order.dispute_deadline:
            raise DisputeWindowExpired(
                f"dispute window for order {order.id} closed at {order.dispute_deadline.isoformat()}",
                order_id=order.id,
            )
        apply_transition(
            order,
            OrderStatus.DISPUTED,
            action="dispute",
            actor_id=actor_id,
            reason=text[:240],
            now=now,
        )
        order.dispute_reason = text[:400]
        order.disputed_at = now
    notify_parties(order, "order_disputed", {"reason": order.dispute_reason})
    return order


def auto_release(order_id: str, now: datetime | None = None) -> bool:
    """Release escrow for a delivered order whose dispute window has closed.

    Returns False without changes when the order is not delivered or the
    deadline has not passed, so repeated sweeps are harmless.
    """
    now = now or datetime.utcnow()
    released = False
    with locked_order(order_id) as order:
        if order.status != OrderStatus.DELIVERED:
            return False
        if order.dispute_deadline is None or now < order.dispute_deadline:
            return False
        apply_transition(
            order,
            OrderStatus.RELEASED,
            action="release",
            actor_type="system",
            reason="dispute_window_elapsed",
            now=now,
        )
        order.released_at = now
        if order.hold_id:
            ledger_service.release(order.hold_id)
        released = True
    logger.info("order_auto_released order=%s amount=%s", order.id, order.amount)
    notify_parties(order, "order_released")
    return released


def cancel_order(
    order_id: str,
    actor_id: str | None = None,
    *,
    reason: str = "",
    now: datetime | None = None,
) -> Order:
    """Cancel a pending order. Buyer, seller or the system (actor None)."""
    now = now or datetime.utcnow()
    with locked_order(order_id) as order:
        if actor_id is not None and str(actor_id) not in (order.buyer_id, order.seller_id):
            raise Unauthorized("only the buyer or seller can cancel this order")
        apply_transition(
            order,
            OrderStatus.CANCELLED,
            action="cancel",
            actor_id=actor_id,
            reason=reason or "cancelled",
            now=now,
        )
        order.cancelled_at = now
        with product_locks.hold(order.product_id):
            reservation_service.release(order.product_id, order.id)
        if order.hold_id:
            ledger_service.refund(order.hold_id)
    notify_parties(order, "order_cancelled", {"reason": reason or "cancelled"})
    return order


def expire_stale_reservations(now: datetime | None = None, *, limit: int = 200) -> dict:
    """Cancel pending orders whose product reservation has lapsed."""
    now = now or datetime.utcnow()
    summary = {"checked": 0, "cancelled": 0, "skipped": 0, "errors": 0}
    for row in reservation_service.expired_reservations(now, limit=limit):
        summary["checked"] += 1
        order_id = row.reserved_for_order_id
        if not order_id:
            summary["skipped"] += 1
            continue
        try:
            order = get_order(order_id)
            if order.status != OrderStatus.PENDING:
                summary["skipped"] += 1
                continue
            cancel_order(order_id, None, reason="reservation_expired", now=now)
            summary["cancelled"] += 1
        except FulfillmentError as exc:
            summary["errors"] += 1
            logger.warning("reservation_expiry_failed order=%s err=%s", order_id, exc.code)
        except Exception:
            db.session.rollback()
            summary["errors"] += 1
            logger.exception("reservation_expiry_crashed order=%s", order_id)
    return summary
