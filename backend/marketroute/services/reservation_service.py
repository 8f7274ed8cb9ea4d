from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from marketroute.errors import Conflict, InvalidTransition, ProductUnavailable, ValidationError
from marketroute.extensions import db
from marketroute.models import ProductReservation

logger = logging.getLogger(__name__)


class ReservationStatus:
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"

    ALLOWED = {
        AVAILABLE: {RESERVED},
        RESERVED: {AVAILABLE, SOLD},
        SOLD: {AVAILABLE},
    }


def _load(product_id: str, *, seller_id: str | None = None) -> ProductReservation:
    """Fetch the reservation row, creating it as ``available`` on first sight."""
    key = str(product_id)
    row = db.session.get(ProductReservation, key)
    if row is not None:
        return row
    row = ProductReservation(
        product_id=key,
        seller_id=str(seller_id) if seller_id is not None else None,
        status=ReservationStatus.AVAILABLE,
        version=0,
        updated_at=datetime.utcnow(),
    )
    try:
        db.session.add(row)
        db.session.flush()
    except IntegrityError:
        # Another writer created it first; theirs wins.
        db.session.rollback()
        raise Conflict(f"reservation row for {key} created concurrently", product_id=key)
    return row


def _compare_and_set(row: ProductReservation, expected_status: str, values: dict) -> ProductReservation:
    """Write ``values`` only if the row still has the status and version we read."""
    target = values.get("status", expected_status)
    if target not in ReservationStatus.ALLOWED.get(expected_status, set()) and target != expected_status:
        raise InvalidTransition("reservation", expected_status, f"move to {target}")
    expected_version = int(row.version or 0)
    payload = dict(values)
    payload["version"] = expected_version + 1
    payload["updated_at"] = datetime.utcnow()
    updated = (
        ProductReservation.query.filter_by(
            product_id=row.product_id,
            status=expected_status,
            version=expected_version,
        ).update(payload, synchronize_session=False)
    )
    if updated != 1:
        logger.info(
            "reservation_cas_lost product=%s expected_status=%s expected_version=%s",
            row.product_id,
            expected_status,
            expected_version,
        )
        raise Conflict(f"reservation for {row.product_id} changed concurrently", product_id=row.product_id)
    db.session.refresh(row)
    return row


def get_reservation(product_id: str) -> ProductReservation | None:
    return db.session.get(ProductReservation, str(product_id))


def reservation_status(product_id: str) -> str:
    row = get_reservation(product_id)
    return row.status if row is not None else ReservationStatus.AVAILABLE


def reserve(
    product_id: str,
    order_id: str,
    ttl: timedelta | None,
    *,
    seller_id: str | None = None,
    now: datetime | None = None,
) -> ProductReservation:
    """available -> reserved for ``order_id``. Raises ProductUnavailable otherwise.

    The first seller recorded for a product owns it; a different ``seller_id``
    is rejected.
    """
    now = now or datetime.utcnow()
    row = _load(product_id, seller_id=seller_id)
    if seller_id is not None and row.seller_id is not None and row.seller_id != str(seller_id):
        logger.warning(
            "reservation_seller_mismatch product=%s seller=%s requested=%s", product_id, row.seller_id, seller_id
        )
        raise ValidationError(
            f"product {product_id} is not listed by {seller_id}",
            product_id=str(product_id),
            seller_id=str(seller_id),
        )
    if row.status != ReservationStatus.AVAILABLE:
        raise ProductUnavailable(str(product_id), row.status)
    values = {
        "status": ReservationStatus.RESERVED,
        "reserved_for_order_id": str(order_id),
        "reserved_until": (now + ttl) if ttl is not None else None,
    }
    if seller_id is not None and row.seller_id is None:
        values["seller_id"] = str(seller_id)
    return _compare_and_set(row, ReservationStatus.AVAILABLE, values)


def hold_until_fulfilled(product_id: str, order_id: str) -> ProductReservation:
    """Clear the TTL once the seller confirms; the listing stays reserved."""
    row = _load(product_id)
    if row.status != ReservationStatus.RESERVED or row.reserved_for_order_id != str(order_id):
        raise InvalidTransition("reservation", row.status, "hold")
    if row.reserved_until is None:
        return row
    return _compare_and_set(row, ReservationStatus.RESERVED, {"reserved_until": None})


def release(product_id: str, order_id: str | None = None) -> ProductReservation:
    """reserved -> available. Idempotent when the product is already available
    or reserved for someone else."""
    row = _load(product_id)
    if row.status != ReservationStatus.RESERVED:
        return row
    if order_id is not None and row.reserved_for_order_id != str(order_id):
        logger.info(
            "reservation_release_skipped product=%s holder=%s requested=%s",
            product_id,
            row.reserved_for_order_id,
            order_id,
        )
        return row
    return _compare_and_set(
        row,
        ReservationStatus.RESERVED,
        {"status": ReservationStatus.AVAILABLE, "reserved_for_order_id": None, "reserved_until": None},
    )


def mark_sold(product_id: str, order_id: str | None = None) -> ProductReservation:
    row = _load(product_id)
    if row.status == ReservationStatus.SOLD and (order_id is None or row.reserved_for_order_id == str(order_id)):
        return row
    if row.status != ReservationStatus.RESERVED:
        raise InvalidTransition("reservation", row.status, "mark sold")
    if order_id is not None and row.reserved_for_order_id != str(order_id):
        raise InvalidTransition("reservation", row.status, f"mark sold for order {order_id}")
    return _compare_and_set(
        row,
        ReservationStatus.RESERVED,
        {"status": ReservationStatus.SOLD, "reserved_until": None},
    )


def reopen(product_id: str) -> ProductReservation:
    """Operator override: sold -> available so the listing is offered again."""
    row = _load(product_id)
    if row.status == ReservationStatus.AVAILABLE:
        return row
    if row.status != ReservationStatus.SOLD:
        raise InvalidTransition("reservation", row.status, "reopen")
    return _compare_and_set(
        row,
        ReservationStatus.SOLD,
        {"status": ReservationStatus.AVAILABLE, "reserved_for_order_id": None, "reserved_until": None},
    )


def expired_reservations(now: datetime | None = None, *, limit: int = 200) -> list[ProductReservation]:
    now = now or datetime.utcnow()
    return (
        ProductReservation.query.filter(
            ProductReservation.status == ReservationStatus.RESERVED,
            ProductReservation.reserved_until.isnot(None),
            ProductReservation.reserved_until <= now,
        )
        .order_by(ProductReservation.reserved_until.asc())
        .limit(max(1, int(limit)))
        .all()
    )
