from __future__ import annotations

import uuid
from datetime import datetime

from marketroute.extensions import db


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.String(32), primary_key=True, default=lambda: uuid.uuid4().hex)

    buyer_id = db.Column(db.String(64), nullable=False, index=True)
    seller_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=False, index=True)

    # Minor currency units (e.g. fils, cents).
    amount = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="AED")
    payment_method = db.Column(db.String(16), nullable=False, default="wallet")

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    # pending -> confirmed -> out_for_delivery -> delivered -> released
    #                                             delivered -> disputed -> refunded | released
    # pending -> cancelled

    hold_id = db.Column(db.String(32), nullable=True, index=True)
    batch_id = db.Column(db.String(32), nullable=True, index=True)
    route_id = db.Column(db.String(32), nullable=True, index=True)

    # Seller pickup point
    pickup_address = db.Column(db.String(240), nullable=True)
    pickup_latitude = db.Column(db.Float, nullable=True)
    pickup_longitude = db.Column(db.Float, nullable=True)

    # Buyer drop-off point and optional preferred delivery window
    dropoff_address = db.Column(db.String(240), nullable=True)
    dropoff_latitude = db.Column(db.Float, nullable=True)
    dropoff_longitude = db.Column(db.Float, nullable=True)
    window_start = db.Column(db.DateTime, nullable=True)
    window_end = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    confirmed_at = db.Column(db.DateTime, nullable=True, index=True)
    out_for_delivery_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    dispute_deadline = db.Column(db.DateTime, nullable=True, index=True)

    dispute_reason = db.Column(db.String(400), nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)
    dispute_outcome = db.Column(db.String(16), nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolution_note = db.Column(db.String(400), nullable=True)

    released_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "product_id": self.product_id,
            "amount": int(self.amount or 0),
            "currency": self.currency or "",
            "payment_method": self.payment_method or "wallet",
            "status": self.status,
            "hold_id": self.hold_id,
            "batch_id": self.batch_id,
            "route_id": self.route_id,
            "pickup": {
                "address": self.pickup_address or "",
                "latitude": self.pickup_latitude,
                "longitude": self.pickup_longitude,
            },
            "dropoff": {
                "address": self.dropoff_address or "",
                "latitude": self.dropoff_latitude,
                "longitude": self.dropoff_longitude,
            },
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "created_at": _iso(self.created_at),
            "confirmed_at": _iso(self.confirmed_at),
            "out_for_delivery_at": _iso(self.out_for_delivery_at),
            "delivered_at": _iso(self.delivered_at),
            "dispute_deadline": _iso(self.dispute_deadline),
            "dispute_reason": self.dispute_reason,
            "disputed_at": _iso(self.disputed_at),
            "dispute_outcome": self.dispute_outcome,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "released_at": _iso(self.released_at),
            "refunded_at": _iso(self.refunded_at),
            "cancelled_at": _iso(self.cancelled_at),
            "updated_at": _iso(self.updated_at),
        }
