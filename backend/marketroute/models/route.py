import uuid
from datetime import datetime

from marketroute.extensions import db


def _iso(value):
    return value.isoformat() if value else None


class RouteBatch(db.Model):
    __tablename__ = "route_batches"
    __table_args__ = (
        db.UniqueConstraint("batch_date", "time_slot", name="uq_route_batch_date_slot"),
    )

    id = db.Column(db.String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    batch_date = db.Column(db.Date, nullable=False, index=True)
    time_slot = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    # pending -> optimizing -> ready -> dispatched
    window_start = db.Column(db.DateTime, nullable=False)
    window_end = db.Column(db.DateTime, nullable=False)
    order_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    ready_at = db.Column(db.DateTime, nullable=True)
    dispatched_at = db.Column(db.DateTime, nullable=True)

    routes = db.relationship(
        "Route",
        backref="batch",
        lazy="select",
        order_by="Route.vehicle_index",
    )

    def to_dict(self, *, include_routes: bool = False) -> dict:
        payload = {
            "id": self.id,
            "batch_date": self.batch_date.isoformat() if self.batch_date else None,
            "time_slot": self.time_slot,
            "status": self.status,
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "order_count": int(self.order_count or 0),
            "route_ids": [r.id for r in self.routes],
            "created_at": _iso(self.created_at),
            "ready_at": _iso(self.ready_at),
            "dispatched_at": _iso(self.dispatched_at),
        }
        if include_routes:
            payload["routes"] = [r.to_dict() for r in self.routes]
        return payload


class Route(db.Model):
    __tablename__ = "routes"

    id = db.Column(db.String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    batch_id = db.Column(db.String(32), db.ForeignKey("route_batches.id"), nullable=False, index=True)
    driver_id = db.Column(db.String(64), nullable=True, index=True)
    vehicle_index = db.Column(db.Integer, nullable=False, default=0)
    total_distance_km = db.Column(db.Float, nullable=False, default=0.0)
    total_duration_min = db.Column(db.Float, nullable=False, default=0.0)
    infeasible = db.Column(db.Boolean, nullable=False, default=False)
    infeasible_reason = db.Column(db.String(240), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    stops = db.relationship(
        "RouteStop",
        backref="route",
        lazy="select",
        order_by="RouteStop.sequence",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "driver_id": self.driver_id,
            "vehicle_index": int(self.vehicle_index or 0),
            "total_distance_km": round(float(self.total_distance_km or 0.0), 3),
            "total_duration_min": round(float(self.total_duration_min or 0.0), 1),
            "infeasible": bool(self.infeasible),
            "infeasible_reason": self.infeasible_reason or "",
            "stops": [s.to_dict() for s in self.stops],
            "created_at": _iso(self.created_at),
        }


class RouteStop(db.Model):
    __tablename__ = "route_stops"
    __table_args__ = (
        db.UniqueConstraint("route_id", "sequence", name="uq_route_stop_sequence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    route_id = db.Column(db.String(32), db.ForeignKey("routes.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)
    order_id = db.Column(db.String(32), nullable=False, index=True)
    kind = db.Column(db.String(16), nullable=False)
    address = db.Column(db.String(240), nullable=True)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    eta_start = db.Column(db.DateTime, nullable=True)
    eta_end = db.Column(db.DateTime, nullable=True)
    window_start = db.Column(db.DateTime, nullable=True)
    window_end = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending")
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "sequence": int(self.sequence),
            "order_id": self.order_id,
            "kind": self.kind,
            "location": {
                "address": self.address or "",
                "latitude": float(self.latitude),
                "longitude": float(self.longitude),
            },
            "eta_window": {"start": _iso(self.eta_start), "end": _iso(self.eta_end)},
            "time_window": {"start": _iso(self.window_start), "end": _iso(self.window_end)},
            "status": self.status,
            "completed_at": _iso(self.completed_at),
        }
