from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketroute.errors import Unauthorized, ValidationError
from marketroute.services import scheduler_service
from marketroute.utils.actor import is_operator, json_body, parse_date, require_actor, require_operator

routes_bp = Blueprint("routes_bp", __name__, url_prefix="/api/routes")


@routes_bp.get("/batches")
def list_batches():
    require_operator()
    rows = scheduler_service.list_batches(
        batch_date=parse_date(request.args.get("date"), "date"),
        slot=(request.args.get("slot") or "").strip() or None,
        status=(request.args.get("status") or "").strip() or None,
    )
    return jsonify({"ok": True, "count": len(rows), "items": [b.to_dict() for b in rows]}), 200


@routes_bp.get("/batches/<batch_id>")
def get_batch(batch_id: str):
    require_operator()
    batch = scheduler_service.get_batch(batch_id)
    return jsonify({"ok": True, "batch": batch.to_dict(include_routes=True)}), 200


@routes_bp.post("/batches/<batch_id>/dispatch")
def dispatch_batch(batch_id: str):
    require_operator()
    data = json_body()
    driver_ids = data.get("driver_ids")
    if not isinstance(driver_ids, list):
        raise ValidationError("driver_ids must be a list")
    batch = scheduler_service.dispatch_batch(batch_id, driver_ids)
    return jsonify({"ok": True, "batch": batch.to_dict(include_routes=True)}), 200


@routes_bp.post("/checkpoints")
def run_checkpoint():
    require_operator()
    data = json_body()
    batch_date = parse_date(data.get("batch_date"), "batch_date")
    slot = str(data.get("time_slot") or "").strip()
    if batch_date is None or not slot:
        batch_date, slot, _ = scheduler_service.latest_checkpoint()
    batch = scheduler_service.run_checkpoint(batch_date, slot)
    if batch is None:
        return jsonify({"ok": True, "batch": None, "batch_date": batch_date.isoformat(), "time_slot": slot}), 200
    return jsonify({"ok": True, "batch": batch.to_dict(include_routes=True)}), 200


@routes_bp.get("/<route_id>")
def get_route(route_id: str):
    actor_id = require_actor()
    route = scheduler_service.get_route(route_id)
    if not is_operator() and route.driver_id != actor_id:
        raise Unauthorized("route is assigned to another driver")
    return jsonify({"ok": True, "route": route.to_dict()}), 200


@routes_bp.post("/<route_id>/stops/<int:stop_id>/complete")
def complete_stop(route_id: str, stop_id: int):
    driver_id = require_actor()
    stop = scheduler_service.complete_stop(route_id, stop_id, driver_id)
    return jsonify({"ok": True, "stop": stop.to_dict()}), 200
