from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketroute.errors import Unauthorized, ValidationError
from marketroute.models import Order
from marketroute.services import order_service
from marketroute.utils.actor import current_actor_id, is_operator, json_body, parse_datetime, require_actor

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _visible_order(order_id: str) -> Order:
    actor_id = require_actor()
    order = order_service.get_order(order_id)
    if is_operator() or actor_id in (order.buyer_id, order.seller_id):
        return order
    if order.route_id:
        from marketroute.services.scheduler_service import get_route

        if get_route(order.route_id).driver_id == actor_id:
            return order
    raise Unauthorized("not a party to this order")


@orders_bp.post("/orders")
def create_order():
    buyer_id = require_actor()
    data = json_body()
    order = order_service.create_order(
        buyer_id,
        str(data.get("product_id") or "").strip(),
        data.get("amount"),
        str(data.get("payment_method") or "wallet"),
        seller_id=str(data.get("seller_id") or "").strip(),
        pickup=data.get("pickup"),
        dropoff=data.get("dropoff"),
        window_start=parse_datetime(data.get("window_start"), "window_start"),
        window_end=parse_datetime(data.get("window_end"), "window_end"),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 201


@orders_bp.get("/orders")
def list_orders():
    actor_id = require_actor()
    role = (request.args.get("role") or "buyer").strip().lower()
    status = (request.args.get("status") or "").strip().lower() or None
    try:
        limit = int(request.args.get("limit") or 100)
    except ValueError:
        raise ValidationError("limit must be an integer")

    if is_operator():
        buyer_id = (request.args.get("buyer_id") or "").strip() or None
        seller_id = (request.args.get("seller_id") or "").strip() or None
    elif role == "seller":
        buyer_id, seller_id = None, actor_id
    elif role == "buyer":
        buyer_id, seller_id = actor_id, None
    else:
        raise ValidationError("role must be buyer or seller")

    rows = order_service.list_orders(buyer_id=buyer_id, seller_id=seller_id, status=status, limit=limit)
    return jsonify({"ok": True, "count": len(rows), "items": [o.to_dict() for o in rows]}), 200


@orders_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    order = _visible_order(order_id)
    payload = {"ok": True, "order": order.to_dict()}
    if (request.args.get("history") or "").strip() in ("1", "true", "yes"):
        payload["transitions"] = [t.to_dict() for t in order_service.order_history(order.id)]
    return jsonify(payload), 200


@orders_bp.post("/orders/<order_id>/confirm")
def confirm_order(order_id: str):
    order = order_service.confirm_order(order_id, require_actor())
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<order_id>/out-for-delivery")
def mark_out_for_delivery(order_id: str):
    driver_id = require_actor()
    data = json_body()
    route_id = str(data.get("route_id") or "").strip()
    if not route_id:
        raise ValidationError("route_id required")
    order = order_service.mark_out_for_delivery(order_id, route_id, driver_id)
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<order_id>/confirm-delivery")
def confirm_delivery(order_id: str):
    order = order_service.confirm_delivery(order_id, require_actor())
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<order_id>/dispute")
def raise_dispute(order_id: str):
    actor_id = require_actor()
    data = json_body()
    order = order_service.raise_dispute(order_id, actor_id, str(data.get("reason") or ""))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<order_id>/cancel")
def cancel_order(order_id: str):
    actor_id = current_actor_id()
    if actor_id is None and not is_operator():
        raise Unauthorized("X-Actor-Id header required")
    data = json_body()
    # Operators cancel on behalf of the system.
    order = order_service.cancel_order(
        order_id,
        None if is_operator() else actor_id,
        reason=str(data.get("reason") or ""),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200
