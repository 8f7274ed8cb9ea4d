from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketroute.errors import ValidationError
from marketroute.services import dispute_service
from marketroute.utils.actor import json_body, require_operator

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/admin/disputes")


@disputes_bp.get("")
def list_disputes():
    require_operator()
    try:
        limit = int(request.args.get("limit") or 100)
    except ValueError:
        raise ValidationError("limit must be an integer")
    rows = dispute_service.list_disputes(limit=limit)
    return jsonify({"ok": True, "count": len(rows), "items": [o.to_dict() for o in rows]}), 200


@disputes_bp.post("/<order_id>/resolve")
def resolve_dispute(order_id: str):
    operator_id = require_operator()
    data = json_body()
    order = dispute_service.resolve_dispute(
        order_id,
        str(data.get("outcome") or ""),
        operator_id,
        str(data.get("note") or ""),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200
