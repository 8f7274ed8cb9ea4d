from __future__ import annotations

from flask import Blueprint, jsonify, request

from marketroute.errors import ValidationError
from marketroute.services import ledger_service
from marketroute.utils.actor import json_body, require_actor

wallet_bp = Blueprint("wallet_bp", __name__, url_prefix="/api/wallet")


def _reference(data: dict) -> str:
    ref = (request.headers.get("Idempotency-Key") or str(data.get("reference") or "")).strip()
    if not ref:
        raise ValidationError("reference (or Idempotency-Key header) required")
    return ref


@wallet_bp.get("")
def wallet_summary():
    user_id = require_actor()
    return jsonify({"ok": True, "wallet": ledger_service.summary(user_id)}), 200


@wallet_bp.get("/entries")
def wallet_entries():
    user_id = require_actor()
    try:
        limit = int(request.args.get("limit") or 200)
    except ValueError:
        raise ValidationError("limit must be an integer")
    rows = ledger_service.entries(user_id, limit=limit)
    return jsonify({"ok": True, "count": len(rows), "items": [e.to_dict() for e in rows]}), 200


@wallet_bp.post("/deposit")
def wallet_deposit():
    user_id = require_actor()
    data = json_body()
    entry = ledger_service.deposit(user_id, data.get("amount"), reference=_reference(data))
    return jsonify({"ok": True, "entry": entry.to_dict(), "wallet": ledger_service.summary(user_id)}), 201


@wallet_bp.post("/withdraw")
def wallet_withdraw():
    user_id = require_actor()
    data = json_body()
    entry = ledger_service.withdraw(user_id, data.get("amount"), reference=_reference(data))
    return jsonify({"ok": True, "entry": entry.to_dict(), "wallet": ledger_service.summary(user_id)}), 201
