from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import func

from marketroute.extensions import db
from marketroute.models import EscrowHold, LedgerEntry, Order, ReconciliationReport
from marketroute.services.ledger_service import SYSTEM_CLEARING, HoldStatus
from marketroute.services.order_service import OrderStatus

# Hold status each order status implies.
_EXPECTED_HOLD = {
    OrderStatus.PENDING: {HoldStatus.HELD},
    OrderStatus.CONFIRMED: {HoldStatus.HELD},
    OrderStatus.OUT_FOR_DELIVERY: {HoldStatus.HELD},
    OrderStatus.DELIVERED: {HoldStatus.HELD},
    OrderStatus.DISPUTED: {HoldStatus.HELD},
    OrderStatus.RELEASED: {HoldStatus.RELEASED},
    OrderStatus.REFUNDED: {HoldStatus.REFUNDED},
    OrderStatus.CANCELLED: {HoldStatus.REFUNDED},
}


def _hold_drift() -> list[dict]:
    items = []
    rows = (
        db.session.query(EscrowHold, Order)
        .outerjoin(Order, Order.id == EscrowHold.order_id)
        .order_by(EscrowHold.created_at.asc())
        .all()
    )
    for hold, order in rows:
        if order is None:
            items.append({"kind": "orphan_hold", "hold_id": hold.id, "order_id": hold.order_id})
            continue
        expected = _EXPECTED_HOLD.get(order.status, set())
        if hold.status not in expected:
            items.append(
                {
                    "kind": "hold_status_mismatch",
                    "hold_id": hold.id,
                    "order_id": order.id,
                    "order_status": order.status,
                    "hold_status": hold.status,
                }
            )
        if int(hold.amount or 0) != int(order.amount or 0):
            items.append(
                {
                    "kind": "hold_amount_mismatch",
                    "hold_id": hold.id,
                    "order_id": order.id,
                    "hold_amount": int(hold.amount or 0),
                    "order_amount": int(order.amount or 0),
                }
            )
    return items


def _overcommitted_accounts() -> list[dict]:
    balances = dict(
        db.session.query(LedgerEntry.user_id, func.coalesce(func.sum(LedgerEntry.delta), 0))
        .group_by(LedgerEntry.user_id)
        .all()
    )
    held = (
        db.session.query(EscrowHold.user_id, func.coalesce(func.sum(EscrowHold.amount), 0))
        .filter(EscrowHold.status == HoldStatus.HELD)
        .group_by(EscrowHold.user_id)
        .all()
    )
    items = []
    for user_id, held_amount in held:
        bal = int(balances.get(user_id) or 0)
        if int(held_amount or 0) > bal:
            items.append(
                {
                    "kind": "holds_exceed_balance",
                    "user_id": user_id,
                    "balance": bal,
                    "held": int(held_amount or 0),
                }
            )
    for user_id, bal in balances.items():
        if user_id != SYSTEM_CLEARING and int(bal or 0) < 0:
            items.append({"kind": "negative_balance", "user_id": user_id, "balance": int(bal or 0)})
    return items


def reconcile_ledger() -> dict:
    """Check that entries sum to zero and holds agree with their orders."""
    system_total = int(db.session.query(func.coalesce(func.sum(LedgerEntry.delta), 0)).scalar() or 0)
    drift_items = []
    if system_total != 0:
        drift_items.append({"kind": "unbalanced_ledger", "system_total": system_total})
    drift_items.extend(_hold_drift())
    drift_items.extend(_overcommitted_accounts())

    return {
        "ok": not drift_items,
        "scope": "escrow_ledger",
        "system_total": system_total,
        "hold_count": EscrowHold.query.count(),
        "entry_count": LedgerEntry.query.count(),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: str | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "escrow_ledger")[:64],
        system_total=int(summary.get("system_total") or 0),
        summary_json=json.dumps(summary)[:200000],
        drift_count=int(summary.get("drift_count") or 0),
        created_by=str(created_by)[:64] if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report
