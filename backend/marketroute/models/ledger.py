import uuid
from datetime import datetime

from marketroute.extensions import db


class EscrowHold(db.Model):
    __tablename__ = "escrow_holds"

    id = db.Column(db.String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    order_id = db.Column(db.String(32), nullable=False, unique=True, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    payee_id = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="held", index=True)
    # held -> released | refunded
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    settled_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "payee_id": self.payee_id,
            "amount": int(self.amount or 0),
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
        }


class LedgerEntry(db.Model):
    """Append-only balance change. Never updated or deleted."""

    __tablename__ = "ledger_entries"

    id = db.Column(db.String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    delta = db.Column(db.BigInteger, nullable=False)
    reason = db.Column(db.String(48), nullable=False)
    related_order_id = db.Column(db.String(32), nullable=True, index=True)
    related_hold_id = db.Column(db.String(32), nullable=True, index=True)
    reference = db.Column(db.String(120), nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "delta": int(self.delta or 0),
            "reason": self.reason or "",
            "related_order_id": self.related_order_id,
            "related_hold_id": self.related_hold_id,
            "reference": self.reference or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
