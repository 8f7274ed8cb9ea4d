import json
from datetime import datetime

from marketroute.extensions import db


class ReconciliationReport(db.Model):
    __tablename__ = "reconciliation_reports"

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False, default="escrow_ledger")
    system_total = db.Column(db.BigInteger, nullable=False, default=0)
    summary_json = db.Column(db.Text, nullable=True)
    drift_count = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        try:
            summary = json.loads(self.summary_json or "{}")
        except ValueError:
            summary = {}
        return {
            "id": int(self.id),
            "scope": self.scope or "",
            "system_total": int(self.system_total or 0),
            "drift_count": int(self.drift_count or 0),
            "summary": summary,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
