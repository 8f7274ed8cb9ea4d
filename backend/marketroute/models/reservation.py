from datetime import datetime

from marketroute.extensions import db


class ProductReservation(db.Model):
    __tablename__ = "product_reservations"

    product_id = db.Column(db.String(64), primary_key=True)
    seller_id = db.Column(db.String(64), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="available", index=True)
    # available -> reserved -> sold ; reserved -> available
    reserved_for_order_id = db.Column(db.String(32), nullable=True, index=True)
    reserved_until = db.Column(db.DateTime, nullable=True)
    # Bumped on every write; compare-and-set guard.
    version = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "seller_id": self.seller_id,
            "status": self.status,
            "reserved_for_order_id": self.reserved_for_order_id,
            "reserved_until": self.reserved_until.isoformat() if self.reserved_until else None,
            "version": int(self.version or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
