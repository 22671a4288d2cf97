from datetime import datetime

from farmroute.extensions import db
from farmroute.utils.ledger import money_minor_to_major


class DisputeStatus:
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    REJECTED = "rejected"

    ALLOWED = {
        OPEN: {INVESTIGATING, REJECTED},
        INVESTIGATING: {RESOLVED, REJECTED},
        RESOLVED: set(),
        REJECTED: set(),
    }
    TERMINAL = {RESOLVED, REJECTED}


class DisputeType:
    QUALITY = "quality"
    MISSING = "missing"
    DAMAGED = "damaged"
    LATE = "late"
    WRONG = "wrong"
    NOT_DELIVERED = "not_delivered"
    WRONG_ADDRESS = "wrong_address"
    CUSTOMER_UNAVAILABLE = "customer_unavailable"
    OTHER = "other"

    CONSUMER = {QUALITY, MISSING, DAMAGED, LATE, WRONG, NOT_DELIVERED, OTHER}
    # categories a driver may raise from the road
    DELIVERY = {LATE, DAMAGED, MISSING, NOT_DELIVERED, WRONG_ADDRESS, CUSTOMER_UNAVAILABLE, OTHER}
    ALL = CONSUMER | DELIVERY


class RefundStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    reporter_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    reporter_role = db.Column(db.String(32), nullable=False, default="consumer")

    dispute_type = db.Column(db.String(32), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False, default="")
    requested_refund_minor = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=DisputeStatus.OPEN, index=True)
    resolution = db.Column(db.Text, nullable=True)
    refund_amount_minor = db.Column(db.Integer, nullable=True)

    resolver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    acknowledged_at = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "reporter_id": int(self.reporter_id),
            "reporter_role": self.reporter_role,
            "type": self.dispute_type,
            "description": self.description or "",
            "requested_refund": (
                money_minor_to_major(self.requested_refund_minor)
                if self.requested_refund_minor is not None
                else None
            ),
            "status": self.status,
            "resolution": self.resolution or "",
            "refund_amount": (
                money_minor_to_major(self.refund_amount_minor)
                if self.refund_amount_minor is not None
                else None
            ),
            "resolver_id": int(self.resolver_id) if self.resolver_id is not None else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RefundInstruction(db.Model):
    __tablename__ = "refund_instructions"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, unique=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    amount_minor = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=RefundStatus.PENDING, index=True)
    provider_reference = db.Column(db.String(120), nullable=True)
    failure_reason = db.Column(db.String(240), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "order_id": int(self.order_id),
            "amount": money_minor_to_major(self.amount_minor),
            "status": self.status,
            "provider_reference": self.provider_reference or "",
            "failure_reason": self.failure_reason or "",
            "attempts": int(self.attempts or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
