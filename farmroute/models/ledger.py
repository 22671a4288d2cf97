from datetime import datetime

from sqlalchemy import event

from farmroute.extensions import db
from farmroute.utils.ledger import money_minor_to_major


class FeeType:
    FARMER_SHARE = "farmer_share"
    LEAD_FARMER_COMMISSION = "lead_farmer_commission"
    PLATFORM_FEE = "platform_fee"

    ALL = (FARMER_SHARE, LEAD_FARMER_COMMISSION, PLATFORM_FEE)


class RecipientType:
    FARMER = "farmer"
    LEAD_FARMER_COMMISSION = "lead_farmer_commission"
    DRIVER = "driver"

    ALL = {FARMER, LEAD_FARMER_COMMISSION, DRIVER}


class PayoutStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    ALLOWED = {
        PENDING: {COMPLETED, FAILED},
        FAILED: {COMPLETED, FAILED},
        COMPLETED: set(),
    }


class TransactionFee(db.Model):
    __tablename__ = "transaction_fees"
    __table_args__ = (
        db.UniqueConstraint("order_id", "fee_type", name="uq_transaction_fees_order_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    fee_type = db.Column(db.String(32), nullable=False)
    amount_minor = db.Column(db.Integer, nullable=False, default=0)
    recipient_id = db.Column(db.Integer, nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "fee_type": self.fee_type,
            "amount": money_minor_to_major(self.amount_minor),
            "amount_minor": int(self.amount_minor or 0),
            "recipient_id": int(self.recipient_id) if self.recipient_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(TransactionFee, "before_update")
def _fee_no_update(mapper, connection, target):
    raise RuntimeError("transaction_fees rows are immutable")


@event.listens_for(TransactionFee, "before_delete")
def _fee_no_delete(mapper, connection, target):
    raise RuntimeError("transaction_fees rows are immutable")


class Payout(db.Model):
    __tablename__ = "payouts"
    __table_args__ = (
        db.UniqueConstraint("order_id", "recipient_type", name="uq_payouts_order_recipient_type"),
        db.UniqueConstraint("batch_id", "recipient_type", name="uq_payouts_batch_recipient_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    recipient_type = db.Column(db.String(32), nullable=False, index=True)

    # exactly one of order_id / batch_id is set
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("delivery_batches.id"), nullable=True, index=True)

    amount_minor = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=PayoutStatus.PENDING, index=True)
    failure_reason = db.Column(db.String(240), nullable=True)
    transfer_reference = db.Column(db.String(120), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "recipient_id": int(self.recipient_id),
            "recipient_type": self.recipient_type,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "batch_id": int(self.batch_id) if self.batch_id is not None else None,
            "amount": money_minor_to_major(self.amount_minor),
            "amount_minor": int(self.amount_minor or 0),
            "status": self.status,
            "failure_reason": self.failure_reason or "",
            "transfer_reference": self.transfer_reference or "",
            "attempts": int(self.attempts or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
