from datetime import datetime

from farmroute.extensions import db
from farmroute.utils.ledger import money_minor_to_major


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    # forward chain; cancelled sits outside it
    CHAIN = (PENDING, CONFIRMED, IN_TRANSIT, OUT_FOR_DELIVERY, DELIVERED)
    TERMINAL = {DELIVERED, CANCELLED}
    ALL = set(CHAIN) | {CANCELLED}

    @classmethod
    def rank(cls, status: str) -> int:
        try:
            return cls.CHAIN.index(status)
        except ValueError:
            return -1


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    consumer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    farmer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    lead_farmer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    delivery_date = db.Column(db.Date, nullable=True, index=True)
    status = db.Column(db.String(24), nullable=False, default=OrderStatus.PENDING, index=True)

    # B{batch_number}-{stop_sequence}; set once by assign_to_batch
    box_code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    batch_id = db.Column(db.Integer, db.ForeignKey("delivery_batches.id"), nullable=True, index=True)
    stop_id = db.Column(db.Integer, nullable=True, index=True)

    subtotal_minor = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_minor = db.Column(db.Integer, nullable=False, default=0)
    total_minor = db.Column(db.Integer, nullable=False, default=0)

    payment_reference = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    version = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": int(self.id),
            "consumer_id": int(self.consumer_id),
            "farmer_id": int(self.farmer_id),
            "lead_farmer_id": int(self.lead_farmer_id) if self.lead_farmer_id is not None else None,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "status": self.status,
            "box_code": self.box_code,
            "batch_id": int(self.batch_id) if self.batch_id is not None else None,
            "stop_id": int(self.stop_id) if self.stop_id is not None else None,
            "subtotal": money_minor_to_major(self.subtotal_minor),
            "delivery_fee": money_minor_to_major(self.delivery_fee_minor),
            "total": money_minor_to_major(self.total_minor),
            "version": int(self.version or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, nullable=True, index=True)
    product_name = db.Column(db.String(160), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_minor = db.Column(db.Integer, nullable=False, default=0)

    @property
    def line_total_minor(self) -> int:
        return int(self.quantity or 0) * int(self.unit_price_minor or 0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "product_name": self.product_name or "",
            "quantity": int(self.quantity or 0),
            "unit_price": money_minor_to_major(self.unit_price_minor),
            "line_total": money_minor_to_major(self.line_total_minor),
        }
