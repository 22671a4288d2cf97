from datetime import datetime

from farmroute.extensions import db


class BatchStatus:
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    ALL = {PENDING, ASSIGNED, IN_PROGRESS, COMPLETED}
    # batches that still accept new stops
    OPEN_FOR_ASSIGNMENT = {PENDING, ASSIGNED}


class StopStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    LOADED = "loaded"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    ALL = {PENDING, IN_PROGRESS, LOADED, DELIVERED, CANCELLED}
    TERMINAL = {DELIVERED, CANCELLED}
    STARTED = {IN_PROGRESS, LOADED, DELIVERED}


class DeliveryBatch(db.Model):
    __tablename__ = "delivery_batches"

    id = db.Column(db.Integer, primary_key=True)
    batch_number = db.Column(db.Integer, nullable=False, unique=True, index=True)
    delivery_date = db.Column(db.Date, nullable=True, index=True)

    driver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    status = db.Column(db.String(24), nullable=False, default=BatchStatus.PENDING, index=True)

    collection_point_id = db.Column(db.Integer, nullable=True)
    collection_point_name = db.Column(db.String(160), nullable=True)

    claimed_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    version = db.Column(db.Integer, nullable=False, default=1)

    stops = db.relationship(
        "BatchStop",
        backref="batch",
        lazy=True,
        order_by="BatchStop.sequence_number",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "batch_number": int(self.batch_number),
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "driver_id": int(self.driver_id) if self.driver_id is not None else None,
            "status": self.status,
            "collection_point_id": self.collection_point_id,
            "collection_point_name": self.collection_point_name or "",
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "version": int(self.version or 0),
        }


class BatchStop(db.Model):
    __tablename__ = "batch_stops"
    __table_args__ = (
        db.UniqueConstraint("batch_id", "sequence_number", name="uq_batch_stops_batch_sequence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("delivery_batches.id"), nullable=False, index=True)
    sequence_number = db.Column(db.Integer, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    status = db.Column(db.String(24), nullable=False, default=StopStatus.PENDING, index=True)

    street_address = db.Column(db.String(255), nullable=False, default="")
    city = db.Column(db.String(120), nullable=False, default="")
    state = db.Column(db.String(64), nullable=False, default="")
    zip_code = db.Column(db.String(16), nullable=False, default="")

    # first loaded scan sets it; never cleared
    address_visible_at = db.Column(db.DateTime, nullable=True)

    loaded_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def address_dict(self) -> dict:
        return {
            "street_address": self.street_address or "",
            "city": self.city or "",
            "state": self.state or "",
            "zip_code": self.zip_code or "",
        }

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "batch_id": int(self.batch_id),
            "sequence_number": int(self.sequence_number),
            "order_id": int(self.order_id),
            "status": self.status,
            "address_visible_at": self.address_visible_at.isoformat() if self.address_visible_at else None,
            "loaded_at": self.loaded_at.isoformat() if self.loaded_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }
