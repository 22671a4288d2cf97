from datetime import datetime

from sqlalchemy import event

from farmroute.extensions import db


class ScanType:
    LOADED = "loaded"
    DELIVERED = "delivered"

    ALL = {LOADED, DELIVERED}


class ScanOutcome:
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"


class ScanEvent(db.Model):
    __tablename__ = "scan_events"

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, nullable=False, index=True)
    stop_id = db.Column(db.Integer, nullable=True, index=True)
    # null when the box code could not be resolved
    order_id = db.Column(db.Integer, nullable=True, index=True)
    actor_id = db.Column(db.Integer, nullable=True, index=True)

    box_code = db.Column(db.String(32), nullable=False, default="", index=True)
    scan_type = db.Column(db.String(16), nullable=False, index=True)
    outcome = db.Column(db.String(16), nullable=False, default=ScanOutcome.APPLIED, index=True)
    error_code = db.Column(db.String(64), nullable=True)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    scanned_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "batch_id": int(self.batch_id),
            "stop_id": int(self.stop_id) if self.stop_id is not None else None,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "box_code": self.box_code or "",
            "scan_type": self.scan_type,
            "outcome": self.outcome,
            "error_code": self.error_code,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "scanned_at": self.scanned_at.isoformat() if self.scanned_at else None,
        }


@event.listens_for(ScanEvent, "before_update")
def _scan_event_no_update(mapper, connection, target):
    raise RuntimeError("scan_events is append-only")


@event.listens_for(ScanEvent, "before_delete")
def _scan_event_no_delete(mapper, connection, target):
    raise RuntimeError("scan_events is append-only")
