from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from farmroute.extensions import db


class UserRole:
    CONSUMER = "consumer"
    FARMER = "farmer"
    LEAD_FARMER = "lead_farmer"
    DRIVER = "driver"
    ADMIN = "admin"

    ALL = {CONSUMER, FARMER, LEAD_FARMER, DRIVER, ADMIN}


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)

    password_hash = db.Column(db.String(255), nullable=False, default="")

    role = db.Column(db.String(32), nullable=False, default=UserRole.CONSUMER, index=True)

    # Connected payout account (farmers, lead farmers, drivers)
    payout_account_ref = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() == UserRole.ADMIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": getattr(self, "phone", None),
            "role": self.role or UserRole.CONSUMER,
            "has_payout_account": bool(self.payout_account_ref),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
