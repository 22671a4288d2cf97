from __future__ import annotations

from flask import Blueprint, jsonify, request

from farmroute.extensions import db
from farmroute.models import BatchStatus, BatchStop, DeliveryBatch, UserRole
from farmroute.services.address_visibility import get_stop_address, present_stop
from farmroute.services.order_state_machine import claim_batch, start_batch
from farmroute.utils.actors import current_user, is_admin

batches_bp = Blueprint("batches_bp", __name__, url_prefix="/api")


def _unauthorized():
    return jsonify({"ok": False, "message": "Unauthorized"}), 401


def _forbidden(message: str = "Forbidden"):
    return jsonify({"ok": False, "code": "FORBIDDEN", "message": message}), 403


@batches_bp.get("/batches/available")
def available_batches():
    """Unclaimed batches a driver can pick up. Stop addresses are never included."""
    u = current_user()
    if not u:
        return _unauthorized()
    if (u.role or "") != UserRole.DRIVER and not is_admin(u):
        return _forbidden()
    try:
        limit = max(1, min(int(request.args.get("limit") or 50), 200))
    except ValueError:
        limit = 50
    rows = (
        DeliveryBatch.query.filter(
            DeliveryBatch.status == BatchStatus.PENDING,
            DeliveryBatch.driver_id.is_(None),
        )
        .order_by(DeliveryBatch.delivery_date.asc(), DeliveryBatch.id.asc())
        .limit(limit)
        .all()
    )
    items = []
    for batch in rows:
        data = batch.to_dict()
        stops = BatchStop.query.filter_by(batch_id=int(batch.id)).all()
        data["stop_count"] = len(stops)
        data["zip_codes"] = sorted({s.zip_code for s in stops if s.zip_code})
        items.append(data)
    return jsonify({"ok": True, "items": items}), 200


@batches_bp.get("/batches/<int:batch_id>")
def batch_detail(batch_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    batch = db.session.get(DeliveryBatch, int(batch_id))
    if batch is None:
        return jsonify({"ok": False, "code": "NOT_FOUND", "message": "batch not found"}), 404
    if not is_admin(u) and batch.driver_id != int(u.id):
        return _forbidden("batch is assigned to another driver")
    stops = BatchStop.query.filter_by(batch_id=int(batch.id)).order_by(BatchStop.sequence_number.asc()).all()
    data = batch.to_dict()
    data["stops"] = [present_stop(s, u) for s in stops]
    return jsonify({"ok": True, "batch": data}), 200


@batches_bp.post("/batches/<int:batch_id>/claim")
def batch_claim(batch_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    batch = claim_batch(batch_id, actor=u)
    return jsonify({"ok": True, "batch": batch.to_dict()}), 200


@batches_bp.post("/batches/<int:batch_id>/start")
def batch_start(batch_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    batch = start_batch(batch_id, actor=u)
    return jsonify({"ok": True, "batch": batch.to_dict()}), 200


@batches_bp.get("/stops/<int:stop_id>/address")
def stop_address(stop_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    return jsonify({"ok": True, "stop": get_stop_address(stop_id, u)}), 200
