from __future__ import annotations

from flask import Blueprint, jsonify, request

from farmroute.extensions import db
from farmroute.models import DeliveryBatch, Order, OrderTransition, UserRole
from farmroute.services.order_state_machine import cancel_order, get_order_status, transition_order
from farmroute.utils.actors import current_user, is_admin

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")


def _unauthorized():
    return jsonify({"ok": False, "message": "Unauthorized"}), 401


def _can_view(user, order: Order) -> bool:
    if is_admin(user):
        return True
    uid = int(user.id)
    if uid in (int(order.consumer_id), int(order.farmer_id)) or uid == (order.lead_farmer_id or 0):
        return True
    if (user.role or "") == UserRole.DRIVER and order.batch_id is not None:
        batch = db.session.get(DeliveryBatch, int(order.batch_id))
        return batch is not None and batch.driver_id == uid
    return False


def _order_or_404(order_id: int):
    order = db.session.get(Order, int(order_id))
    if order is None:
        return None, (jsonify({"ok": False, "code": "NOT_FOUND", "message": "order not found"}), 404)
    return order, None


@orders_bp.get("/<int:order_id>")
def order_detail(order_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    order, err = _order_or_404(order_id)
    if err:
        return err
    if not _can_view(u, order):
        return jsonify({"ok": False, "message": "Forbidden"}), 403
    data = order.to_dict(include_items=True)
    if is_admin(u):
        data["transitions"] = [
            t.to_dict() for t in OrderTransition.query.filter_by(order_id=int(order.id)).order_by(OrderTransition.id.asc()).all()
        ]
    return jsonify({"ok": True, "order": data}), 200


@orders_bp.get("/<int:order_id>/status")
def order_status(order_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    order, err = _order_or_404(order_id)
    if err:
        return err
    if not _can_view(u, order):
        return jsonify({"ok": False, "message": "Forbidden"}), 403
    return jsonify({"ok": True, **get_order_status(order_id)}), 200


@orders_bp.post("/<int:order_id>/transition")
def order_transition(order_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    payload = request.get_json(silent=True) or {}
    event = str(payload.get("event") or "").strip().lower()
    if not event:
        return jsonify({"ok": False, "code": "VALIDATION_ERROR", "message": "event is required"}), 400
    order = transition_order(
        order_id,
        event,
        actor=u,
        batch_id=payload.get("batch_id"),
        sequence_number=payload.get("sequence_number"),
        address=payload.get("address"),
        reason=str(payload.get("reason") or ""),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/cancel")
def order_cancel(order_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    payload = request.get_json(silent=True) or {}
    order = cancel_order(order_id, actor=u, reason=str(payload.get("reason") or ""))
    return jsonify({"ok": True, "order": order.to_dict()}), 200
