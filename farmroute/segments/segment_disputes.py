from __future__ import annotations

from flask import Blueprint, jsonify, request

from farmroute.models import Dispute, DisputeStatus, RefundInstruction
from farmroute.services.dispute_service import (
    acknowledge_dispute,
    create_dispute,
    get_dispute,
    reject_dispute,
    resolve_dispute,
)
from farmroute.utils.actors import current_user, is_admin

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api")


def _unauthorized():
    return jsonify({"ok": False, "message": "Unauthorized"}), 401


def _dispute_payload(dispute: Dispute) -> dict:
    data = dispute.to_dict()
    instruction = RefundInstruction.query.filter_by(dispute_id=int(dispute.id)).first()
    data["refund_instruction"] = instruction.to_dict() if instruction is not None else None
    return data


@disputes_bp.post("/disputes")
def dispute_create():
    u = current_user()
    if not u:
        return _unauthorized()
    payload = request.get_json(silent=True) or {}
    dispute = create_dispute(
        payload.get("order_id"),
        actor=u,
        dispute_type=str(payload.get("type") or ""),
        description=str(payload.get("description") or ""),
        requested_refund=payload.get("requested_refund"),
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 201


@disputes_bp.get("/disputes/<int:dispute_id>")
def dispute_detail(dispute_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    dispute = get_dispute(dispute_id)
    if not is_admin(u) and int(dispute.reporter_id) != int(u.id):
        return jsonify({"ok": False, "message": "Forbidden"}), 403
    return jsonify({"ok": True, "dispute": _dispute_payload(dispute)}), 200


@disputes_bp.get("/admin/disputes")
def admin_dispute_list():
    u = current_user()
    if not is_admin(u):
        return jsonify({"ok": False, "message": "Forbidden"}), 403
    status = (request.args.get("status") or "").strip().lower()
    q = Dispute.query
    if status in DisputeStatus.ALLOWED:
        q = q.filter(Dispute.status == status)
    rows = q.order_by(Dispute.created_at.asc()).limit(200).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@disputes_bp.post("/admin/disputes/<int:dispute_id>/acknowledge")
def admin_dispute_acknowledge(dispute_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    dispute = acknowledge_dispute(dispute_id, actor=u)
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/admin/disputes/<int:dispute_id>/resolve")
def admin_dispute_resolve(dispute_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    payload = request.get_json(silent=True) or {}
    dispute = resolve_dispute(
        dispute_id,
        actor=u,
        resolution=str(payload.get("resolution") or ""),
        refund_amount=payload.get("refund_amount"),
    )
    return jsonify({"ok": True, "dispute": _dispute_payload(dispute)}), 200


@disputes_bp.post("/admin/disputes/<int:dispute_id>/reject")
def admin_dispute_reject(dispute_id: int):
    u = current_user()
    if not u:
        return _unauthorized()
    payload = request.get_json(silent=True) or {}
    dispute = reject_dispute(dispute_id, actor=u, resolution=str(payload.get("resolution") or ""))
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200
