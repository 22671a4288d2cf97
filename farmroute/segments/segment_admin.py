from __future__ import annotations

from flask import Blueprint, jsonify, request

from farmroute.models import JobRun, Payout, PayoutStatus, PlatformEvent
from farmroute.services.order_intake import create_batch, register_order
from farmroute.services.order_state_machine import assign_to_batch
from farmroute.services.payout_service import (
    list_payout_queue,
    mark_payout_completed,
    mark_payout_failed,
    reconcile_ledger,
)
from farmroute.utils.actors import current_user, is_admin
from farmroute.utils.ledger import money_minor_to_major

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")


@admin_bp.before_request
def _require_admin():
    u = current_user()
    if not u:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    if not is_admin(u):
        return jsonify({"ok": False, "message": "Forbidden"}), 403
    return None


@admin_bp.post("/orders")
def admin_register_order():
    payload = request.get_json(silent=True) or {}
    order = register_order(
        actor=current_user(),
        consumer_id=payload.get("consumer_id"),
        farmer_id=payload.get("farmer_id"),
        lead_farmer_id=payload.get("lead_farmer_id"),
        items=payload.get("items") or [],
        payment_authorized=bool(payload.get("payment_authorized")),
        payment_reference=payload.get("payment_reference"),
        delivery_date=payload.get("delivery_date"),
    )
    return jsonify({"ok": True, "order": order.to_dict(include_items=True)}), 201


@admin_bp.post("/batches")
def admin_create_batch():
    payload = request.get_json(silent=True) or {}
    batch = create_batch(
        actor=current_user(),
        batch_number=payload.get("batch_number"),
        delivery_date=payload.get("delivery_date"),
        collection_point_id=payload.get("collection_point_id"),
        collection_point_name=payload.get("collection_point_name"),
    )
    return jsonify({"ok": True, "batch": batch.to_dict()}), 201


@admin_bp.post("/orders/<int:order_id>/assign")
def admin_assign_order(order_id: int):
    payload = request.get_json(silent=True) or {}
    order = assign_to_batch(
        order_id,
        payload.get("batch_id"),
        sequence_number=payload.get("sequence_number"),
        address=payload.get("address"),
        actor=current_user(),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@admin_bp.get("/payouts")
def admin_payout_queue():
    status = (request.args.get("status") or "").strip().lower() or None
    try:
        limit = int(request.args.get("limit") or 100)
    except ValueError:
        limit = 100
    rows = list_payout_queue(status=status, limit=limit)
    summary = {}
    for st in PayoutStatus.ALLOWED:
        q = Payout.query.filter(Payout.status == st)
        summary[st] = {
            "count": q.count(),
            "amount": money_minor_to_major(sum(int(p.amount_minor or 0) for p in q.all())),
        }
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "summary": summary}), 200


@admin_bp.post("/payouts/<int:payout_id>/complete")
def admin_payout_complete(payout_id: int):
    payload = request.get_json(silent=True) or {}
    u = current_user()
    row = mark_payout_completed(payout_id, payload.get("reference"), actor_id=int(u.id))
    return jsonify({"ok": True, "payout": row.to_dict()}), 200


@admin_bp.post("/payouts/<int:payout_id>/fail")
def admin_payout_fail(payout_id: int):
    payload = request.get_json(silent=True) or {}
    u = current_user()
    row = mark_payout_failed(payout_id, str(payload.get("reason") or ""), actor_id=int(u.id))
    return jsonify({"ok": True, "payout": row.to_dict()}), 200


@admin_bp.get("/ledger/reconcile")
def admin_reconcile_ledger():
    report = reconcile_ledger()
    return jsonify(report), 200


@admin_bp.get("/ops/job-runs")
def admin_job_runs():
    rows = JobRun.query.order_by(JobRun.ran_at.desc()).limit(50).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@admin_bp.get("/ops/events")
def admin_platform_events():
    event_type = (request.args.get("event_type") or "").strip()
    q = PlatformEvent.query
    if event_type:
        q = q.filter(PlatformEvent.event_type == event_type)
    rows = q.order_by(PlatformEvent.id.desc()).limit(200).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
