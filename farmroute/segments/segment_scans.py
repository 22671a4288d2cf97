from __future__ import annotations

from flask import Blueprint, jsonify, request

from farmroute.models import ScanEvent
from farmroute.services.scan_service import record_scan
from farmroute.utils.actors import current_user, is_admin

scans_bp = Blueprint("scans_bp", __name__, url_prefix="/api/scans")


@scans_bp.post("")
def scan_create():
    u = current_user()
    if not u:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    payload = request.get_json(silent=True) or {}
    result = record_scan(
        payload.get("batch_id"),
        payload.get("box_code"),
        payload.get("scan_type"),
        actor=u,
        order_id=payload.get("order_id"),
        stop_id=payload.get("stop_id"),
        latitude=payload.get("latitude"),
        longitude=payload.get("longitude"),
    )
    if result.error is not None:
        body = result.to_dict()
        body.update(result.error.to_payload())
        return jsonify(body), result.error.http_status
    return jsonify(result.to_dict()), 201 if result.applied else 200


@scans_bp.get("")
def scan_log():
    u = current_user()
    if not u:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    if not is_admin(u):
        return jsonify({"ok": False, "message": "Forbidden"}), 403
    q = ScanEvent.query
    for key in ("batch_id", "order_id"):
        raw = request.args.get(key)
        if raw and raw.isdigit():
            q = q.filter(getattr(ScanEvent, key) == int(raw))
    rows = q.order_by(ScanEvent.id.asc()).limit(500).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200
