from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from farmroute.errors import ConcurrencyConflict, EngineError, Forbidden, InvalidTransition, NotFound, OutOfOrderScan, ValidationError
from farmroute.extensions import db
from farmroute.models import (
    BatchStop,
    DeliveryBatch,
    Order,
    OrderStatus,
    ScanEvent,
    ScanOutcome,
    ScanType,
    StopStatus,
)
from farmroute.services.address_visibility import open_address_gate
from farmroute.services.concurrency import commit_or_conflict, lock_row
from farmroute.services.order_state_machine import OrderEvent, apply_event
from farmroute.utils.actors import Actor, as_actor
from farmroute.utils.box_codes import normalize_box_code, parse_box_code
from farmroute.utils.events import log_event

logger = logging.getLogger(__name__)

# one retry lets the loser of a race re-read and land on the no-op path
_MAX_ATTEMPTS = 2


@dataclass
class ScanResult:
    """What a scan did.

    ``event`` is the ScanEvent the caller should show: the row just written,
    or for a duplicate delivered scan the original applied row. ``logged``
    is always the row appended for this attempt. ``error`` is set when the
    scan was rejected; the rejection itself is still logged.
    """

    event: ScanEvent
    logged: ScanEvent
    applied: bool
    error: EngineError | None = None
    address_visible_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> "ScanResult":
        if self.error is not None:
            raise self.error
        return self

    def to_dict(self) -> dict:
        data = {
            "ok": self.ok,
            "applied": bool(self.applied),
            "scan": self.event.to_dict(),
            "logged_scan_id": int(self.logged.id),
            "address_visible_at": self.address_visible_at.isoformat() if self.address_visible_at else None,
        }
        if self.error is not None:
            data["error"] = self.error.to_payload()
        return data


def _optional_int(value, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", {name: value}) from None


def _optional_float(value, name: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be numeric", {name: value}) from None


def _resolve(batch_id, code: str, order_id, stop_id, actor: Actor) -> tuple[DeliveryBatch, Order, BatchStop]:
    parsed = parse_box_code(code)
    if parsed is None:
        raise NotFound("unknown box code", {"box_code": code})
    batch = lock_row(DeliveryBatch, batch_id, label="batch")
    if int(batch.batch_number) != parsed[0]:
        raise NotFound("box code does not belong to this batch", {"box_code": code, "batch_id": int(batch.id)})
    if not actor.is_privileged and (batch.driver_id is None or int(batch.driver_id) != int(actor.id or 0)):
        raise Forbidden("only the batch driver can scan its boxes", {"batch_id": int(batch.id)})

    order = Order.query.filter_by(batch_id=int(batch.id), box_code=code).with_for_update().first()
    if order is None:
        raise NotFound("unknown box code", {"box_code": code})
    if order.status == OrderStatus.CANCELLED:
        raise InvalidTransition("order was cancelled", {"order_id": int(order.id), "box_code": code})
    if OrderStatus.rank(order.status) < OrderStatus.rank(OrderStatus.CONFIRMED):
        raise NotFound("unknown box code", {"box_code": code})
    if order_id is not None and int(order_id) != int(order.id):
        raise ValidationError("box code belongs to a different order", {"box_code": code, "order_id": order_id})

    stop = lock_row(BatchStop, order.stop_id, label="stop")
    if stop_id is not None and int(stop_id) != int(stop.id):
        raise ValidationError("box code belongs to a different stop", {"box_code": code, "stop_id": stop_id})
    return batch, order, stop


def _prior_loaded(order_id: int) -> ScanEvent | None:
    return (
        ScanEvent.query.filter(
            ScanEvent.order_id == int(order_id),
            ScanEvent.scan_type == ScanType.LOADED,
            ScanEvent.outcome.in_((ScanOutcome.APPLIED, ScanOutcome.NOOP)),
        )
        .order_by(ScanEvent.id.asc())
        .first()
    )


def _scan_once(batch_id, code, scan_type, actor, order_id, stop_id, latitude, longitude) -> ScanResult:
    batch, order, stop = _resolve(batch_id, code, order_id, stop_id, actor)
    row = ScanEvent(
        batch_id=int(batch.id),
        stop_id=int(stop.id),
        order_id=int(order.id),
        actor_id=actor.id,
        box_code=code,
        scan_type=scan_type,
        latitude=latitude,
        longitude=longitude,
        scanned_at=datetime.utcnow(),
    )
    shown = row
    applied = False

    if scan_type == ScanType.LOADED:
        if order.status == OrderStatus.CONFIRMED:
            raise InvalidTransition("batch has not been started", {"batch_id": int(batch.id)})
        already = stop.status in (StopStatus.LOADED, StopStatus.DELIVERED) or order.status != OrderStatus.IN_TRANSIT
        if not already:
            applied, _ = open_address_gate(stop, at=row.scanned_at)
        if applied:
            apply_event(order, OrderEvent.LOADED_SCAN, actor=actor, batch=batch, stop=stop)
    else:
        if _prior_loaded(order.id) is None:
            raise OutOfOrderScan("please scan pickup first", {"order_id": int(order.id), "box_code": code})
        if order.status == OrderStatus.DELIVERED:
            original = (
                ScanEvent.query.filter_by(
                    order_id=int(order.id),
                    scan_type=ScanType.DELIVERED,
                    outcome=ScanOutcome.APPLIED,
                )
                .order_by(ScanEvent.id.asc())
                .first()
            )
            if original is not None:
                shown = original
        else:
            applied = apply_event(order, OrderEvent.DELIVERED_SCAN, actor=actor, batch=batch, stop=stop)

    row.outcome = ScanOutcome.APPLIED if applied else ScanOutcome.NOOP
    db.session.add(row)
    commit_or_conflict()
    return ScanResult(
        event=shown,
        logged=row,
        applied=applied,
        address_visible_at=stop.address_visible_at,
    )


def _log_rejection(batch_id, code, scan_type, actor: Actor, order_id, stop_id, latitude, longitude, error: EngineError) -> ScanEvent:
    try:
        bid = int(batch_id)
    except (TypeError, ValueError):
        bid = 0
    row = ScanEvent(
        batch_id=bid,
        stop_id=stop_id,
        order_id=order_id,
        actor_id=actor.id,
        box_code=(code or "")[:32],
        scan_type=(scan_type or "")[:16] or "unknown",
        outcome=ScanOutcome.REJECTED,
        error_code=error.code,
        latitude=latitude,
        longitude=longitude,
        scanned_at=datetime.utcnow(),
    )
    db.session.add(row)
    log_event(
        "scan_rejected",
        actor_user_id=actor.id,
        subject_type="batch",
        subject_id=bid,
        severity="WARN",
        metadata={"box_code": row.box_code, "scan_type": row.scan_type, "code": error.code, "message": error.message},
    )
    db.session.commit()
    return row


def record_scan(
    batch_id,
    box_code,
    scan_type,
    *,
    actor=None,
    order_id=None,
    stop_id=None,
    latitude=None,
    longitude=None,
) -> ScanResult:
    """Record a box scan and apply its side effect.

    Every call appends a ScanEvent. A rejected scan is logged in its own
    transaction after the failed side effect has been rolled back, and the
    error comes back on the result rather than being raised.
    """
    actor = as_actor(actor)
    code = normalize_box_code(box_code)
    kind = str(scan_type or "").strip().lower()
    try:
        order_id = _optional_int(order_id, "order_id")
        stop_id = _optional_int(stop_id, "stop_id")
        latitude = _optional_float(latitude, "latitude")
        longitude = _optional_float(longitude, "longitude")
    except ValidationError as e:
        row = _log_rejection(batch_id, code, kind, actor, None, None, None, None, e)
        return ScanResult(event=row, logged=row, applied=False, error=e)

    last_error: EngineError | None = None
    for _attempt in range(_MAX_ATTEMPTS):
        try:
            if kind not in ScanType.ALL:
                raise ValidationError("scan_type must be loaded or delivered", {"scan_type": scan_type})
            result = _scan_once(batch_id, code, kind, actor, order_id, stop_id, latitude, longitude)
            logger.info(
                "scan_recorded batch_id=%s box_code=%s type=%s applied=%s",
                batch_id,
                code,
                kind,
                result.applied,
            )
            return result
        except ConcurrencyConflict as e:
            db.session.rollback()
            last_error = e
            continue
        except EngineError as e:
            db.session.rollback()
            last_error = e
            break

    resolved = Order.query.filter_by(box_code=code).first() if code else None
    row = _log_rejection(
        batch_id,
        code,
        kind,
        actor,
        int(resolved.id) if resolved is not None else order_id,
        int(resolved.stop_id) if resolved is not None and resolved.stop_id is not None else stop_id,
        latitude,
        longitude,
        last_error,
    )
    logger.warning("scan_rejected batch_id=%s box_code=%s type=%s code=%s", batch_id, code, kind, last_error.code)
    return ScanResult(event=row, logged=row, applied=False, error=last_error)
