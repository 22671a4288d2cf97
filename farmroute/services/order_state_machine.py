"""Order and delivery batch lifecycle.

Orders move along pending -> confirmed -> in_transit -> out_for_delivery ->
delivered, or drop to cancelled from any non-terminal state. A batch's
status is never written by callers; it is recomputed from its stop rows
whenever a stop changes (see ``rollup_batch_status``).

Public functions lock the rows they touch, apply the change and commit
once. The ``apply_event`` helper mutates without committing so the scan
service can fold the scan log row into the same transaction.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime

from farmroute.errors import ConcurrencyConflict, Forbidden, InvalidTransition, NotFound, ValidationError
from farmroute.extensions import db
from farmroute.models import (
    BatchStatus,
    BatchStop,
    DeliveryBatch,
    Order,
    OrderStatus,
    OrderTransition,
    StopStatus,
    UserRole,
)
from farmroute.services import payout_service
from farmroute.services.concurrency import commit_or_conflict, flush_or_conflict, lock_row
from farmroute.utils.actors import Actor, as_actor
from farmroute.utils.box_codes import format_box_code
from farmroute.utils.events import log_event

logger = logging.getLogger(__name__)


class OrderEvent:
    ASSIGN_TO_BATCH = "assign_to_batch"
    DRIVER_STARTS_BATCH = "driver_starts_batch"
    LOADED_SCAN = "loaded_scan"
    ALL_STOPS_LOADED = "all_stops_loaded"
    DELIVERED_SCAN = "delivered_scan"
    CANCEL = "cancel"

    # event -> (statuses it may fire from, resulting status)
    TRANSITIONS = {
        ASSIGN_TO_BATCH: ({OrderStatus.PENDING}, OrderStatus.CONFIRMED),
        DRIVER_STARTS_BATCH: ({OrderStatus.CONFIRMED}, OrderStatus.IN_TRANSIT),
        LOADED_SCAN: ({OrderStatus.IN_TRANSIT}, OrderStatus.IN_TRANSIT),
        ALL_STOPS_LOADED: ({OrderStatus.IN_TRANSIT}, OrderStatus.OUT_FOR_DELIVERY),
        DELIVERED_SCAN: ({OrderStatus.OUT_FOR_DELIVERY}, OrderStatus.DELIVERED),
        CANCEL: (
            {
                OrderStatus.PENDING,
                OrderStatus.CONFIRMED,
                OrderStatus.IN_TRANSIT,
                OrderStatus.OUT_FOR_DELIVERY,
            },
            OrderStatus.CANCELLED,
        ),
    }

    SCAN_DRIVEN = {LOADED_SCAN, DELIVERED_SCAN}
    ALL = set(TRANSITIONS)


def next_status(current: str, event: str) -> str | None:
    """Resolve ``event`` against ``current``.

    Returns the target status, or None when the order already sits in the
    event's target (re-application is a no-op). Raises InvalidTransition for
    anything else.
    """
    if event not in OrderEvent.TRANSITIONS:
        raise ValidationError(f"unknown order event {event!r}", {"event": event})
    sources, target = OrderEvent.TRANSITIONS[event]
    if current in sources:
        return target
    if current == target:
        return None
    raise InvalidTransition(
        f"cannot apply {event} to an order that is {current}",
        {"event": event, "status": current},
    )


def rollup_batch_status(stop_statuses, has_driver: bool) -> str:
    statuses = list(stop_statuses)
    if statuses and all(s in StopStatus.TERMINAL for s in statuses):
        return BatchStatus.COMPLETED
    if any(s in StopStatus.STARTED for s in statuses):
        return BatchStatus.IN_PROGRESS
    return BatchStatus.ASSIGNED if has_driver else BatchStatus.PENDING


def refresh_batch_status(batch: DeliveryBatch) -> str:
    """Recompute the batch status from its current stop rows. Does not commit."""
    flush_or_conflict()
    statuses = [
        s for (s,) in db.session.query(BatchStop.status).filter(BatchStop.batch_id == int(batch.id)).all()
    ]
    new_status = rollup_batch_status(statuses, batch.driver_id is not None)
    if new_status != batch.status:
        logger.info("batch_status batch_id=%s %s->%s", batch.id, batch.status, new_status)
        batch.status = new_status
        if new_status == BatchStatus.COMPLETED:
            batch.completed_at = datetime.utcnow()
            payout_service.materialize_driver_payout(batch)
    return new_status


def _record_transition(order: Order, event: str, from_status: str, to_status: str, actor: Actor, reason: str = "", metadata: dict | None = None) -> None:
    db.session.add(
        OrderTransition(
            order_id=int(order.id),
            event=event,
            from_status=from_status,
            to_status=to_status,
            actor_type=actor.role[:32],
            actor_id=actor.id,
            # forward-only chain: each (event, from, to) happens at most once per order
            idempotency_key=f"{event}:{from_status}->{to_status}"[:160],
            reason=(reason or "")[:240] or None,
            metadata_json=json.dumps(metadata or {})[:4000],
        )
    )


def _stop_for(order: Order) -> BatchStop | None:
    if order.stop_id is None:
        return None
    return BatchStop.query.filter_by(id=int(order.stop_id)).with_for_update().first()


def _maybe_all_stops_loaded(batch: DeliveryBatch, actor: Actor) -> int:
    """Fire all_stops_loaded for the batch once every live stop is on the truck."""
    stops = BatchStop.query.filter_by(batch_id=int(batch.id)).all()
    live = [s for s in stops if s.status != StopStatus.CANCELLED]
    if not live or any(s.status not in (StopStatus.LOADED, StopStatus.DELIVERED) for s in live):
        return 0
    moved = 0
    for stop in live:
        order = Order.query.filter_by(id=int(stop.order_id)).with_for_update().first()
        if order is not None and order.status == OrderStatus.IN_TRANSIT:
            apply_event(order, OrderEvent.ALL_STOPS_LOADED, actor=actor, batch=batch)
            moved += 1
    return moved


def apply_event(
    order: Order,
    event: str,
    *,
    actor=None,
    batch: DeliveryBatch | None = None,
    stop: BatchStop | None = None,
    reason: str = "",
) -> bool:
    """Apply one event to a locked order inside the current transaction.

    Returns False when the event was a no-op. Side effects on the stop,
    the batch roll-up and payout materialization happen here so they land
    in the same commit as the status change.
    """
    actor = as_actor(actor)
    current = order.status
    target = next_status(current, event)
    if target is None:
        return False
    now = datetime.utcnow()

    if batch is None and order.batch_id is not None:
        batch = db.session.get(DeliveryBatch, int(order.batch_id))
    if stop is None:
        stop = _stop_for(order)

    if event in (OrderEvent.DRIVER_STARTS_BATCH, OrderEvent.LOADED_SCAN, OrderEvent.ALL_STOPS_LOADED, OrderEvent.DELIVERED_SCAN):
        if batch is None or stop is None:
            raise InvalidTransition(f"{event} requires a batch assignment", {"order_id": int(order.id)})

    order.status = target

    if event == OrderEvent.DRIVER_STARTS_BATCH and stop.status == StopStatus.PENDING:
        stop.status = StopStatus.IN_PROGRESS
    elif event == OrderEvent.LOADED_SCAN:
        stop.status = StopStatus.LOADED
        stop.loaded_at = now
    elif event == OrderEvent.DELIVERED_SCAN:
        stop.status = StopStatus.DELIVERED
        stop.delivered_at = now
    elif event == OrderEvent.CANCEL and stop is not None:
        # the slot is freed but sequence numbers stay put
        stop.status = StopStatus.CANCELLED

    _record_transition(order, event, current, target, actor, reason)
    flush_or_conflict()

    if event == OrderEvent.DELIVERED_SCAN:
        payout_service.materialize_payouts(order)

    if batch is not None and event != OrderEvent.ALL_STOPS_LOADED:
        if event in (OrderEvent.LOADED_SCAN, OrderEvent.CANCEL) and batch.status == BatchStatus.IN_PROGRESS:
            _maybe_all_stops_loaded(batch, actor)
        refresh_batch_status(batch)

    log_event(
        "order_transition",
        actor_user_id=actor.id,
        subject_type="order",
        subject_id=order.id,
        metadata={"event": event, "from": current, "to": target},
    )
    return True


def _check_event_permission(order: Order, event: str, actor: Actor, batch: DeliveryBatch | None) -> None:
    if actor.is_privileged:
        return
    if event == OrderEvent.CANCEL:
        if actor.role == UserRole.CONSUMER and int(actor.id or 0) == int(order.consumer_id):
            return
        raise Forbidden("only the ordering consumer or an admin can cancel", {"order_id": int(order.id)})
    if event in (OrderEvent.DRIVER_STARTS_BATCH, OrderEvent.ALL_STOPS_LOADED):
        if batch is not None and batch.driver_id is not None and int(batch.driver_id) == int(actor.id or 0):
            return
        raise Forbidden("only the batch driver can do this", {"order_id": int(order.id)})
    raise Forbidden(f"{event} is reserved for admins", {"order_id": int(order.id)})


def transition_order(
    order_id: int,
    event: str,
    *,
    actor=None,
    batch_id: int | None = None,
    sequence_number: int | None = None,
    address: dict | None = None,
    reason: str = "",
) -> Order:
    actor = as_actor(actor)
    if event in OrderEvent.SCAN_DRIVEN:
        raise ValidationError(f"{event} is applied by recording a box scan", {"event": event})
    if event not in OrderEvent.ALL:
        raise ValidationError(f"unknown order event {event!r}", {"event": event})

    if event == OrderEvent.ASSIGN_TO_BATCH:
        return assign_to_batch(order_id, batch_id, sequence_number=sequence_number, address=address, actor=actor)

    peek = db.session.get(Order, int(order_id)) if order_id is not None else None
    if peek is None:
        raise NotFound("order not found", {"order_id": order_id})

    if event == OrderEvent.DRIVER_STARTS_BATCH:
        if peek.batch_id is None:
            raise InvalidTransition("order is not assigned to a batch", {"order_id": int(peek.id)})
        start_batch(int(peek.batch_id), actor=actor)
        db.session.refresh(peek)
        return peek

    try:
        # batch before order so every path takes locks in the same order
        batch = lock_row(DeliveryBatch, peek.batch_id, label="batch") if peek.batch_id is not None else None
        order = lock_row(Order, order_id, label="order")
        _check_event_permission(order, event, actor, batch)
        if event == OrderEvent.ALL_STOPS_LOADED:
            target = next_status(order.status, event)
            if target is not None:
                if batch is None or not _maybe_all_stops_loaded(batch, actor):
                    raise InvalidTransition("not every stop in the batch has been loaded", {"order_id": int(order.id)})
                refresh_batch_status(batch)
        else:
            apply_event(order, event, actor=actor, batch=batch, reason=reason)
        commit_or_conflict()
    except Exception:
        db.session.rollback()
        raise
    return order


def assign_to_batch(
    order_id: int,
    batch_id: int | None,
    *,
    sequence_number: int | None = None,
    address: dict | None = None,
    actor=None,
) -> Order:
    """Attach a pending order to a batch stop and issue its box code."""
    actor = as_actor(actor)
    if not actor.is_privileged:
        raise Forbidden("batch assignment is reserved for admins")
    if batch_id is None:
        raise ValidationError("batch_id is required", {"order_id": order_id})
    address = dict(address or {})
    street = str(address.get("street_address") or "").strip()
    zip_code = str(address.get("zip_code") or "").strip()
    if not street or not zip_code:
        raise ValidationError("street_address and zip_code are required", {"order_id": order_id})

    try:
        batch = lock_row(DeliveryBatch, batch_id, label="batch")
        order = lock_row(Order, order_id, label="order")

        if order.status == OrderStatus.CONFIRMED and order.batch_id == int(batch.id):
            stop = db.session.get(BatchStop, int(order.stop_id)) if order.stop_id is not None else None
            if sequence_number is None or (stop is not None and stop.sequence_number == int(sequence_number)):
                return order
        if next_status(order.status, OrderEvent.ASSIGN_TO_BATCH) is None:
            raise InvalidTransition("order is already assigned to a batch", {"order_id": int(order.id), "batch_id": order.batch_id})
        if batch.status not in BatchStatus.OPEN_FOR_ASSIGNMENT:
            raise InvalidTransition(
                f"batch is {batch.status} and no longer accepts stops",
                {"batch_id": int(batch.id), "status": batch.status},
            )

        if sequence_number is None:
            highest = db.session.query(db.func.max(BatchStop.sequence_number)).filter(BatchStop.batch_id == int(batch.id)).scalar()
            seq = int(highest or 0) + 1
        else:
            try:
                seq = int(sequence_number)
            except (TypeError, ValueError):
                raise ValidationError("sequence_number must be an integer", {"sequence_number": sequence_number}) from None
            if seq < 1:
                raise ValidationError("sequence_number must be positive", {"sequence_number": seq})
            taken = BatchStop.query.filter_by(batch_id=int(batch.id), sequence_number=seq).first()
            if taken is not None:
                raise ValidationError("stop sequence already taken", {"batch_id": int(batch.id), "sequence_number": seq})

        stop = BatchStop(
            batch_id=int(batch.id),
            sequence_number=seq,
            order_id=int(order.id),
            status=StopStatus.PENDING,
            street_address=street[:255],
            city=str(address.get("city") or "").strip()[:120],
            state=str(address.get("state") or "").strip()[:64],
            zip_code=zip_code[:16],
        )
        db.session.add(stop)
        flush_or_conflict()

        order.batch_id = int(batch.id)
        order.stop_id = int(stop.id)
        order.box_code = format_box_code(batch.batch_number, seq)
        if order.delivery_date is None:
            order.delivery_date = batch.delivery_date
        apply_event(order, OrderEvent.ASSIGN_TO_BATCH, actor=actor, batch=batch, stop=stop)
        commit_or_conflict()
    except Exception:
        db.session.rollback()
        raise
    logger.info("order_assigned order_id=%s batch_id=%s box_code=%s", order.id, batch.id, order.box_code)
    return order


def claim_batch(batch_id: int, *, actor) -> DeliveryBatch:
    actor = as_actor(actor)
    if actor.role != UserRole.DRIVER or actor.id is None:
        raise Forbidden("only drivers can claim batches")
    try:
        batch = lock_row(DeliveryBatch, batch_id, label="batch")
        if batch.driver_id is not None:
            if int(batch.driver_id) == int(actor.id):
                return batch
            raise ConcurrencyConflict("batch already claimed by another driver", {"batch_id": int(batch.id)})
        if batch.status != BatchStatus.PENDING:
            raise InvalidTransition(f"batch is {batch.status}", {"batch_id": int(batch.id), "status": batch.status})
        batch.driver_id = int(actor.id)
        batch.claimed_at = datetime.utcnow()
        refresh_batch_status(batch)
        log_event("batch_claimed", actor_user_id=actor.id, subject_type="batch", subject_id=batch.id)
        commit_or_conflict()
    except Exception:
        db.session.rollback()
        raise
    return batch


def start_batch(batch_id: int, *, actor) -> DeliveryBatch:
    """Driver leaves for the collection point: every live order goes in_transit."""
    actor = as_actor(actor)
    try:
        batch = lock_row(DeliveryBatch, batch_id, label="batch")
        if batch.driver_id is None:
            raise InvalidTransition("batch has not been claimed by a driver", {"batch_id": int(batch.id)})
        if not actor.is_privileged and int(batch.driver_id) != int(actor.id or 0):
            raise Forbidden("only the batch driver can start it", {"batch_id": int(batch.id)})
        if batch.status in (BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED):
            if batch.status == BatchStatus.COMPLETED:
                raise InvalidTransition("batch is already completed", {"batch_id": int(batch.id)})
            return batch

        stops = BatchStop.query.filter_by(batch_id=int(batch.id)).order_by(BatchStop.sequence_number.asc()).all()
        live = [s for s in stops if s.status != StopStatus.CANCELLED]
        if not live:
            raise InvalidTransition("batch has no stops to deliver", {"batch_id": int(batch.id)})
        for stop in live:
            order = lock_row(Order, stop.order_id, label="order")
            apply_event(order, OrderEvent.DRIVER_STARTS_BATCH, actor=actor, batch=batch, stop=stop)
        batch.started_at = datetime.utcnow()
        refresh_batch_status(batch)
        commit_or_conflict()
    except Exception:
        db.session.rollback()
        raise
    logger.info("batch_started batch_id=%s stops=%s", batch.id, len(live))
    return batch


def cancel_order(order_id: int, *, actor=None, reason: str = "") -> Order:
    return transition_order(order_id, OrderEvent.CANCEL, actor=actor, reason=reason)


def get_order_status(order_id: int) -> dict:
    order = db.session.get(Order, int(order_id)) if order_id is not None else None
    if order is None:
        raise NotFound("order not found", {"order_id": order_id})
    data = {
        "order_id": int(order.id),
        "status": order.status,
        "box_code": order.box_code,
        "batch_id": int(order.batch_id) if order.batch_id is not None else None,
        "batch_status": None,
        "stop_status": None,
        "sequence_number": None,
    }
    if order.batch_id is not None:
        batch = db.session.get(DeliveryBatch, int(order.batch_id))
        data["batch_status"] = batch.status if batch else None
    if order.stop_id is not None:
        stop = db.session.get(BatchStop, int(order.stop_id))
        if stop is not None:
            data["stop_status"] = stop.status
            data["sequence_number"] = int(stop.sequence_number)
    return data
