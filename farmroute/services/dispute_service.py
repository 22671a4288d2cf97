from __future__ import annotations

import logging
from datetime import datetime

from farmroute.errors import EngineError, Forbidden, InvalidTransition, NotFound, ValidationError
from farmroute.extensions import db
from farmroute.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from farmroute.integrations.payments.base import PaymentsProvider
from farmroute.integrations.payments.factory import build_payments_provider
from farmroute.models import (
    DeliveryBatch,
    Dispute,
    DisputeStatus,
    DisputeType,
    Order,
    RefundInstruction,
    RefundStatus,
    UserRole,
)
from farmroute.services.concurrency import commit_or_conflict, lock_row
from farmroute.utils.actors import Actor, as_actor
from farmroute.utils.events import log_event
from farmroute.utils.ledger import money_major_to_minor

logger = logging.getLogger(__name__)


def _refund_minor(amount, order: Order) -> int | None:
    if amount is None or amount == "":
        return None
    minor = money_major_to_minor(amount)
    if minor <= 0:
        raise ValidationError("refund amount must be positive", {"refund_amount": str(amount)})
    if minor > int(order.total_minor or 0):
        raise ValidationError(
            "refund amount exceeds the order total",
            {"refund_amount_minor": minor, "order_total_minor": int(order.total_minor or 0)},
        )
    return minor


def _as_id(value, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", {name: value}) from None


def _require_admin(actor: Actor) -> None:
    if not actor.is_privileged:
        raise Forbidden("dispute handling is reserved for admins")


def _driver_serves_order(actor: Actor, order: Order) -> bool:
    if order.batch_id is None:
        return False
    batch = db.session.get(DeliveryBatch, int(order.batch_id))
    return batch is not None and batch.driver_id is not None and int(batch.driver_id) == int(actor.id or 0)


def create_dispute(
    order_id: int,
    *,
    actor,
    dispute_type: str,
    description: str = "",
    requested_refund=None,
) -> Dispute:
    actor = as_actor(actor)
    kind = (dispute_type or "").strip().lower()
    order_pk = _as_id(order_id, "order_id")
    order = db.session.get(Order, order_pk) if order_pk is not None else None
    if order is None:
        raise NotFound("order not found", {"order_id": order_id})

    if actor.role == UserRole.CONSUMER:
        if int(actor.id or 0) != int(order.consumer_id):
            raise Forbidden("consumers can only dispute their own orders", {"order_id": int(order.id)})
        allowed = DisputeType.CONSUMER
    elif actor.role == UserRole.DRIVER:
        if not _driver_serves_order(actor, order):
            raise Forbidden("drivers can only report issues on their own batches", {"order_id": int(order.id)})
        allowed = DisputeType.DELIVERY
    else:
        raise Forbidden("only consumers or drivers can open disputes")

    if kind not in allowed:
        raise ValidationError(
            f"dispute type must be one of {sorted(allowed)}",
            {"type": dispute_type},
        )
    requested_minor = _refund_minor(requested_refund, order)

    row = Dispute(
        order_id=int(order.id),
        reporter_id=int(actor.id),
        reporter_role=actor.role,
        dispute_type=kind,
        description=(description or "").strip()[:4000],
        requested_refund_minor=requested_minor,
        status=DisputeStatus.OPEN,
    )
    db.session.add(row)
    db.session.flush()
    log_event(
        "dispute_opened",
        actor_user_id=actor.id,
        subject_type="dispute",
        subject_id=row.id,
        metadata={"order_id": int(order.id), "type": kind},
    )
    commit_or_conflict()
    return row


def _move(dispute: Dispute, target: str) -> None:
    if target not in DisputeStatus.ALLOWED.get(dispute.status, set()):
        raise InvalidTransition(
            f"dispute cannot move {dispute.status}->{target}",
            {"dispute_id": int(dispute.id), "status": dispute.status},
        )
    dispute.status = target


def acknowledge_dispute(dispute_id: int, *, actor) -> Dispute:
    actor = as_actor(actor)
    _require_admin(actor)
    try:
        dispute = lock_row(Dispute, dispute_id, label="dispute")
        if dispute.status == DisputeStatus.INVESTIGATING:
            return dispute
        _move(dispute, DisputeStatus.INVESTIGATING)
        dispute.acknowledged_at = datetime.utcnow()
        dispute.resolver_id = actor.id
        commit_or_conflict()
    except Exception:
        db.session.rollback()
        raise
    return dispute


def reject_dispute(dispute_id: int, *, actor, resolution: str) -> Dispute:
    actor = as_actor(actor)
    _require_admin(actor)
    text = (resolution or "").strip()
    if not text:
        raise ValidationError("resolution is required to reject a dispute", {"dispute_id": dispute_id})
    try:
        dispute = lock_row(Dispute, dispute_id, label="dispute")
        _move(dispute, DisputeStatus.REJECTED)
        dispute.resolution = text[:4000]
        dispute.resolver_id = actor.id
        dispute.resolved_at = datetime.utcnow()
        commit_or_conflict()
    except Exception:
        db.session.rollback()
        raise
    return dispute


def resolve_dispute(
    dispute_id: int,
    *,
    actor,
    resolution: str,
    refund_amount=None,
    provider: PaymentsProvider | None = None,
) -> Dispute:
    """Close an investigated dispute, optionally refunding the consumer.

    The refund is validated against the order total before anything is
    written. The refund instruction row is committed together with the
    resolution; the provider call happens afterwards and a provider failure
    only marks the instruction failed.
    """
    actor = as_actor(actor)
    _require_admin(actor)
    text = (resolution or "").strip()
    if not text:
        raise ValidationError("resolution is required", {"dispute_id": dispute_id})
    try:
        dispute = lock_row(Dispute, dispute_id, label="dispute")
        order = db.session.get(Order, int(dispute.order_id))
        refund_minor = _refund_minor(refund_amount, order)
        _move(dispute, DisputeStatus.RESOLVED)
        dispute.resolution = text[:4000]
        dispute.refund_amount_minor = refund_minor
        dispute.resolver_id = actor.id
        dispute.resolved_at = datetime.utcnow()
        instruction = None
        if refund_minor is not None:
            instruction = RefundInstruction(
                dispute_id=int(dispute.id),
                order_id=int(order.id),
                amount_minor=refund_minor,
                status=RefundStatus.PENDING,
            )
            db.session.add(instruction)
        log_event(
            "dispute_resolved",
            actor_user_id=actor.id,
            subject_type="dispute",
            subject_id=dispute.id,
            metadata={"refund_amount_minor": refund_minor},
        )
        commit_or_conflict()
    except Exception:
        db.session.rollback()
        raise

    if instruction is not None:
        send_refund_instruction(instruction, provider=provider)
    return dispute


def send_refund_instruction(instruction: RefundInstruction, *, provider: PaymentsProvider | None = None) -> RefundInstruction:
    if instruction.status == RefundStatus.SENT:
        return instruction
    order = db.session.get(Order, int(instruction.order_id))
    instruction.attempts = int(instruction.attempts or 0) + 1
    try:
        provider = provider or build_payments_provider()
        if not (order.payment_reference or "").strip():
            raise ValidationError("order has no captured payment to refund", {"order_id": int(order.id)})
        result = provider.refund(
            payment_reference=order.payment_reference,
            amount_minor=int(instruction.amount_minor),
            idempotency_key=f"refund-dispute-{int(instruction.dispute_id)}",
            metadata={"dispute_id": int(instruction.dispute_id), "order_id": int(order.id)},
        )
    except (EngineError, IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        instruction.status = RefundStatus.FAILED
        instruction.failure_reason = str(e)[:240]
        logger.warning("refund_instruction_failed id=%s err=%s", instruction.id, e)
        log_event(
            "refund_failed",
            subject_type="refund_instruction",
            subject_id=instruction.id,
            severity="WARN",
            metadata={"reason": instruction.failure_reason},
        )
    else:
        instruction.status = RefundStatus.SENT
        instruction.provider_reference = (result.reference or "")[:120] or None
        instruction.failure_reason = None
    db.session.commit()
    return instruction


def get_dispute(dispute_id: int) -> Dispute:
    dispute_pk = _as_id(dispute_id, "dispute_id")
    row = db.session.get(Dispute, dispute_pk) if dispute_pk is not None else None
    if row is None:
        raise NotFound("dispute not found", {"dispute_id": dispute_id})
    return row
