from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func

from farmroute.errors import InvalidTransition, ValidationError
from farmroute.extensions import db
from farmroute.models import (
    BatchStop,
    DeliveryBatch,
    FeeType,
    Order,
    OrderStatus,
    Payout,
    PayoutStatus,
    RecipientType,
    StopStatus,
    TransactionFee,
)
from farmroute.services.concurrency import commit_or_conflict, lock_row
from farmroute.utils.events import log_event
from farmroute.utils.ledger import driver_payout_minor, split_revenue_minor

logger = logging.getLogger(__name__)


def materialize_payouts(order: Order) -> bool:
    """Write the fee rows and per-order payouts for a delivered order.

    Runs inside the caller's transaction and does not commit. Returns False
    when the order was already materialized.
    """
    if order.status != OrderStatus.DELIVERED:
        raise InvalidTransition(
            "payouts are only materialized for delivered orders",
            {"order_id": int(order.id), "status": order.status},
        )
    exists = TransactionFee.query.filter_by(order_id=int(order.id)).first()
    if exists is not None:
        return False

    shares = split_revenue_minor(int(order.subtotal_minor or 0))
    db.session.add_all(
        [
            TransactionFee(
                order_id=int(order.id),
                fee_type=FeeType.FARMER_SHARE,
                amount_minor=shares["farmer_share"],
                recipient_id=int(order.farmer_id),
            ),
            TransactionFee(
                order_id=int(order.id),
                fee_type=FeeType.LEAD_FARMER_COMMISSION,
                amount_minor=shares["lead_farmer_share"],
                recipient_id=int(order.lead_farmer_id) if order.lead_farmer_id is not None else None,
            ),
            TransactionFee(
                order_id=int(order.id),
                fee_type=FeeType.PLATFORM_FEE,
                amount_minor=shares["platform_fee"],
                recipient_id=None,
            ),
            Payout(
                recipient_id=int(order.farmer_id),
                recipient_type=RecipientType.FARMER,
                order_id=int(order.id),
                amount_minor=shares["farmer_share"],
                status=PayoutStatus.PENDING,
            ),
        ]
    )
    if order.lead_farmer_id is not None:
        db.session.add(
            Payout(
                recipient_id=int(order.lead_farmer_id),
                recipient_type=RecipientType.LEAD_FARMER_COMMISSION,
                order_id=int(order.id),
                amount_minor=shares["lead_farmer_share"],
                status=PayoutStatus.PENDING,
            )
        )
    db.session.flush()
    logger.info(
        "payouts_materialized order_id=%s farmer=%s lead=%s platform=%s",
        order.id,
        shares["farmer_share"],
        shares["lead_farmer_share"],
        shares["platform_fee"],
    )
    return True


def materialize_driver_payout(batch: DeliveryBatch) -> Payout | None:
    """One driver payout per completed batch, summed over delivered stops."""
    if batch.driver_id is None:
        return None
    existing = Payout.query.filter_by(batch_id=int(batch.id), recipient_type=RecipientType.DRIVER).first()
    if existing is not None:
        return existing
    delivered = (
        db.session.query(func.count(BatchStop.id))
        .filter(BatchStop.batch_id == int(batch.id), BatchStop.status == StopStatus.DELIVERED)
        .scalar()
    ) or 0
    if delivered <= 0:
        return None
    row = Payout(
        recipient_id=int(batch.driver_id),
        recipient_type=RecipientType.DRIVER,
        batch_id=int(batch.id),
        amount_minor=driver_payout_minor(delivered),
        status=PayoutStatus.PENDING,
    )
    db.session.add(row)
    db.session.flush()
    logger.info("driver_payout_materialized batch_id=%s deliveries=%s amount_minor=%s", batch.id, delivered, row.amount_minor)
    return row


def _check_forward(row: Payout, target: str) -> None:
    allowed = PayoutStatus.ALLOWED.get(row.status, set())
    if target not in allowed:
        raise InvalidTransition(
            f"payout cannot move {row.status}->{target}",
            {"payout_id": int(row.id), "status": row.status},
        )


def mark_payout_completed(payout_id: int, reference: str | None = None, *, actor_id: int | None = None) -> Payout:
    row = lock_row(Payout, payout_id, label="payout")
    if row.status == PayoutStatus.COMPLETED:
        return row
    _check_forward(row, PayoutStatus.COMPLETED)
    row.status = PayoutStatus.COMPLETED
    row.transfer_reference = (reference or "").strip()[:120] or row.transfer_reference
    row.failure_reason = None
    row.completed_at = datetime.utcnow()
    log_event(
        "payout_completed",
        actor_user_id=actor_id,
        subject_type="payout",
        subject_id=row.id,
        metadata={"reference": row.transfer_reference, "amount_minor": row.amount_minor},
    )
    commit_or_conflict()
    return row


def mark_payout_failed(payout_id: int, reason: str, *, actor_id: int | None = None) -> Payout:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("failure reason is required", {"payout_id": payout_id})
    row = lock_row(Payout, payout_id, label="payout")
    _check_forward(row, PayoutStatus.FAILED)
    row.status = PayoutStatus.FAILED
    row.failure_reason = reason[:240]
    log_event(
        "payout_failed",
        actor_user_id=actor_id,
        subject_type="payout",
        subject_id=row.id,
        severity="WARN",
        metadata={"reason": row.failure_reason, "attempts": row.attempts},
    )
    commit_or_conflict()
    logger.warning("payout_failed payout_id=%s reason=%s", row.id, row.failure_reason)
    return row


def list_payout_queue(status: str | None = None, limit: int = 100) -> list[Payout]:
    q = Payout.query
    if status:
        if status not in PayoutStatus.ALLOWED:
            raise ValidationError("unknown payout status", {"status": status})
        q = q.filter(Payout.status == status)
    return q.order_by(Payout.created_at.asc(), Payout.id.asc()).limit(max(1, min(int(limit), 500))).all()


def reconcile_ledger(limit: int | None = None) -> dict:
    """Check every delivered order's fee rows against its subtotal.

    Read-only. Reports orders with missing fees, fees that do not sum to
    the subtotal, and farmer payouts that disagree with the farmer share.
    """
    q = Order.query.filter(Order.status == OrderStatus.DELIVERED).order_by(Order.id.asc())
    if limit:
        q = q.limit(int(limit))
    checked = 0
    mismatches = []
    for order in q.all():
        checked += 1
        fees = {f.fee_type: f for f in TransactionFee.query.filter_by(order_id=int(order.id)).all()}
        if set(fees) != set(FeeType.ALL):
            mismatches.append({"order_id": int(order.id), "problem": "missing_fee_rows", "found": sorted(fees)})
            continue
        total = sum(int(f.amount_minor) for f in fees.values())
        if total != int(order.subtotal_minor or 0):
            mismatches.append(
                {
                    "order_id": int(order.id),
                    "problem": "fee_sum_mismatch",
                    "fees_minor": total,
                    "subtotal_minor": int(order.subtotal_minor or 0),
                }
            )
            continue
        farmer_payout = Payout.query.filter_by(order_id=int(order.id), recipient_type=RecipientType.FARMER).first()
        if farmer_payout is None or int(farmer_payout.amount_minor) != int(fees[FeeType.FARMER_SHARE].amount_minor):
            mismatches.append({"order_id": int(order.id), "problem": "farmer_payout_mismatch"})
    return {"ok": not mismatches, "checked": checked, "mismatches": mismatches}
