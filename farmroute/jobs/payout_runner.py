from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_

from farmroute.errors import EngineError
from farmroute.extensions import db
from farmroute.integrations.payments.base import PaymentsProvider
from farmroute.integrations.payments.factory import build_payments_provider
from farmroute.models import Payout, PayoutStatus, RefundInstruction, RefundStatus, User
from farmroute.services.dispute_service import send_refund_instruction
from farmroute.services.payout_service import mark_payout_completed, mark_payout_failed
from farmroute.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def _now():
    return datetime.utcnow()


def _is_due(row: Payout, max_attempts: int) -> bool:
    if row.status == PayoutStatus.PENDING:
        return True
    return row.status == PayoutStatus.FAILED and int(row.attempts or 0) < int(max_attempts)


def _due_payout_ids(limit: int, max_attempts: int) -> list[int]:
    rows = (
        db.session.query(Payout.id)
        .filter(
            or_(
                Payout.status == PayoutStatus.PENDING,
                (Payout.status == PayoutStatus.FAILED) & (Payout.attempts < int(max_attempts)),
            )
        )
        .order_by(Payout.id.asc())
        .limit(int(limit))
        .all()
    )
    return [int(r[0]) for r in rows]


def _claim_payout(payout_id: int, max_attempts: int) -> Payout | None:
    # rows held by an overlapping sweep are skipped, rows it already settled are re-checked
    row = Payout.query.filter_by(id=int(payout_id)).with_for_update(skip_locked=True).first()
    if row is None or not _is_due(row, max_attempts):
        db.session.rollback()
        return None
    return row


def _transfer_one(row: Payout, provider: PaymentsProvider) -> str:
    row.attempts = int(row.attempts or 0) + 1
    if int(row.amount_minor or 0) <= 0:
        mark_payout_completed(row.id, "zero-amount")
        return "completed"
    recipient = db.session.get(User, int(row.recipient_id))
    destination = (getattr(recipient, "payout_account_ref", None) or "").strip()
    if not destination:
        mark_payout_failed(row.id, "recipient has no payout account")
        return "failed"
    try:
        result = provider.transfer(
            amount_minor=int(row.amount_minor),
            destination=destination,
            idempotency_key=f"payout-{int(row.id)}-{int(row.attempts)}",
            metadata={"payout_id": int(row.id), "recipient_type": row.recipient_type},
        )
    except EngineError as e:
        mark_payout_failed(row.id, e.message)
        return "failed"
    mark_payout_completed(row.id, result.reference)
    return "completed"


def process_pending_payouts(
    *,
    limit: int = 100,
    provider: PaymentsProvider | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> dict:
    """Move pending (and retryable failed) payouts through the transfer provider.

    Each payout is committed on its own so one bad row never blocks the rest.
    """
    started_at = _now()
    provider = provider or build_payments_provider()
    processed = 0
    completed = 0
    failed = 0
    errors = 0

    for payout_id in _due_payout_ids(limit, max_attempts):
        row = _claim_payout(payout_id, max_attempts)
        if row is None:
            continue
        processed += 1
        try:
            outcome = _transfer_one(row, provider)
        except EngineError as e:
            db.session.rollback()
            errors += 1
            logger.warning("payout_sweep_error payout_id=%s err=%s", payout_id, e)
            continue
        if outcome == "completed":
            completed += 1
        else:
            failed += 1

    result = {
        "ok": errors == 0,
        "processed": processed,
        "completed": completed,
        "failed": failed,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name="payout_runner",
        ok=errors == 0,
        started_at=started_at,
        processed=processed,
        error=None if errors == 0 else f"errors={errors}",
    )
    logger.info("payout_sweep processed=%s completed=%s failed=%s errors=%s", processed, completed, failed, errors)
    return result


def retry_refund_instructions(
    *,
    limit: int = 100,
    provider: PaymentsProvider | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> dict:
    started_at = _now()
    rows = (
        RefundInstruction.query.filter(
            RefundInstruction.status.in_((RefundStatus.PENDING, RefundStatus.FAILED)),
            RefundInstruction.attempts < int(max_attempts),
        )
        .order_by(RefundInstruction.id.asc())
        .limit(int(limit))
        .all()
    )
    sent = 0
    for row in rows:
        if send_refund_instruction(row, provider=provider).status == RefundStatus.SENT:
            sent += 1
    result = {
        "ok": True,
        "processed": len(rows),
        "sent": sent,
        "failed": len(rows) - sent,
        "ts": _now().isoformat(),
    }
    record_job_run(job_name="refund_retry", ok=True, started_at=started_at, processed=len(rows))
    return result
