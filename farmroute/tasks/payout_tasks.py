from __future__ import annotations

import json
import os
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


def _retry_countdown(retries: int) -> int:
    # exponential backoff, capped at 15 minutes
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _sweep_limit() -> int:
    try:
        limit = int((os.getenv("PAYOUT_SWEEP_LIMIT") or "100").strip() or 100)
    except ValueError:
        limit = 100
    return max(1, min(limit, 500))


def _max_attempts() -> int:
    return int(current_app.config.get("PAYOUT_MAX_ATTEMPTS") or 3)


def _run_with_retry(task, task_name: str, job, trace_id: str):
    started = time.perf_counter()
    limit = _sweep_limit()
    max_attempts = _max_attempts()
    try:
        result = job(limit=limit, max_attempts=max_attempts)
        _task_log(
            task_name,
            status="ok" if bool(result.get("ok")) else "partial",
            started_at=started,
            trace_id=trace_id,
            limit=limit,
            max_attempts=max_attempts,
            processed=result.get("processed", 0),
        )
        return result
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(task_name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise


@shared_task(
    bind=True,
    name="farmroute.tasks.payout_tasks.process_pending_payouts",
    max_retries=3,
)
def process_pending_payouts_task(self, *, trace_id: str = ""):
    from farmroute.jobs.payout_runner import process_pending_payouts

    return _run_with_retry(self, "process_pending_payouts", process_pending_payouts, trace_id)


@shared_task(
    bind=True,
    name="farmroute.tasks.payout_tasks.retry_refund_instructions",
    max_retries=3,
)
def retry_refund_instructions_task(self, *, trace_id: str = ""):
    from farmroute.jobs.payout_runner import retry_refund_instructions

    return _run_with_retry(self, "retry_refund_instructions", retry_refund_instructions, trace_id)
