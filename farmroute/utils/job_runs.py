from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from farmroute.extensions import db
from farmroute.models import JobRun

logger = logging.getLogger(__name__)


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    processed: int = 0,
    error: str | None = None,
) -> JobRun | None:
    duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    row = JobRun(
        job_name=(job_name or "unknown").strip()[:64],
        ran_at=datetime.utcnow(),
        ok=bool(ok),
        duration_ms=duration_ms,
        processed=int(processed or 0),
        error=(error or "")[:1000] or None,
    )
    try:
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning("job_run_write_failed job=%s err=%s", job_name, e)
        return None
