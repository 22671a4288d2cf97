from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from farmroute.errors import ConcurrencyConflict, NotFound
from farmroute.extensions import db

logger = logging.getLogger(__name__)


def lock_row(model, row_id, *, label: str | None = None):
    """SELECT ... FOR UPDATE a single row by primary key (no-op lock on SQLite)."""
    try:
        pk = int(row_id)
    except (TypeError, ValueError):
        pk = None
    row = model.query.filter_by(id=pk).with_for_update().first() if pk is not None else None
    if row is None:
        name = label or model.__tablename__.rstrip("s")
        raise NotFound(f"{name} not found", {f"{name}_id": row_id})
    return row


def flush_or_conflict() -> None:
    try:
        db.session.flush()
    except (StaleDataError, IntegrityError) as e:
        db.session.rollback()
        logger.info("flush_conflict err=%s", e)
        raise ConcurrencyConflict("concurrent update detected, retry the operation") from e


def commit_or_conflict() -> None:
    try:
        db.session.commit()
    except (StaleDataError, IntegrityError) as e:
        db.session.rollback()
        logger.info("commit_conflict err=%s", e)
        raise ConcurrencyConflict("concurrent update detected, retry the operation") from e
