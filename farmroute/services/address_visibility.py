"""Progressive address disclosure for batch stops.

A driver sees a stop's street address only after the box for that stop
has been scanned onto the vehicle. The ZIP code stays visible so routes
can still be planned by region. Admins always see the full address.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import update

from farmroute.errors import Forbidden, NotFound
from farmroute.extensions import db
from farmroute.models import BatchStop, DeliveryBatch, UserRole
from farmroute.utils.actors import as_actor

WITHHELD_PLACEHOLDER = "Address available after pickup scan"


def _stop(stop_or_id) -> BatchStop:
    if isinstance(stop_or_id, BatchStop):
        return stop_or_id
    stop = db.session.get(BatchStop, int(stop_or_id)) if stop_or_id is not None else None
    if stop is None:
        raise NotFound("stop not found", {"stop_id": stop_or_id})
    return stop


def is_address_visible(stop_or_id, actor) -> bool:
    stop = _stop(stop_or_id)
    if as_actor(actor).is_privileged:
        return True
    return stop.address_visible_at is not None


def open_address_gate(stop: BatchStop, *, at: datetime | None = None) -> tuple[bool, datetime]:
    """Set address_visible_at if it is still unset.

    The conditional UPDATE makes the first loaded scan the only writer; a
    later or concurrent caller gets (False, <existing timestamp>).
    Does not commit.
    """
    stamp = at or datetime.utcnow()
    result = db.session.execute(
        update(BatchStop)
        .where(BatchStop.id == int(stop.id), BatchStop.address_visible_at.is_(None))
        .values(address_visible_at=stamp)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(stop, ["address_visible_at"])
    applied = (result.rowcount or 0) == 1
    return applied, stop.address_visible_at


def _check_can_view(stop: BatchStop, actor) -> None:
    actor = as_actor(actor)
    if actor.is_privileged:
        return
    if actor.role != UserRole.DRIVER:
        raise Forbidden("only the assigned driver can view stop addresses", {"stop_id": int(stop.id)})
    batch = db.session.get(DeliveryBatch, int(stop.batch_id))
    if batch is None or batch.driver_id is None or int(batch.driver_id) != int(actor.id or 0):
        raise Forbidden("stop belongs to a batch assigned to another driver", {"stop_id": int(stop.id)})


def present_stop(stop: BatchStop, actor) -> dict:
    data = stop.to_dict()
    if is_address_visible(stop, actor):
        data.update(stop.address_dict())
        data["address_visible"] = True
    else:
        data.update(
            {
                "street_address": WITHHELD_PLACEHOLDER,
                "city": "",
                "state": "",
                "zip_code": stop.zip_code or "",
                "address_visible": False,
            }
        )
    return data


def get_stop_address(stop_id, actor) -> dict:
    stop = _stop(stop_id)
    _check_can_view(stop, actor)
    return present_stop(stop, actor)
