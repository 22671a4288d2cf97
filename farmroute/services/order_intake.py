from __future__ import annotations

import logging
from datetime import date

from farmroute.errors import Forbidden, NotFound, ValidationError
from farmroute.extensions import db
from farmroute.models import DeliveryBatch, Order, OrderItem, OrderStatus, User, UserRole
from farmroute.services.concurrency import commit_or_conflict
from farmroute.utils.actors import as_actor
from farmroute.utils.events import log_event
from farmroute.utils.ledger import FLAT_DELIVERY_FEE, money_major_to_minor

logger = logging.getLogger(__name__)


def _user_with_role(user_id, roles: set, label: str) -> User:
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        raise ValidationError(f"{label}_id is required", {f"{label}_id": user_id}) from None
    user = db.session.get(User, uid)
    if user is None:
        raise NotFound(f"{label} not found", {f"{label}_id": uid})
    if (user.role or "") not in roles:
        raise ValidationError(f"user {uid} cannot act as {label}", {f"{label}_id": uid, "role": user.role})
    return user


def _parse_date(raw) -> date | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        raise ValidationError("delivery_date must be YYYY-MM-DD", {"delivery_date": raw}) from None


def register_order(
    *,
    actor,
    consumer_id,
    farmer_id,
    items: list,
    payment_authorized: bool,
    payment_reference: str | None = None,
    lead_farmer_id=None,
    delivery_date=None,
    delivery_fee=FLAT_DELIVERY_FEE,
) -> Order:
    """Accept a paid checkout as a pending order. The engine never charges."""
    actor = as_actor(actor)
    if not actor.is_privileged:
        raise Forbidden("orders are registered by the checkout service")
    if not payment_authorized:
        raise ValidationError("payment was not authorized", {"consumer_id": consumer_id})
    if not items:
        raise ValidationError("an order needs at least one line item")

    consumer = _user_with_role(consumer_id, {UserRole.CONSUMER}, "consumer")
    farmer = _user_with_role(farmer_id, {UserRole.FARMER, UserRole.LEAD_FARMER}, "farmer")
    lead = None
    if lead_farmer_id not in (None, ""):
        lead = _user_with_role(lead_farmer_id, {UserRole.LEAD_FARMER}, "lead_farmer")

    lines = []
    subtotal = 0
    for raw in items:
        try:
            quantity = int(raw.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        unit_minor = money_major_to_minor(raw.get("unit_price"))
        if quantity <= 0 or unit_minor < 0:
            raise ValidationError("line items need a positive quantity and a price", {"item": raw})
        subtotal += quantity * unit_minor
        lines.append(
            OrderItem(
                product_id=raw.get("product_id"),
                product_name=str(raw.get("product_name") or "")[:160],
                quantity=quantity,
                unit_price_minor=unit_minor,
            )
        )
    fee_minor = money_major_to_minor(delivery_fee)

    order = Order(
        consumer_id=int(consumer.id),
        farmer_id=int(farmer.id),
        lead_farmer_id=int(lead.id) if lead is not None else None,
        delivery_date=_parse_date(delivery_date),
        status=OrderStatus.PENDING,
        subtotal_minor=subtotal,
        delivery_fee_minor=fee_minor,
        total_minor=subtotal + fee_minor,
        payment_reference=(payment_reference or "").strip()[:120] or None,
    )
    order.items = lines
    db.session.add(order)
    db.session.flush()
    log_event(
        "order_registered",
        actor_user_id=actor.id,
        subject_type="order",
        subject_id=order.id,
        metadata={"subtotal_minor": subtotal, "items": len(lines)},
    )
    commit_or_conflict()
    logger.info("order_registered order_id=%s subtotal_minor=%s", order.id, subtotal)
    return order


def create_batch(*, actor, batch_number=None, delivery_date=None, collection_point_id=None, collection_point_name=None) -> DeliveryBatch:
    actor = as_actor(actor)
    if not actor.is_privileged:
        raise Forbidden("batches are created by admins")
    if batch_number in (None, ""):
        highest = db.session.query(db.func.max(DeliveryBatch.batch_number)).scalar()
        number = int(highest or 0) + 1
    else:
        try:
            number = int(batch_number)
        except (TypeError, ValueError):
            raise ValidationError("batch_number must be an integer", {"batch_number": batch_number}) from None
        if number < 1:
            raise ValidationError("batch_number must be positive", {"batch_number": number})
        if DeliveryBatch.query.filter_by(batch_number=number).first() is not None:
            raise ValidationError("batch_number already in use", {"batch_number": number})
    batch = DeliveryBatch(
        batch_number=number,
        delivery_date=_parse_date(delivery_date),
        collection_point_id=collection_point_id,
        collection_point_name=(collection_point_name or "").strip()[:160] or None,
    )
    db.session.add(batch)
    commit_or_conflict()
    return batch
