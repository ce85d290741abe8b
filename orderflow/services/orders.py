from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.core.errors import NotFoundError, ValidationError
from orderflow.fsm.context import CartLine, load_cart
from orderflow.models.conversation import ConversationSession
from orderflow.models.customer import Customer
from orderflow.models.order import ORDER_SOURCES, ORDER_STATUSES, PAYMENT_STATUSES, Order
from orderflow.models.order_item import OrderItem
from orderflow.models.order_sequence import OrderSequence
from orderflow.services.pricing import cart_total

logger = logging.getLogger(__name__)

STATUS_GROUPS = {
    "in_progress": ("pending", "confirmed", "preparing", "ready", "out_for_delivery"),
    "completed": ("delivered", "cancelled"),
}
_SEQUENCE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timeline_entry(status: str, at: datetime, actor: str, note: str | None = None) -> Dict[str, Any]:
    return {"status": status, "timestamp": at.isoformat(), "actor": actor, "note": note}


def _append_timeline(order: Order, entry: Dict[str, Any]) -> None:
    # Reassign so the JSON column is flagged dirty.
    order.timeline = [*(order.timeline or []), entry]


def format_order_number(day: date, sequence: int) -> str:
    return f"ORD-{day:%Y%m%d}-{sequence:04d}"


def allocate_order_number(db: Session, tenant_id: int, day: date) -> str:
    """Increments the (tenant, day) counter row in place; the row lock serializes concurrent checkouts."""
    for _ in range(_SEQUENCE_ATTEMPTS):
        updated = (
            db.query(OrderSequence)
            .filter(OrderSequence.tenant_id == tenant_id, OrderSequence.day == day)
            .update({OrderSequence.last_value: OrderSequence.last_value + 1}, synchronize_session=False)
        )
        if updated:
            break
        try:
            with db.begin_nested():
                db.add(OrderSequence(tenant_id=tenant_id, day=day, last_value=1))
            break
        except IntegrityError:
            # Another checkout created today's row first; increment it instead.
            continue
    else:
        raise RuntimeError(f"Could not allocate order number for tenant {tenant_id} on {day}")

    value = (
        db.query(OrderSequence.last_value)
        .filter(OrderSequence.tenant_id == tenant_id, OrderSequence.day == day)
        .scalar()
    )
    return format_order_number(day, int(value))


def compute_total(subtotal_cents: int, tax_cents: int = 0, fee_cents: int = 0, discount_cents: int = 0) -> int:
    return subtotal_cents + tax_cents + fee_cents - discount_cents


def _create_order(
    db: Session,
    *,
    tenant_id: int,
    lines: list[CartLine],
    customer: Customer | None,
    customer_phone: str,
    customer_name: str | None,
    source: str,
    actor: str,
    note: str,
    fee_cents: int = 0,
    notes: str | None = None,
    source_message_id: str | None = None,
) -> Order:
    if not lines:
        raise ValidationError("Cart is empty")
    if source not in ORDER_SOURCES:
        raise ValidationError(f"Invalid order source: {source}")

    now = _utcnow()
    order_number = allocate_order_number(db, tenant_id, now.date())
    subtotal = cart_total(lines)

    order = Order(
        tenant_id=tenant_id,
        customer_id=customer.id if customer else None,
        order_number=order_number,
        customer_name=customer_name or (customer.name if customer else None),
        customer_phone=customer_phone,
        subtotal_cents=subtotal,
        fee_cents=fee_cents,
        total_cents=compute_total(subtotal, fee_cents=fee_cents),
        currency=lines[0].currency,
        status="pending",
        payment_status="pending",
        source=source,
        timeline=[_timeline_entry("pending", now, actor, note)],
        notes=notes,
        source_message_id=source_message_id,
    )
    for position, line in enumerate(lines):
        order.items.append(
            OrderItem(
                position=position,
                product_id=line.product_id,
                name=line.name,
                quantity=line.quantity,
                unit_price_cents=line.unit_base_price_cents + line.variant_modifiers_cents,
                subtotal_cents=line.subtotal_cents,
                currency=line.currency,
                variants=list(line.variants),
            )
        )
    db.add(order)
    db.flush()
    logger.info(
        "order materialized",
        extra={"tenant_id": tenant_id, "order_id": order.id},
    )
    return order


def materialize(db: Session, session: ConversationSession, *, source_message_id: str | None = None) -> Order:
    """Turns the session cart into a pending order. The caller owns the transaction."""
    lines = load_cart(session.cart)
    customer = db.get(Customer, session.customer_id) if session.customer_id else None
    return _create_order(
        db,
        tenant_id=session.tenant_id,
        lines=lines,
        customer=customer,
        customer_phone=session.phone,
        customer_name=customer.name if customer else None,
        source="chat",
        actor="system",
        note="Order created via chat",
        source_message_id=source_message_id,
    )


def create_manual_order(
    db: Session,
    *,
    tenant_id: int,
    customer: Customer,
    lines: list[CartLine],
    actor: str,
    customer_name: str | None = None,
    notes: str | None = None,
) -> Order:
    return _create_order(
        db,
        tenant_id=tenant_id,
        lines=lines,
        customer=customer,
        customer_phone=customer.phone,
        customer_name=customer_name,
        source="manual",
        actor=actor,
        note="Order created manually",
        notes=notes,
    )


def update_order_status(
    order: Order,
    status: str,
    *,
    actor: str,
    note: str | None = None,
) -> str | None:
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid order status: {status}")
    previous = order.status
    now = _utcnow()
    order.status = status
    _append_timeline(order, _timeline_entry(status, now, actor, note))
    if status == "confirmed" and not order.confirmed_at:
        order.confirmed_at = now
    elif status == "delivered":
        order.completed_at = now
    elif status == "cancelled":
        order.cancelled_at = now
    return previous


def update_payment_status(order: Order, payment_status: str) -> None:
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {payment_status}")
    order.payment_status = payment_status


def mark_order_paid(order: Order, transaction_id: str | None) -> bool:
    """Returns False when the order was already paid (replayed payment webhook)."""
    if order.payment_status == "paid":
        return False
    now = _utcnow()
    order.payment_status = "paid"
    order.payment_transaction_id = transaction_id
    order.status = "confirmed"
    order.confirmed_at = now
    _append_timeline(
        order,
        _timeline_entry("confirmed", now, "system", f"Payment completed. Transaction ID: {transaction_id}"),
    )
    return True


def get_order(db: Session, tenant_id: int, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id, Order.tenant_id == tenant_id).first()
    if not order:
        raise NotFoundError("Order not found")
    return order


def list_orders(
    db: Session,
    tenant_id: int,
    *,
    status: str | None = None,
    search: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], Dict[str, int]]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)

    query = db.query(Order).filter(Order.tenant_id == tenant_id)
    if status:
        group: Iterable[str] = STATUS_GROUPS.get(status, (status,))
        query = query.filter(Order.status.in_(tuple(group)))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Order.order_number.ilike(pattern),
                Order.customer_name.ilike(pattern),
                Order.customer_phone.ilike(pattern),
            )
        )
    if start_date:
        query = query.filter(Order.created_at >= start_date)
    if end_date:
        query = query.filter(Order.created_at <= end_date)

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    pagination = {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)}
    return orders, pagination


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "tenant_id": order.tenant_id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "items": [
            {
                "product_id": item.product_id,
                "name": item.name,
                "quantity": item.quantity,
                "unit_price_cents": item.unit_price_cents,
                "subtotal_cents": item.subtotal_cents,
                "currency": item.currency,
                "variants": list(item.variants or []),
            }
            for item in order.items
        ],
        "subtotal_cents": order.subtotal_cents,
        "tax_cents": order.tax_cents,
        "fee_cents": order.fee_cents,
        "discount_cents": order.discount_cents,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "status": order.status,
        "payment_status": order.payment_status,
        "source": order.source,
        "timeline": list(order.timeline or []),
        "payment_link_url": order.payment_link_url,
        "notes": order.notes,
        "confirmed_at": order.confirmed_at.isoformat() if order.confirmed_at else None,
        "completed_at": order.completed_at.isoformat() if order.completed_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }
