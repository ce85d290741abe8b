from __future__ import annotations

from orderflow.models.order import Order
from orderflow.services.event_bus import event_bus


def build_order_payload(order: Order, previous_status: str | None = None) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "tenant_id": order.tenant_id,
        "status": order.status,
        "previous_status": previous_status,
        "payment_status": order.payment_status,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "total_cents": int(order.total_cents or 0),
        "currency": order.currency,
    }


def emit_order_created(order: Order) -> None:
    event_bus.emit("order.created", build_order_payload(order))


def emit_order_status_changed(order: Order, previous_status: str | None) -> None:
    if previous_status == order.status:
        return
    event_bus.emit("order.status.changed", build_order_payload(order, previous_status=previous_status))


def emit_order_paid(order: Order) -> None:
    event_bus.emit("order.paid", build_order_payload(order))
