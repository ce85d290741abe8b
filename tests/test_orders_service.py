from datetime import date, datetime, timedelta, timezone

import pytest

from orderflow.core.errors import NotFoundError, ValidationError
from orderflow.fsm.context import CartLine, dump_cart
from orderflow.models.conversation import ConversationSession
from orderflow.models.order import Order
from orderflow.services.customers import get_or_create_customer
from orderflow.services.orders import (
    allocate_order_number,
    create_manual_order,
    format_order_number,
    get_order,
    list_orders,
    mark_order_paid,
    materialize,
    update_order_status,
    update_payment_status,
)
from tests.fixtures_data import CUSTOMER_PHONE, build_session_factory, seed_tenant


def _db():
    db = build_session_factory()()
    seed_tenant(db)
    seed_tenant(db, tenant_id=2, owner_id="owner-2")
    return db


def _session_with_cart(db, lines, *, tenant_id=1, phone=CUSTOMER_PHONE):
    customer = get_or_create_customer(db, tenant_id=tenant_id, phone=phone, name="Dana")
    now = datetime.now(timezone.utc)
    session = ConversationSession(
        tenant_id=tenant_id,
        customer_id=customer.id,
        phone=phone,
        current_step="cart",
        cart=dump_cart(lines),
        last_message_at=now,
        expires_at=now + timedelta(hours=24),
    )
    db.add(session)
    db.flush()
    return session


def _cola(quantity=1):
    return CartLine(product_id=3, name="Cola", quantity=quantity, unit_base_price_cents=800)


def test_order_number_format():
    assert format_order_number(date(2026, 3, 7), 42) == "ORD-20260307-0042"


def test_sequence_is_per_tenant_and_day_and_strictly_increasing():
    db = _db()
    today = date(2026, 10, 18)

    numbers = [allocate_order_number(db, 1, today) for _ in range(3)]
    other_tenant = allocate_order_number(db, 2, today)
    next_day = allocate_order_number(db, 1, today + timedelta(days=1))

    assert numbers == ["ORD-20261018-0001", "ORD-20261018-0002", "ORD-20261018-0003"]
    assert other_tenant == "ORD-20261018-0001"
    assert next_day == "ORD-20261019-0001"


def test_materialize_copies_cart_into_pending_order():
    db = _db()
    line = CartLine(
        product_id=1,
        name="Margherita",
        unit_base_price_cents=4500,
        variant_modifiers_cents=1500,
        variants=["Large", "Stuffed"],
    )
    session = _session_with_cart(db, [line, _cola(2)])

    order = materialize(db, session, source_message_id="wamid.1")
    db.commit()

    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.source == "chat"
    assert order.subtotal_cents == 6000 + 1600
    assert order.total_cents == order.subtotal_cents
    assert order.customer_phone == CUSTOMER_PHONE
    assert order.customer_name == "Dana"
    assert [item.name for item in order.items] == ["Margherita", "Cola"]
    assert order.items[0].unit_price_cents == 6000
    assert order.items[0].variants == ["Large", "Stuffed"]
    assert order.items[1].subtotal_cents == 1600
    assert order.timeline[0]["status"] == "pending"


def test_materialize_rejects_empty_cart_without_creating_rows():
    db = _db()
    session = _session_with_cart(db, [])

    with pytest.raises(ValidationError):
        materialize(db, session)

    assert db.query(Order).count() == 0


def test_status_update_appends_timeline_and_timestamps():
    db = _db()
    order = materialize(db, _session_with_cart(db, [_cola()]))

    previous = update_order_status(order, "delivered", actor="owner-1", note="Left at the door")

    assert previous == "pending"
    assert order.completed_at is not None
    assert order.timeline[-1]["status"] == "delivered"
    assert order.timeline[-1]["note"] == "Left at the door"
    with pytest.raises(ValidationError):
        update_order_status(order, "teleported", actor="owner-1")


def test_mark_paid_confirms_once():
    db = _db()
    order = materialize(db, _session_with_cart(db, [_cola()]))

    assert mark_order_paid(order, "txn_1") is True
    assert mark_order_paid(order, "txn_1") is False
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.confirmed_at is not None
    assert order.timeline[-1]["note"] == "Payment completed. Transaction ID: txn_1"


def test_payment_status_is_limited_to_the_four_lifecycle_values():
    db = _db()
    order = materialize(db, _session_with_cart(db, [_cola()]))

    with pytest.raises(ValidationError):
        update_payment_status(order, "failed")
    update_payment_status(order, "refunded")

    assert order.payment_status == "refunded"


def test_manual_order_is_sourced_manual():
    db = _db()
    customer = get_or_create_customer(db, tenant_id=1, phone="972500000001")

    order = create_manual_order(db, tenant_id=1, customer=customer, lines=[_cola(3)], actor="owner-1", notes="Phone order")

    assert order.source == "manual"
    assert order.total_cents == 2400
    assert order.notes == "Phone order"
    assert order.timeline[0]["actor"] == "owner-1"


def test_get_order_is_tenant_scoped():
    db = _db()
    order = materialize(db, _session_with_cart(db, [_cola()]))
    db.commit()

    assert get_order(db, 1, order.id).id == order.id
    with pytest.raises(NotFoundError):
        get_order(db, 2, order.id)


def test_list_orders_filters_groups_and_paginates():
    db = _db()
    orders = []
    for index in range(3):
        session = _session_with_cart(db, [_cola()], phone=f"97250000000{index}")
        orders.append(materialize(db, session))
    update_order_status(orders[0], "delivered", actor="owner-1")
    update_order_status(orders[1], "preparing", actor="owner-1")
    db.commit()

    in_progress, _ = list_orders(db, 1, status="in_progress")
    completed, _ = list_orders(db, 1, status="completed")
    by_phone, _ = list_orders(db, 1, search="9725000000002")
    page, pagination = list_orders(db, 1, page=2, limit=2)
    other_tenant, _ = list_orders(db, 2)

    assert {order.id for order in in_progress} == {orders[1].id, orders[2].id}
    assert [order.id for order in completed] == [orders[0].id]
    assert [order.id for order in by_phone] == [orders[2].id]
    assert len(page) == 1
    assert pagination == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert other_tenant == []
