from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.models.customer import Customer


def get_or_create_customer(db: Session, *, tenant_id: int, phone: str, name: str | None = None) -> Customer:
    customer = (
        db.query(Customer)
        .filter(Customer.tenant_id == tenant_id, Customer.phone == phone)
        .first()
    )
    if customer:
        if name and not customer.name:
            customer.name = name
        return customer

    customer = Customer(tenant_id=tenant_id, phone=phone, name=name or "", source="whatsapp")
    try:
        with db.begin_nested():
            db.add(customer)
    except IntegrityError:
        # Created concurrently by another delivery from the same sender.
        customer = (
            db.query(Customer)
            .filter(Customer.tenant_id == tenant_id, Customer.phone == phone)
            .one()
        )
    return customer
