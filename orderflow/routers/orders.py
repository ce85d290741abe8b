from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from orderflow.core.database import get_db
from orderflow.core.errors import NotFoundError, ValidationError
from orderflow.deps import Identity, get_current_identity, get_current_tenant
from orderflow.models.tenant import Tenant
from orderflow.services.catalog import SqlCatalog
from orderflow.services.customers import get_or_create_customer
from orderflow.services.order_events import emit_order_created, emit_order_status_changed
from orderflow.services.orders import (
    create_manual_order,
    get_order,
    list_orders,
    order_to_dict,
    update_order_status,
    update_payment_status,
)
from orderflow.services.pricing import build_cart_line

router = APIRouter(prefix="/api", tags=["orders"])


class OrderUpdate(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
    notes: Optional[str] = None
    note: Optional[str] = None


class ManualOrderItem(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)
    variants: List[str] = Field(default_factory=list)


class ManualOrderCreate(BaseModel):
    customer_phone: str = Field(..., min_length=3)
    customer_name: Optional[str] = None
    items: List[ManualOrderItem] = Field(..., min_length=1)
    notes: Optional[str] = None


def _get_tenant_order(db: Session, tenant_id: int, order_id: int):
    try:
        return get_order(db, tenant_id, order_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Order not found") from exc


@router.get("/orders")
def list_tenant_orders(
    status: Optional[str] = None,
    search: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    orders, pagination = list_orders(
        db,
        tenant.id,
        status=status,
        search=search,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return {"orders": [order_to_dict(order) for order in orders], "pagination": pagination}


@router.post("/orders", status_code=201)
def create_order(
    payload: ManualOrderCreate,
    tenant: Tenant = Depends(get_current_tenant),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    catalog = SqlCatalog(db)
    lines = []
    for item in payload.items:
        product = catalog.get_product(tenant.id, item.product_id)
        if not product or not product.is_available:
            raise HTTPException(status_code=400, detail=f"Product {item.product_id} is not available")
        line = build_cart_line(product, item.variants)
        lines.append(line.model_copy(update={"quantity": item.quantity}))

    customer = get_or_create_customer(db, tenant_id=tenant.id, phone=payload.customer_phone, name=payload.customer_name)
    try:
        order = create_manual_order(
            db,
            tenant_id=tenant.id,
            customer=customer,
            lines=lines,
            actor=identity.user_id,
            customer_name=payload.customer_name,
            notes=payload.notes,
        )
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    db.refresh(order)
    emit_order_created(order)
    return order_to_dict(order)


@router.get("/orders/{order_id}")
def get_tenant_order(
    order_id: int,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    return order_to_dict(_get_tenant_order(db, tenant.id, order_id))


@router.put("/orders/{order_id}")
def update_tenant_order(
    order_id: int,
    payload: OrderUpdate,
    tenant: Tenant = Depends(get_current_tenant),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    order = _get_tenant_order(db, tenant.id, order_id)
    previous_status = None
    try:
        if payload.status:
            previous_status = update_order_status(order, payload.status, actor=identity.user_id, note=payload.note)
        if payload.payment_status:
            update_payment_status(order, payload.payment_status)
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.notes is not None:
        order.notes = payload.notes
    db.commit()
    db.refresh(order)

    if payload.status:
        emit_order_status_changed(order, previous_status)
    return order_to_dict(order)
