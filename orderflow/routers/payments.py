import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from orderflow.container import Container
from orderflow.core.database import get_db
from orderflow.core.errors import NotFoundError, ValidationError
from orderflow.deps import get_container, get_current_tenant
from orderflow.models.order import Order
from orderflow.models.payment_provider import PaymentProviderConfig
from orderflow.models.tenant import Tenant
from orderflow.payments.configs import (
    create_provider_config,
    load_credentials,
    provider_to_dict,
    set_primary,
)
from orderflow.services.order_events import emit_order_paid
from orderflow.services.orders import mark_order_paid

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


class ProviderConfigCreate(BaseModel):
    provider: str
    provider_name: str
    credentials: Dict[str, Any]
    webhook_secret: Optional[str] = None
    test_mode: bool = True
    min_amount_cents: Optional[int] = Field(None, ge=0)
    max_amount_cents: Optional[int] = Field(None, ge=0)
    supported_currencies: List[str] = Field(default_factory=lambda: ["ILS"])
    fee_percentage: float = Field(0, ge=0, le=100)
    fixed_fee_cents: int = Field(0, ge=0)
    make_primary: bool = False


@router.get("/providers")
def list_providers(
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    configs = (
        db.query(PaymentProviderConfig)
        .filter(PaymentProviderConfig.tenant_id == tenant.id)
        .order_by(PaymentProviderConfig.id.asc())
        .all()
    )
    return {"providers": [provider_to_dict(config) for config in configs]}


@router.post("/providers", status_code=201)
def create_provider(
    payload: ProviderConfigCreate,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        config = create_provider_config(
            db,
            container.encryption,
            tenant_id=tenant.id,
            **payload.model_dump(),
        )
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return provider_to_dict(config)


@router.post("/providers/{config_id}/primary")
def make_primary(
    config_id: int,
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    try:
        config = set_primary(db, tenant.id, config_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return provider_to_dict(config)


def _parse_body(body: bytes, content_type: str) -> Dict[str, Any]:
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    try:
        data = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Malformed payload") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Malformed payload")
    return data


def _handle_payment_webhook(
    db: Session,
    container: Container,
    *,
    tenant_id: int,
    provider: str,
    headers: Dict[str, str],
    body: bytes,
) -> Dict[str, Any]:
    config = (
        db.query(PaymentProviderConfig)
        .filter(
            PaymentProviderConfig.tenant_id == tenant_id,
            PaymentProviderConfig.provider == provider,
            PaymentProviderConfig.is_active.is_(True),
        )
        .order_by(PaymentProviderConfig.is_primary.desc())
        .first()
    )
    if not config:
        raise HTTPException(status_code=404, detail="Payment provider not configured")
    try:
        adapter = container.payments.get(provider)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    verified = adapter.verify_webhook(
        headers=headers,
        body=body,
        secret=config.webhook_secret,
        credentials=load_credentials(config, container.encryption),
        test_mode=bool(config.test_mode),
    )
    if not verified:
        logger.warning("payment webhook signature rejected", extra={"tenant_id": tenant_id, "provider": provider})
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = adapter.parse_event(_parse_body(body, headers.get("content-type", "")))
    if event.status == "ignored" or event.order_id is None:
        return {"status": "ignored"}

    order = db.query(Order).filter(Order.id == event.order_id, Order.tenant_id == tenant_id).first()
    if not order:
        logger.warning("payment webhook for unknown order", extra={"tenant_id": tenant_id, "order_id": event.order_id})
        raise HTTPException(status_code=404, detail="Order not found")

    if event.status == "failed":
        # The customer can still pay through the same link.
        logger.info(
            "payment failed",
            extra={
                "tenant_id": tenant_id,
                "order_id": order.id,
                "provider": provider,
                "payment_status": order.payment_status,
            },
        )
        return {"status": "failed"}

    if not mark_order_paid(order, event.transaction_id):
        return {"status": "already_paid"}
    container.sessions.end_for_order(db, order)
    db.commit()
    db.refresh(order)
    logger.info("payment completed", extra={"tenant_id": tenant_id, "order_id": order.id, "provider": provider})
    emit_order_paid(order)
    return {"status": "paid", "order_id": order.id}


@router.post("/webhook/{tenant_id}/{provider}")
async def payment_webhook(
    tenant_id: int,
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    body = await request.body()
    return await run_in_threadpool(
        _handle_payment_webhook,
        db,
        container,
        tenant_id=tenant_id,
        provider=provider,
        headers=dict(request.headers),
        body=body,
    )
