from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from orderflow.core.config import WHATSAPP_FALLBACK_TEMPLATE
from orderflow.core.database import SessionLocal
from orderflow.core.errors import OrderFlowError, WindowExpiredError
from orderflow.fsm.messages import render_payment_confirmed
from orderflow.services.event_bus import EventBus
from orderflow.whatsapp.gateway import OutboundMessage, TenantMessagingGateway

logger = logging.getLogger(__name__)


def _with_session(session_factory: Callable[[], Session], handler):
    def wrapper(payload: dict) -> None:
        db = session_factory()
        try:
            handler(db, payload)
        finally:
            db.close()

    return wrapper


def _log_order_created(payload: dict) -> None:
    logger.info(
        "order created %s",
        payload.get("order_number"),
        extra={"tenant_id": payload.get("tenant_id"), "order_id": payload.get("order_id")},
    )


def _log_status_changed(payload: dict) -> None:
    logger.info(
        "order status %s -> %s",
        payload.get("previous_status"),
        payload.get("status"),
        extra={"tenant_id": payload.get("tenant_id"), "order_id": payload.get("order_id")},
    )


def register_event_handlers(
    bus: EventBus,
    gateway: TenantMessagingGateway,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    fallback_template: str = WHATSAPP_FALLBACK_TEMPLATE,
) -> None:
    def send_payment_confirmation(db: Session, payload: dict) -> None:
        phone = payload.get("customer_phone")
        if not phone:
            return
        tenant_id = payload["tenant_id"]
        body = render_payment_confirmed(payload.get("order_number") or str(payload["order_id"]))
        try:
            gateway.send(db, tenant_id, OutboundMessage(to=phone, body=body))
        except WindowExpiredError:
            try:
                gateway.send_template(db, tenant_id, to=phone, template_name=fallback_template)
            except OrderFlowError as exc:
                logger.error("payment confirmation template not sent: %s", exc, extra={"order_id": payload["order_id"]})
        except OrderFlowError as exc:
            logger.error("payment confirmation not sent: %s", exc, extra={"order_id": payload["order_id"]})

    bus.subscribe("order.created", _log_order_created)
    bus.subscribe("order.status.changed", _log_status_changed)
    bus.subscribe("order.paid", _with_session(session_factory, send_payment_confirmation))
