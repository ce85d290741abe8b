from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from orderflow.core.config import PAYMENT_FALLBACK_URL
from orderflow.core.errors import NotFoundError, OutOfRangeError, ProviderError
from orderflow.models.order import Order
from orderflow.payments.base import PaymentLinkRequest
from orderflow.payments.configs import can_process_amount, get_primary_config, load_credentials, record_transaction
from orderflow.payments.registry import PaymentAdapterRegistry
from orderflow.services.encryption import EncryptionService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentLinkResult:
    url: str
    fallback: bool


class PaymentLinkBroker:
    def __init__(
        self,
        registry: PaymentAdapterRegistry,
        encryption: EncryptionService,
        *,
        fallback_url: str = PAYMENT_FALLBACK_URL,
    ) -> None:
        self.registry = registry
        self.encryption = encryption
        self.fallback_url = fallback_url

    def create_link(self, db: Session, tenant_id: int, request: PaymentLinkRequest) -> str:
        """Creates a provider link and stores it on the order.

        Raises OutOfRangeError before any network call when the amount is outside
        the primary config's bounds, ProviderError when the adapter fails.
        """
        config = get_primary_config(db, tenant_id)
        if not can_process_amount(config, request.amount_cents):
            raise OutOfRangeError(request.amount_cents, config.min_amount_cents, config.max_amount_cents)

        order = db.query(Order).filter(Order.id == request.order_id, Order.tenant_id == tenant_id).first()
        if not order:
            raise NotFoundError("Order not found")

        adapter = self.registry.get(config.provider)
        url = adapter.create_link(
            load_credentials(config, self.encryption),
            request,
            test_mode=bool(config.test_mode),
        )

        order.payment_link_url = url
        order.payment_provider_id = config.id
        record_transaction(config, request.amount_cents)
        db.flush()
        logger.info(
            "payment link created",
            extra={"tenant_id": tenant_id, "order_id": order.id, "provider": config.provider},
        )
        return url

    def create_link_or_fallback(self, db: Session, order: Order, *, customer_contact: str) -> PaymentLinkResult:
        request = PaymentLinkRequest(
            order_id=order.id,
            order_number=order.order_number,
            amount_cents=order.total_cents,
            currency=order.currency,
            customer_contact=customer_contact,
            description=f"Order {order.order_number}",
        )
        try:
            with db.begin_nested():
                url = self.create_link(db, order.tenant_id, request)
            return PaymentLinkResult(url=url, fallback=False)
        except (ProviderError, OutOfRangeError, NotFoundError) as exc:
            logger.warning(
                "payment link failed, using fallback: %s",
                exc,
                extra={"tenant_id": order.tenant_id, "order_id": order.id, "provider": getattr(exc, "provider", None)},
            )
        except Exception:
            logger.exception(
                "payment link failed, using fallback",
                extra={"tenant_id": order.tenant_id, "order_id": order.id},
            )
        url = self.fallback_link(order)
        order.payment_link_url = url
        return PaymentLinkResult(url=url, fallback=True)

    def fallback_link(self, order: Order) -> str:
        return self.fallback_url.format(order_id=order.id, order_number=order.order_number, tenant_id=order.tenant_id)
