from __future__ import annotations

import logging
from typing import Any, Mapping

import stripe

from orderflow.core.errors import ProviderError
from orderflow.payments.base import (
    BasePaymentAdapter,
    PaymentEvent,
    PaymentLinkRequest,
    get_header,
    parse_order_id,
)

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

_PAID_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
_FAILED_EVENTS = {"checkout.session.async_payment_failed", "checkout.session.expired"}


class StripeAdapter(BasePaymentAdapter):
    """Stripe Checkout sessions through the official SDK.

    Keys are per tenant, so every call passes ``api_key`` explicitly and the
    module-level ``stripe.api_key`` is never set.
    """

    provider = "stripe"

    def create_link(self, credentials: Mapping[str, Any], request: PaymentLinkRequest, *, test_mode: bool) -> str:
        key_name = "test_api_key" if test_mode else "api_key"
        (api_key,) = self._require(credentials, key_name)
        try:
            session = stripe.checkout.Session.create(
                api_key=api_key,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": request.currency.lower(),
                            "product_data": {"name": request.description or "Order"},
                            "unit_amount": request.amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                metadata={
                    "order_id": str(request.order_id),
                    "order_number": request.order_number,
                    "customer_phone": request.customer_contact,
                },
                success_url=self.success_url(request),
                cancel_url=self.cancel_url(request),
                idempotency_key=f"order-{request.order_id}-checkout",
            )
        except stripe.StripeError as exc:
            logger.warning(
                "stripe checkout failed: %s",
                exc,
                extra={"order_id": request.order_id, "error_type": type(exc).__name__},
            )
            raise ProviderError(
                exc.user_message or str(exc) or "Stripe checkout creation failed",
                provider=self.provider,
                code=exc.code or exc.http_status,
            ) from exc

        if not session.url:
            raise ProviderError("Stripe response had no url", provider=self.provider)
        return session.url

    def verify_webhook(
        self,
        *,
        headers: Mapping[str, str],
        body: bytes,
        secret: str | None,
        credentials: Mapping[str, Any],
        test_mode: bool,
    ) -> bool:
        header = get_header(headers, "stripe-signature")
        if not secret or not header:
            return False
        try:
            stripe.Webhook.construct_event(body, header, secret, tolerance=SIGNATURE_TOLERANCE_SECONDS)
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe webhook signature invalid: %s", exc)
            return False
        except ValueError:
            logger.warning("stripe webhook payload is not valid JSON")
            return False
        return True

    def parse_event(self, payload: Mapping[str, Any]) -> PaymentEvent:
        event_type = payload.get("type")
        obj = ((payload.get("data") or {}).get("object")) or {}
        order_id = parse_order_id((obj.get("metadata") or {}).get("order_id"))
        transaction_id = obj.get("payment_intent") or obj.get("id")
        if event_type in _PAID_EVENTS and obj.get("payment_status", "paid") == "paid":
            return PaymentEvent(order_id, transaction_id, "paid")
        if event_type in _FAILED_EVENTS:
            return PaymentEvent(order_id, transaction_id, "failed")
        return PaymentEvent(order_id, transaction_id, "ignored")
