from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from orderflow.core.errors import ProviderError
from orderflow.payments.base import (
    HttpPaymentAdapter,
    PaymentEvent,
    PaymentLinkRequest,
    get_header,
    major_units,
    parse_order_id,
)

logger = logging.getLogger(__name__)

PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"
PAYPAL_LIVE_URL = "https://api-m.paypal.com"

_TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalAdapter(HttpPaymentAdapter):
    provider = "paypal"

    def _base_url(self, test_mode: bool) -> str:
        return PAYPAL_SANDBOX_URL if test_mode else PAYPAL_LIVE_URL

    def _access_token(self, credentials: Mapping[str, Any], test_mode: bool) -> str:
        id_key, secret_key = ("test_client_id", "test_client_secret") if test_mode else ("client_id", "client_secret")
        client_id, client_secret = self._require(credentials, id_key, secret_key)
        response = self._send(
            "POST",
            f"{self._base_url(test_mode)}/v1/oauth2/token",
            auth=(client_id, client_secret),
            data={"grant_type": "client_credentials"},
        )
        data = self._json(response)
        token = data.get("access_token")
        if response.status_code >= 400 or not token:
            raise ProviderError(
                data.get("error_description") or "PayPal authentication failed",
                provider=self.provider,
                code=data.get("error") or response.status_code,
            )
        return token

    def create_link(self, credentials: Mapping[str, Any], request: PaymentLinkRequest, *, test_mode: bool) -> str:
        token = self._access_token(credentials, test_mode)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.order_number,
                    "custom_id": str(request.order_id),
                    "description": request.description or "Order",
                    "amount": {"currency_code": request.currency.upper(), "value": major_units(request.amount_cents)},
                }
            ],
            "application_context": {
                "return_url": self.success_url(request),
                "cancel_url": self.cancel_url(request),
            },
        }
        response = self._send(
            "POST",
            f"{self._base_url(test_mode)}/v2/checkout/orders",
            headers={"Authorization": f"Bearer {token}"},
            json=body,
        )
        data = self._json(response)
        if response.status_code >= 400:
            raise ProviderError(
                data.get("message") or "PayPal payment link creation failed",
                provider=self.provider,
                code=data.get("name") or response.status_code,
            )
        for link in data.get("links") or []:
            if link.get("rel") in {"approve", "payer-action"} and link.get("href"):
                return link["href"]
        raise ProviderError("PayPal approval URL not found", provider=self.provider)

    def verify_webhook(
        self,
        *,
        headers: Mapping[str, str],
        body: bytes,
        secret: str | None,
        credentials: Mapping[str, Any],
        test_mode: bool,
    ) -> bool:
        """Delegates to PayPal's verify-webhook-signature API; ``secret`` is the webhook id."""
        webhook_id = secret or credentials.get("webhook_id")
        if not webhook_id:
            return False
        transmission = {field: get_header(headers, name) for field, name in _TRANSMISSION_HEADERS.items()}
        if not all(transmission.values()):
            return False
        try:
            event = json.loads(body)
        except ValueError:
            return False
        try:
            token = self._access_token(credentials, test_mode)
            response = self._send(
                "POST",
                f"{self._base_url(test_mode)}/v1/notifications/verify-webhook-signature",
                headers={"Authorization": f"Bearer {token}"},
                json={"webhook_id": webhook_id, **transmission, "webhook_event": event},
            )
            data = self._json(response)
        except ProviderError:
            logger.warning("paypal webhook verification unavailable", exc_info=True)
            return False
        return data.get("verification_status") == "SUCCESS"

    def parse_event(self, payload: Mapping[str, Any]) -> PaymentEvent:
        event_type = payload.get("event_type")
        resource = payload.get("resource") or {}
        custom_id = resource.get("custom_id")
        if custom_id is None:
            units = resource.get("purchase_units") or [{}]
            custom_id = units[0].get("custom_id")
        order_id = parse_order_id(custom_id)
        transaction_id = resource.get("id")
        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            return PaymentEvent(order_id, transaction_id, "paid")
        if event_type in {"PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"}:
            return PaymentEvent(order_id, transaction_id, "failed")
        return PaymentEvent(order_id, transaction_id, "ignored")
