from __future__ import annotations

from typing import Any, Mapping

from orderflow.core.errors import ProviderError
from orderflow.payments.base import HttpPaymentAdapter, PaymentEvent, PaymentLinkRequest, major_units, parse_order_id

MESHULAM_SANDBOX_URL = "https://sandbox.meshulam.co.il"
MESHULAM_LIVE_URL = "https://secure.meshulam.co.il"


class MeshulamAdapter(HttpPaymentAdapter):
    provider = "meshulam"

    def create_link(self, credentials: Mapping[str, Any], request: PaymentLinkRequest, *, test_mode: bool) -> str:
        page_code, api_key = self._require(credentials, "page_code", "api_key")
        base_url = MESHULAM_SANDBOX_URL if test_mode else MESHULAM_LIVE_URL
        response = self._send(
            "POST",
            f"{base_url}/api/light/server",
            json={
                "pageCode": page_code,
                "apiKey": api_key,
                "action": "createPaymentProcess",
                "sum": major_units(request.amount_cents),
                "currency": request.currency.upper(),
                "description": request.description or "Order",
                "successUrl": self.success_url(request),
                "cancelUrl": self.cancel_url(request),
                "customFields": {
                    "orderId": str(request.order_id),
                    "customerPhone": request.customer_contact,
                },
            },
        )
        data = self._json(response)
        if data.get("status") != "success":
            raise ProviderError(
                data.get("message") or "Meshulam payment link creation failed",
                provider=self.provider,
                code=data.get("err") or response.status_code,
            )
        url = (data.get("data") or {}).get("paymentUrl")
        if not url:
            raise ProviderError("Meshulam response had no paymentUrl", provider=self.provider)
        return url

    def parse_event(self, payload: Mapping[str, Any]) -> PaymentEvent:
        order_id = parse_order_id((payload.get("customFields") or {}).get("orderId"))
        transaction_id = payload.get("transactionId")
        status = "paid" if payload.get("status") == "success" else "failed"
        return PaymentEvent(order_id, transaction_id, status)
