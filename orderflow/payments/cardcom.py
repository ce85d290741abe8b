from __future__ import annotations

from typing import Any, Mapping

from orderflow.core.errors import ProviderError
from orderflow.payments.base import HttpPaymentAdapter, PaymentEvent, PaymentLinkRequest, parse_order_id

CARDCOM_TEST_URL = "https://test.cardcom.solutions"
CARDCOM_LIVE_URL = "https://secure.cardcom.solutions"


class CardcomAdapter(HttpPaymentAdapter):
    provider = "cardcom"

    def create_link(self, credentials: Mapping[str, Any], request: PaymentLinkRequest, *, test_mode: bool) -> str:
        terminal, username, api_key = self._require(credentials, "terminal_number", "username", "api_key")
        base_url = CARDCOM_TEST_URL if test_mode else CARDCOM_LIVE_URL
        response = self._send(
            "POST",
            f"{base_url}/api/v11/LowProfile/Create",
            json={
                "TerminalNumber": terminal,
                "UserName": username,
                "APIKey": api_key,
                "ReturnValue": str(request.order_id),
                "SuccessRedirectUrl": self.success_url(request),
                "FailedRedirectUrl": self.cancel_url(request),
                "Operation": {
                    "Amount": request.amount_cents / 100,
                    "Currency": 1 if request.currency.upper() == "ILS" else 2,
                    "Description": request.description or "Order",
                },
                "Customer": {"Phone": request.customer_contact},
                "CustomFields": {"OrderId": str(request.order_id)},
            },
        )
        data = self._json(response)
        if str(data.get("ResponseCode")) != "0":
            raise ProviderError(
                data.get("Description") or "Cardcom payment link creation failed",
                provider=self.provider,
                code=data.get("ResponseCode"),
            )
        url = data.get("Url")
        if not url:
            raise ProviderError("Cardcom response had no Url", provider=self.provider)
        return url

    def parse_event(self, payload: Mapping[str, Any]) -> PaymentEvent:
        custom = payload.get("CustomFields") or {}
        order_id = parse_order_id(custom.get("OrderId") or payload.get("ReturnValue"))
        transaction_id = payload.get("InternalDealNumber") or payload.get("TranzactionId")
        status = "paid" if str(payload.get("ResponseCode")) == "0" else "failed"
        return PaymentEvent(order_id, str(transaction_id) if transaction_id is not None else None, status)
