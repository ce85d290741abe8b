from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import urlencode

from orderflow.payments.base import HttpPaymentAdapter, PaymentEvent, PaymentLinkRequest, major_units, parse_order_id


class TranzilaAdapter(HttpPaymentAdapter):
    """Hosted payment page addressed by terminal name; no API call is needed to build the link."""

    provider = "tranzila"

    def create_link(self, credentials: Mapping[str, Any], request: PaymentLinkRequest, *, test_mode: bool) -> str:
        (terminal,) = self._require(credentials, "terminal_name")
        params = {
            "supplier": terminal,
            "sum": major_units(request.amount_cents),
            "currency": "1" if request.currency.upper() == "ILS" else "2",
            "cred_type": "1",
            "order_id": str(request.order_id),
            "phone": request.customer_contact,
            "success_url_address": self.success_url(request),
            "fail_url_address": self.cancel_url(request),
        }
        if test_mode:
            params["test_mode"] = "1"
        return f"https://direct.tranzila.com/{terminal}/iframenew.php?{urlencode(params)}"

    def parse_event(self, payload: Mapping[str, Any]) -> PaymentEvent:
        order_id = parse_order_id(payload.get("order_id"))
        transaction_id = payload.get("transaction_id") or payload.get("index")
        status = "paid" if str(payload.get("response") or payload.get("Response") or "") == "000" else "failed"
        return PaymentEvent(order_id, transaction_id, status)
