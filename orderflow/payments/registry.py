from __future__ import annotations

import httpx

from orderflow.core.errors import NotFoundError
from orderflow.payments.base import PaymentAdapter
from orderflow.payments.cardcom import CardcomAdapter
from orderflow.payments.meshulam import MeshulamAdapter
from orderflow.payments.paypal import PayPalAdapter
from orderflow.payments.stripe_checkout import StripeAdapter
from orderflow.payments.tranzila import TranzilaAdapter


class PaymentAdapterRegistry:
    def __init__(self) -> None:
        self._adapters: dict[str, PaymentAdapter] = {}

    def register(self, adapter: PaymentAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: str) -> PaymentAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise NotFoundError(f"Payment provider {provider} not supported")
        return adapter

    def providers(self) -> list[str]:
        return sorted(self._adapters)


def build_default_registry(http: httpx.Client) -> PaymentAdapterRegistry:
    registry = PaymentAdapterRegistry()
    registry.register(StripeAdapter())
    for adapter_cls in (PayPalAdapter, TranzilaAdapter, MeshulamAdapter, CardcomAdapter):
        registry.register(adapter_cls(http))
    return registry
