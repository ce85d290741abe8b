from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

from orderflow.core.config import PUBLIC_BASE_URL
from orderflow.core.errors import ProviderError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-signature"


@dataclass(frozen=True)
class PaymentLinkRequest:
    order_id: int
    order_number: str
    amount_cents: int
    currency: str
    customer_contact: str
    description: str


@dataclass(frozen=True)
class PaymentEvent:
    order_id: int | None
    transaction_id: str | None
    # "paid", "failed" or "ignored"
    status: str


class PaymentAdapter(Protocol):
    provider: str

    def create_link(self, credentials: Mapping[str, Any], request: PaymentLinkRequest, *, test_mode: bool) -> str:
        ...

    def verify_webhook(
        self,
        *,
        headers: Mapping[str, str],
        body: bytes,
        secret: str | None,
        credentials: Mapping[str, Any],
        test_mode: bool,
    ) -> bool:
        ...

    def parse_event(self, payload: Mapping[str, Any]) -> PaymentEvent:
        ...


def major_units(amount_cents: int) -> str:
    return f"{amount_cents / 100:.2f}"


def parse_order_id(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class BasePaymentAdapter:
    provider = ""

    def __init__(self, *, return_base_url: str = PUBLIC_BASE_URL) -> None:
        self.return_base_url = return_base_url.rstrip("/")

    def success_url(self, request: PaymentLinkRequest) -> str:
        return f"{self.return_base_url}/payments/success?order={request.order_id}"

    def cancel_url(self, request: PaymentLinkRequest) -> str:
        return f"{self.return_base_url}/payments/cancel?order={request.order_id}"

    def _require(self, credentials: Mapping[str, Any], *keys: str) -> list[str]:
        missing = [key for key in keys if not credentials.get(key)]
        if missing:
            raise ProviderError(f"Missing credentials: {', '.join(missing)}", provider=self.provider, code="config")
        return [str(credentials[key]) for key in keys]


class HttpPaymentAdapter(BasePaymentAdapter):
    """Shared plumbing for adapters that talk to a provider over HTTP."""

    def __init__(self, http: httpx.Client, *, return_base_url: str = PUBLIC_BASE_URL) -> None:
        super().__init__(return_base_url=return_base_url)
        self.http = http

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self.http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.provider} request failed: {exc}", provider=self.provider, code="network") from exc

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.provider} returned a non-JSON response",
                provider=self.provider,
                code=response.status_code,
            ) from exc
        return data if isinstance(data, dict) else {"data": data}

    def verify_webhook(
        self,
        *,
        headers: Mapping[str, str],
        body: bytes,
        secret: str | None,
        credentials: Mapping[str, Any],
        test_mode: bool,
    ) -> bool:
        # Callback URLs for these providers are registered with a shared secret;
        # the relay signs the raw body with it.
        signature = get_header(headers, SIGNATURE_HEADER)
        if not secret or not signature:
            return False
        return hmac.compare_digest(hmac_sha256_hex(secret, body), signature.strip().lower())


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
