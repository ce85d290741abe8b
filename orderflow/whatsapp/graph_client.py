from __future__ import annotations

import logging
from typing import Any

import httpx

from orderflow.core.config import META_API_VERSION, META_APP_ID, META_APP_SECRET, META_GRAPH_BASE_URL

logger = logging.getLogger(__name__)


class GraphApiError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        subcode: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.transient = transient


class GraphApiClient:
    """Thin request/response wrapper over the Meta Graph API.

    The underlying ``httpx.Client`` is built once at startup (with its timeout)
    and passed in; this class never opens its own connections.
    """

    def __init__(
        self,
        http: httpx.Client,
        *,
        base_url: str = META_GRAPH_BASE_URL,
        api_version: str = META_API_VERSION,
        app_id: str = META_APP_ID,
        app_secret: str = META_APP_SECRET,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.app_id = app_id
        self.app_secret = app_secret

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = self.http.request(method, self._url(path), headers=headers, params=params, json=json)
        except httpx.HTTPError as exc:
            raise GraphApiError(f"Graph API request failed: {exc}", transient=True) from exc

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.status_code >= 400 or "error" in data:
            error = data.get("error") or {}
            raise GraphApiError(
                error.get("message") or f"Graph API HTTP {response.status_code}",
                status_code=response.status_code,
                code=error.get("code"),
                subcode=error.get("error_subcode"),
                transient=response.status_code >= 500 or response.status_code == 429,
            )
        return data

    def send_message(self, *, token: str, phone_number_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"{phone_number_id}/messages", token=token, json=payload)

    def get_phone_number(self, *, token: str, phone_number_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            phone_number_id,
            token=token,
            params={"fields": "id,display_phone_number,verified_name,quality_rating"},
        )

    def exchange_code(self, code: str) -> dict[str, Any]:
        return self._request(
            "GET",
            "oauth/access_token",
            params={"client_id": self.app_id, "client_secret": self.app_secret, "code": code},
        )

    def get_business_accounts(self, *, token: str) -> list[dict[str, Any]]:
        data = self._request(
            "GET",
            "me",
            token=token,
            params={
                "fields": "whatsapp_business_accounts{id,name,phone_numbers{id,display_phone_number,verified_name}}"
            },
        )
        return list(((data.get("whatsapp_business_accounts") or {}).get("data")) or [])

    def subscribe_app(self, *, token: str, waba_id: str) -> dict[str, Any]:
        return self._request("POST", f"{waba_id}/subscribed_apps", token=token)
