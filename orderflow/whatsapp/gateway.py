from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, NoReturn

from sqlalchemy.orm import Session

from orderflow.core.config import (
    HEALTH_CHECK_BACKOFF_SECONDS,
    HEALTH_CHECK_MAX_ATTEMPTS,
    WHATSAPP_TEMPLATE_LANGUAGE,
)
from orderflow.core.errors import AuthError, NotFoundError, ProviderError, SendError, WindowExpiredError
from orderflow.models.message_log import MessageLog
from orderflow.models.messaging_account import TenantMessagingAccount
from orderflow.services.encryption import EncryptionService
from orderflow.whatsapp.base import safe_json, sanitize_payload
from orderflow.whatsapp.graph_client import GraphApiClient, GraphApiError

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {190}
WINDOW_ERROR_CODES = {131047, 131049}
_WINDOW_PHRASES = ("more than 24 hours have passed", "outside of allowed window", "re-engagement message")


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    body: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_phone(phone: str) -> str:
    return phone.strip().lstrip("+")


def is_window_error(exc: GraphApiError) -> bool:
    if exc.code in WINDOW_ERROR_CODES:
        return True
    message = (exc.message or "").lower()
    return any(phrase in message for phrase in _WINDOW_PHRASES)


def is_auth_error(exc: GraphApiError) -> bool:
    return exc.code in AUTH_ERROR_CODES or exc.status_code == 401


class TenantMessagingGateway:
    """Sends on behalf of a tenant using its stored, encrypted WhatsApp credential.

    Sends are attempted exactly once. ``health_check`` is the only operation
    that retries, since it is a read.
    """

    def __init__(
        self,
        client: GraphApiClient,
        encryption: EncryptionService,
        *,
        health_check_attempts: int = HEALTH_CHECK_MAX_ATTEMPTS,
        backoff_seconds: float = HEALTH_CHECK_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.encryption = encryption
        self.health_check_attempts = max(health_check_attempts, 1)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def get_account(self, db: Session, tenant_id: int) -> TenantMessagingAccount:
        account = (
            db.query(TenantMessagingAccount)
            .filter(TenantMessagingAccount.tenant_id == tenant_id)
            .first()
        )
        if not account:
            raise NotFoundError(f"No messaging account for tenant {tenant_id}")
        return account

    def has_active_account(self, db: Session, tenant_id: int) -> bool:
        account = (
            db.query(TenantMessagingAccount)
            .filter(TenantMessagingAccount.tenant_id == tenant_id, TenantMessagingAccount.status == "active")
            .first()
        )
        return account is not None

    def get_account_status(self, db: Session, tenant_id: int) -> dict[str, Any]:
        account = (
            db.query(TenantMessagingAccount)
            .filter(TenantMessagingAccount.tenant_id == tenant_id)
            .first()
        )
        if not account:
            return {"connected": False}
        return {
            "connected": True,
            "status": account.status,
            "phone_number_id": account.phone_number_id,
            "display_phone_number": account.display_phone_number,
            "display_name": account.display_name,
            "quality_rating": account.quality_rating,
            "error_message": account.error_message,
            "last_health_check": account.last_health_check.isoformat() if account.last_health_check else None,
            "last_message_sent_at": account.last_message_sent_at.isoformat() if account.last_message_sent_at else None,
            "last_message_received_at": (
                account.last_message_received_at.isoformat() if account.last_message_received_at else None
            ),
        }

    def send(self, db: Session, tenant_id: int, message: OutboundMessage) -> str:
        payload = {
            "messaging_product": "whatsapp",
            "to": _normalize_phone(message.to),
            "type": "text",
            "text": {"preview_url": False, "body": message.body},
        }
        return self._deliver(db, tenant_id, payload, message_type="text")

    def send_template(
        self,
        db: Session,
        tenant_id: int,
        *,
        to: str,
        template_name: str,
        language_code: str = WHATSAPP_TEMPLATE_LANGUAGE,
        components: list[dict[str, Any]] | None = None,
    ) -> str:
        template: dict[str, Any] = {"name": template_name, "language": {"code": language_code}}
        if components:
            template["components"] = components
        payload = {
            "messaging_product": "whatsapp",
            "to": _normalize_phone(to),
            "type": "template",
            "template": template,
        }
        return self._deliver(db, tenant_id, payload, message_type="template", template_name=template_name)

    def _deliver(
        self,
        db: Session,
        tenant_id: int,
        payload: dict[str, Any],
        *,
        message_type: str,
        template_name: str | None = None,
    ) -> str:
        account = self.get_account(db, tenant_id)
        if account.status == "error":
            raise AuthError(account.error_message or "Messaging account credential is invalid")
        if account.status != "active":
            raise SendError(f"Messaging account is {account.status}", provider="whatsapp", code="account_inactive")

        token = self.encryption.decrypt(account.access_token_encrypted)
        try:
            data = self.client.send_message(token=token, phone_number_id=account.phone_number_id, payload=payload)
        except GraphApiError as exc:
            self._log(db, account, payload, message_type, template_name, status="failed", error=exc.message)
            self._raise_classified(db, account, exc)

        provider_message_id = ((data.get("messages") or [{}])[0]).get("id") or ""
        account.last_message_sent_at = _utcnow()
        self._log(
            db,
            account,
            payload,
            message_type,
            template_name,
            status="sent",
            provider_message_id=provider_message_id,
        )
        return provider_message_id

    def _raise_classified(self, db: Session, account: TenantMessagingAccount, exc: GraphApiError) -> NoReturn:
        if is_auth_error(exc):
            self._mark_error(db, account, "Access token expired or invalid")
            raise AuthError(exc.message) from exc
        if is_window_error(exc):
            logger.info(
                "messaging window expired",
                extra={"tenant_id": account.tenant_id, "error_code": exc.code},
            )
            raise WindowExpiredError(exc.message) from exc
        logger.warning(
            "whatsapp send failed: %s",
            exc.message,
            extra={"tenant_id": account.tenant_id, "error_code": exc.code, "status_code": exc.status_code},
        )
        raise SendError(exc.message, provider="whatsapp", code=exc.code) from exc

    def _mark_error(self, db: Session, account: TenantMessagingAccount, message: str) -> None:
        account.status = "error"
        account.error_message = message
        db.commit()
        logger.error(
            "messaging account degraded: %s",
            message,
            extra={"tenant_id": account.tenant_id, "phone_number_id": account.phone_number_id},
        )

    def health_check(self, db: Session, tenant_id: int) -> TenantMessagingAccount:
        account = self.get_account(db, tenant_id)
        token = self.encryption.decrypt(account.access_token_encrypted)

        last_error: GraphApiError | None = None
        for attempt in range(1, self.health_check_attempts + 1):
            try:
                data = self.client.get_phone_number(token=token, phone_number_id=account.phone_number_id)
            except GraphApiError as exc:
                last_error = exc
                if is_auth_error(exc):
                    account.last_health_check = _utcnow()
                    self._mark_error(db, account, "Access token expired or invalid")
                    raise AuthError(exc.message) from exc
                if not exc.transient or attempt >= self.health_check_attempts:
                    break
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "health check retry in %.2fs: %s",
                    delay,
                    exc.message,
                    extra={"tenant_id": tenant_id, "attempt": attempt},
                )
                self._sleep(delay)
                continue

            account.status = "active"
            account.error_message = None
            account.display_phone_number = data.get("display_phone_number") or account.display_phone_number
            account.display_name = data.get("verified_name") or account.display_name
            account.quality_rating = data.get("quality_rating")
            account.last_health_check = _utcnow()
            db.commit()
            return account

        message = last_error.message if last_error else "Health check failed"
        account.error_message = message
        account.last_health_check = _utcnow()
        db.commit()
        logger.warning(
            "health check failed after %d attempts: %s",
            self.health_check_attempts,
            message,
            extra={"tenant_id": tenant_id, "account_status": account.status},
        )
        raise ProviderError(
            message,
            provider="whatsapp",
            code=last_error.code if last_error else None,
        )

    def _log(
        self,
        db: Session,
        account: TenantMessagingAccount,
        payload: dict[str, Any],
        message_type: str,
        template_name: str | None,
        *,
        status: str,
        provider_message_id: str | None = None,
        error: str | None = None,
    ) -> None:
        db.add(
            MessageLog(
                tenant_id=account.tenant_id,
                direction="out",
                to_phone=payload.get("to"),
                from_phone=account.phone_number_id,
                template_name=template_name,
                message_type=message_type,
                payload_json=safe_json(sanitize_payload(payload)),
                status=status,
                error=error,
                provider_message_id=provider_message_id,
            )
        )
        db.commit()
