from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from orderflow.core.config import WHATSAPP_VERIFY_TOKEN
from orderflow.core.errors import AuthError
from orderflow.fsm.engine import ConversationEngine
from orderflow.models.message_log import MessageLog
from orderflow.models.messaging_account import TenantMessagingAccount
from orderflow.models.processed_message import ProcessedMessage
from orderflow.models.tenant import Tenant
from orderflow.whatsapp.base import WEBHOOK_OBJECT, InboundMessage, StatusUpdate, parse_cloud_webhook, safe_json

logger = logging.getLogger(__name__)


class InboundMessageGateway:
    """Turns Cloud API webhook deliveries into engine turns.

    ``ingest`` never raises for a single bad message: the provider redelivers
    anything that is not acknowledged, so failures are logged and skipped.
    """

    def __init__(self, engine: ConversationEngine, *, verify_token: str = WHATSAPP_VERIFY_TOKEN) -> None:
        self.engine = engine
        self.verify_token = verify_token

    def verify(self, db: Session, *, mode: str | None, token: str | None, challenge: str | None) -> str:
        if mode != "subscribe" or not token:
            raise AuthError("Invalid webhook verification request")
        if self.verify_token and token == self.verify_token:
            return challenge or ""
        account = (
            db.query(TenantMessagingAccount.id)
            .filter(TenantMessagingAccount.webhook_verify_token == token)
            .first()
        )
        if account is None:
            raise AuthError("Invalid verify token")
        return challenge or ""

    def ingest(self, db: Session, payload: dict[str, Any]) -> dict[str, int]:
        summary = {"received": 0, "processed": 0, "duplicates": 0, "dropped": 0, "statuses": 0}
        if payload.get("object") != WEBHOOK_OBJECT:
            logger.info("webhook ignored, object=%s", payload.get("object"))
            return summary

        messages, statuses = parse_cloud_webhook(payload)
        summary["received"] = len(messages)
        for message in messages:
            try:
                result = self._handle_message(db, message)
            except Exception:
                db.rollback()
                logger.exception(
                    "inbound message failed",
                    extra={"message_id": message.provider_message_id, "phone_number_id": message.provider_line_id},
                )
                result = "dropped"
            summary[result] += 1

        for status in statuses:
            self._record_status(status)
            summary["statuses"] += 1
        return summary

    def _resolve_account(self, db: Session, phone_number_id: str | None) -> TenantMessagingAccount | None:
        if not phone_number_id:
            return None
        return (
            db.query(TenantMessagingAccount)
            .filter(TenantMessagingAccount.phone_number_id == phone_number_id)
            .first()
        )

    def _handle_message(self, db: Session, message: InboundMessage) -> str:
        if db.get(ProcessedMessage, message.provider_message_id) is not None:
            logger.info("duplicate delivery", extra={"message_id": message.provider_message_id})
            return "duplicates"

        account = self._resolve_account(db, message.provider_line_id)
        if account is None:
            logger.warning(
                "no tenant for line, message dropped",
                extra={"phone_number_id": message.provider_line_id, "message_id": message.provider_message_id},
            )
            return "dropped"
        tenant = db.get(Tenant, account.tenant_id)
        if tenant is None or not tenant.is_active:
            logger.warning("inactive tenant, message dropped", extra={"tenant_id": account.tenant_id})
            return "dropped"

        account.last_message_received_at = datetime.now(timezone.utc)
        db.add(
            MessageLog(
                tenant_id=tenant.id,
                direction="in",
                to_phone=account.phone_number_id,
                from_phone=message.sender,
                message_type=message.type,
                payload_json=safe_json({"text": message.body, "contact_name": message.contact_name}),
                status="received",
                provider_message_id=message.provider_message_id,
            )
        )
        db.commit()

        if message.type != "text" or not message.body:
            logger.info(
                "non-text message skipped, type=%s",
                message.type,
                extra={"tenant_id": tenant.id, "message_id": message.provider_message_id},
            )
            return "dropped"

        outcome = self.engine.handle_message(
            db,
            tenant=tenant,
            phone=message.sender,
            text=message.body,
            message_id=message.provider_message_id,
            contact_name=message.contact_name,
        )
        return "duplicates" if outcome.status == "duplicate" else "processed"

    def _record_status(self, status: StatusUpdate) -> None:
        if status.status == "failed":
            logger.warning(
                "outbound message failed: %s",
                status.errors,
                extra={"message_id": status.provider_message_id, "phone_number_id": status.provider_line_id},
            )
            return
        logger.info(
            "outbound message %s",
            status.status,
            extra={"message_id": status.provider_message_id, "phone_number_id": status.provider_line_id},
        )
