from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

WEBHOOK_OBJECT = "whatsapp_business_account"


@dataclass(frozen=True)
class InboundMessage:
    provider_line_id: str | None
    sender: str
    type: str
    body: str
    timestamp: str | None
    provider_message_id: str
    contact_name: str | None = None


@dataclass(frozen=True)
class StatusUpdate:
    provider_line_id: str | None
    provider_message_id: str | None
    status: str | None
    recipient: str | None
    errors: list[dict[str, Any]]


def parse_cloud_webhook(payload: dict[str, Any]) -> tuple[list[InboundMessage], list[StatusUpdate]]:
    messages: list[InboundMessage] = []
    statuses: list[StatusUpdate] = []
    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            phone_number_id = metadata.get("phone_number_id")

            contacts = value.get("contacts") or []
            contact_name = None
            if contacts:
                contact_name = ((contacts[0].get("profile") or {}).get("name")) or None

            for msg in value.get("messages", []) or []:
                message_id = msg.get("id")
                from_number = msg.get("from")
                if not message_id or not from_number:
                    continue
                msg_type = msg.get("type") or "text"
                body = ""
                if msg_type == "text":
                    body = ((msg.get("text") or {}).get("body")) or ""
                messages.append(
                    InboundMessage(
                        provider_line_id=phone_number_id,
                        sender=from_number,
                        type=msg_type,
                        body=body.strip(),
                        timestamp=msg.get("timestamp"),
                        provider_message_id=message_id,
                        contact_name=contact_name,
                    )
                )

            for status in value.get("statuses", []) or []:
                statuses.append(
                    StatusUpdate(
                        provider_line_id=phone_number_id,
                        provider_message_id=status.get("id"),
                        status=status.get("status"),
                        recipient=status.get("recipient_id"),
                        errors=list(status.get("errors") or []),
                    )
                )
    return messages, statuses


SENSITIVE_KEYS = {"access_token", "verify_token", "webhook_secret", "authorization", "token", "client_secret"}


def _mask_value(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "****"
    return f"****{text[-4:]}"


def sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _sanitize_value(key, inner) for key, inner in value.items()}
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    def _sanitize_value(key: str, value: Any) -> Any:
        if key.lower() in SENSITIVE_KEYS:
            return _mask_value(value)
        return _sanitize(value)

    return _sanitize(payload)


def safe_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)
