from __future__ import annotations

import logging
import secrets

from sqlalchemy.orm import Session

from orderflow.core.errors import ProviderError, ValidationError
from orderflow.models.messaging_account import TenantMessagingAccount
from orderflow.services.encryption import EncryptionService
from orderflow.whatsapp.graph_client import GraphApiClient, GraphApiError

logger = logging.getLogger(__name__)

SUBSCRIBED_EVENTS = ["messages", "message_status"]


def exchange_credentials(
    db: Session,
    *,
    client: GraphApiClient,
    encryption: EncryptionService,
    tenant_id: int,
    code: str,
) -> TenantMessagingAccount:
    """Exchanges an embedded-signup code and stores the tenant's WhatsApp line.

    Uses the first business account and its first phone number. Webhook
    subscription failures are logged; the credential is kept regardless.
    """
    if not code:
        raise ValidationError("Authorization code is required")

    try:
        token_data = client.exchange_code(code)
    except GraphApiError as exc:
        raise ProviderError(f"Token exchange failed: {exc.message}", provider="meta", code=exc.code) from exc
    access_token = token_data.get("access_token")
    if not access_token:
        raise ProviderError("Token exchange returned no access token", provider="meta")

    try:
        accounts = client.get_business_accounts(token=access_token)
    except GraphApiError as exc:
        raise ProviderError(f"Business discovery failed: {exc.message}", provider="meta", code=exc.code) from exc
    if not accounts:
        raise ValidationError("No WhatsApp Business Account found")
    waba = accounts[0]
    phone_numbers = ((waba.get("phone_numbers") or {}).get("data")) or []
    if not phone_numbers:
        raise ValidationError("No phone numbers found for the WhatsApp Business Account")
    phone = phone_numbers[0]

    account = (
        db.query(TenantMessagingAccount)
        .filter(TenantMessagingAccount.tenant_id == tenant_id)
        .first()
    )
    if account is None:
        account = TenantMessagingAccount(tenant_id=tenant_id)
        db.add(account)

    account.waba_id = waba["id"]
    account.phone_number_id = phone["id"]
    account.display_phone_number = phone.get("display_phone_number")
    account.display_name = phone.get("verified_name") or waba.get("name")
    account.access_token_encrypted = encryption.encrypt(access_token)
    account.token_type = "permanent"
    account.webhook_verify_token = account.webhook_verify_token or secrets.token_hex(16)
    account.subscribed_events = list(SUBSCRIBED_EVENTS)
    account.status = "active"
    account.error_message = None
    db.commit()
    db.refresh(account)

    try:
        client.subscribe_app(token=access_token, waba_id=account.waba_id)
    except GraphApiError as exc:
        logger.warning(
            "webhook subscription failed: %s",
            exc.message,
            extra={"tenant_id": tenant_id, "error_code": exc.code},
        )

    logger.info(
        "messaging account connected",
        extra={"tenant_id": tenant_id, "phone_number_id": account.phone_number_id},
    )
    return account
