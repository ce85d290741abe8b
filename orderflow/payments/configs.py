from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

from sqlalchemy.orm import Session

from orderflow.core.errors import NotFoundError, ValidationError
from orderflow.models.payment_provider import PROVIDER_TYPES, PaymentProviderConfig
from orderflow.services.encryption import EncryptionService, mask


def can_process_amount(config: PaymentProviderConfig, amount_cents: int) -> bool:
    if not config.is_active:
        return False
    if config.min_amount_cents is not None and amount_cents < config.min_amount_cents:
        return False
    if config.max_amount_cents is not None and amount_cents > config.max_amount_cents:
        return False
    return True


def calculate_fee(config: PaymentProviderConfig, amount_cents: int) -> int:
    percentage = Decimal(str(config.fee_percentage or 0))
    fee = Decimal(amount_cents) * percentage / Decimal(100) + Decimal(config.fixed_fee_cents or 0)
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def load_credentials(config: PaymentProviderConfig, encryption: EncryptionService) -> Dict[str, Any]:
    return json.loads(encryption.decrypt(config.credentials_encrypted))


def get_primary_config(db: Session, tenant_id: int) -> PaymentProviderConfig:
    config = (
        db.query(PaymentProviderConfig)
        .filter(
            PaymentProviderConfig.tenant_id == tenant_id,
            PaymentProviderConfig.is_primary.is_(True),
            PaymentProviderConfig.is_active.is_(True),
        )
        .first()
    )
    if not config:
        raise NotFoundError(f"No primary payment provider for tenant {tenant_id}")
    return config


def set_primary(db: Session, tenant_id: int, config_id: int) -> PaymentProviderConfig:
    config = (
        db.query(PaymentProviderConfig)
        .filter(PaymentProviderConfig.id == config_id, PaymentProviderConfig.tenant_id == tenant_id)
        .first()
    )
    if not config:
        raise NotFoundError("Payment provider not found")
    if not config.is_active:
        raise ValidationError("Only an active payment provider can be primary")

    # Demote first so the partial unique index never sees two primaries.
    (
        db.query(PaymentProviderConfig)
        .filter(
            PaymentProviderConfig.tenant_id == tenant_id,
            PaymentProviderConfig.id != config_id,
            PaymentProviderConfig.is_primary.is_(True),
        )
        .update({PaymentProviderConfig.is_primary: False}, synchronize_session="fetch")
    )
    db.flush()
    config.is_primary = True
    db.commit()
    db.refresh(config)
    return config


def create_provider_config(
    db: Session,
    encryption: EncryptionService,
    *,
    tenant_id: int,
    provider: str,
    provider_name: str,
    credentials: Dict[str, Any],
    webhook_secret: str | None = None,
    test_mode: bool = True,
    min_amount_cents: int | None = None,
    max_amount_cents: int | None = None,
    supported_currencies: list[str] | None = None,
    fee_percentage: float = 0,
    fixed_fee_cents: int = 0,
    make_primary: bool = False,
) -> PaymentProviderConfig:
    if provider not in PROVIDER_TYPES:
        raise ValidationError(f"Unsupported payment provider: {provider}")
    if not credentials:
        raise ValidationError("Credentials are required")
    if min_amount_cents is not None and max_amount_cents is not None and min_amount_cents > max_amount_cents:
        raise ValidationError("min_amount_cents cannot exceed max_amount_cents")

    config = PaymentProviderConfig(
        tenant_id=tenant_id,
        provider=provider,
        provider_name=provider_name,
        credentials_encrypted=encryption.encrypt(json.dumps(credentials)),
        webhook_secret=webhook_secret,
        test_mode=test_mode,
        is_active=True,
        is_primary=False,
        supported_currencies=list(supported_currencies or ["ILS"]),
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
        fee_percentage=fee_percentage,
        fixed_fee_cents=fixed_fee_cents,
    )
    db.add(config)
    db.commit()
    db.refresh(config)

    has_primary = (
        db.query(PaymentProviderConfig.id)
        .filter(PaymentProviderConfig.tenant_id == tenant_id, PaymentProviderConfig.is_primary.is_(True))
        .first()
    )
    if make_primary or not has_primary:
        config = set_primary(db, tenant_id, config.id)
    return config


def record_transaction(config: PaymentProviderConfig, amount_cents: int) -> None:
    config.transaction_count = (config.transaction_count or 0) + 1
    config.total_volume_cents = (config.total_volume_cents or 0) + amount_cents
    config.last_transaction_at = datetime.now(timezone.utc)


def provider_to_dict(config: PaymentProviderConfig) -> Dict[str, Any]:
    return {
        "id": config.id,
        "provider": config.provider,
        "provider_name": config.provider_name,
        "test_mode": config.test_mode,
        "is_active": config.is_active,
        "is_primary": config.is_primary,
        "supported_currencies": list(config.supported_currencies or []),
        "min_amount_cents": config.min_amount_cents,
        "max_amount_cents": config.max_amount_cents,
        "fee_percentage": float(config.fee_percentage or 0),
        "fixed_fee_cents": config.fixed_fee_cents,
        "webhook_secret": mask(config.webhook_secret),
        "health_status": config.health_status,
        "transaction_count": config.transaction_count,
        "total_volume_cents": config.total_volume_cents,
        "last_transaction_at": config.last_transaction_at.isoformat() if config.last_transaction_at else None,
    }
