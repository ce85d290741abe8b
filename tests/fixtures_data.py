from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import orderflow.models  # noqa: F401
from orderflow.core.database import Base, configure_sqlite_transactions
from orderflow.core.errors import WindowExpiredError
from orderflow.models.catalog import Product, VariantGroup, VariantOption
from orderflow.models.messaging_account import TenantMessagingAccount
from orderflow.models.tenant import Tenant
from orderflow.services.encryption import EncryptionService

TEST_ENCRYPTION_KEY = "0f" * 32
TEST_ENCRYPTION_IV = "a1" * 16
CUSTOMER_PHONE = "972501234567"
PHONE_NUMBER_ID = "109876543210"


def build_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite_transactions(engine)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def build_encryption() -> EncryptionService:
    return EncryptionService(TEST_ENCRYPTION_KEY, TEST_ENCRYPTION_IV)


def seed_tenant(db, *, tenant_id: int = 1, owner_id: str = "owner-1", welcome_message: str | None = None) -> Tenant:
    tenant = Tenant(id=tenant_id, name=f"Tenant {tenant_id}", owner_id=owner_id, welcome_message=welcome_message)
    db.add(tenant)
    db.commit()
    return tenant


def seed_menu(db, *, tenant_id: int = 1) -> dict[str, Product]:
    margherita = Product(
        tenant_id=tenant_id,
        category="Pizza",
        name="Margherita",
        base_price_cents=4500,
        sort_order=1,
    )
    size = VariantGroup(name="Size", sort_order=1)
    size.options = [
        VariantOption(label="Small", price_modifier_cents=0, sort_order=1),
        VariantOption(label="Large", price_modifier_cents=1000, sort_order=2),
    ]
    crust = VariantGroup(name="Crust", sort_order=2)
    crust.options = [
        VariantOption(label="Thin", price_modifier_cents=0, sort_order=1),
        VariantOption(label="Stuffed", price_modifier_cents=500, sort_order=2),
    ]
    margherita.variant_groups = [size, crust]

    pepperoni = Product(
        tenant_id=tenant_id,
        category="Pizza",
        name="Pepperoni",
        base_price_cents=5200,
        sort_order=2,
    )
    cola = Product(
        tenant_id=tenant_id,
        category="Drinks",
        name="Cola",
        base_price_cents=800,
        sort_order=10,
    )
    db.add_all([margherita, pepperoni, cola])
    db.commit()
    return {"margherita": margherita, "pepperoni": pepperoni, "cola": cola}


def seed_account(
    db,
    encryption: EncryptionService,
    *,
    tenant_id: int = 1,
    phone_number_id: str = PHONE_NUMBER_ID,
    status: str = "active",
    verify_token: str | None = "tenant-verify-token",
) -> TenantMessagingAccount:
    account = TenantMessagingAccount(
        tenant_id=tenant_id,
        waba_id=f"waba-{tenant_id}",
        phone_number_id=phone_number_id,
        display_phone_number="+972 50-000-0000",
        access_token_encrypted=encryption.encrypt("EAAG-test-token"),
        webhook_verify_token=verify_token,
        subscribed_events=["messages"],
        status=status,
    )
    db.add(account)
    db.commit()
    return account


@dataclass
class RecordingGateway:
    """Stands in for TenantMessagingGateway; records what would be sent."""

    window_expired: bool = False
    sent: list[tuple[int, str, str]] = field(default_factory=list)
    templates: list[tuple[int, str, str]] = field(default_factory=list)

    def send(self, db, tenant_id, message):
        if self.window_expired:
            raise WindowExpiredError("Re-engagement message")
        self.sent.append((tenant_id, message.to, message.body))
        return f"wamid.{len(self.sent)}"

    def send_template(self, db, tenant_id, *, to, template_name, language_code="en_US", components=None):
        self.templates.append((tenant_id, to, template_name))
        return f"wamid.t{len(self.templates)}"


def cloud_text_payload(
    *,
    message_id: str,
    text: str,
    sender: str = CUSTOMER_PHONE,
    phone_number_id: str = PHONE_NUMBER_ID,
    contact_name: str = "Dana",
) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": "972500000000", "phone_number_id": phone_number_id},
                            "contacts": [{"profile": {"name": contact_name}, "wa_id": sender}],
                            "messages": [
                                {
                                    "from": sender,
                                    "id": message_id,
                                    "timestamp": "1760000000",
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }
