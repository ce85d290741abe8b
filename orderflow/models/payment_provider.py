import sqlalchemy as sa
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

from orderflow.core.database import Base

PROVIDER_TYPES = ("stripe", "paypal", "tranzila", "meshulam", "cardcom")


class PaymentProviderConfig(Base):
    __tablename__ = "payment_provider_configs"
    __table_args__ = (
        # At most one primary config per tenant.
        Index(
            "uq_payment_provider_configs_primary",
            "tenant_id",
            unique=True,
            sqlite_where=sa.text("is_primary = 1"),
            postgresql_where=sa.text("is_primary"),
        ),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False)
    provider = Column(String(20), nullable=False)
    provider_name = Column(String(120), nullable=False)

    # JSON document of provider credentials, encrypted as one string.
    credentials_encrypted = Column(Text, nullable=False)
    webhook_secret = Column(String(255), nullable=True)
    test_mode = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_primary = Column(Boolean, nullable=False, default=False)

    supported_currencies = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)
    min_amount_cents = Column(Integer, nullable=True)
    max_amount_cents = Column(Integer, nullable=True)
    fee_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    fixed_fee_cents = Column(Integer, nullable=False, default=0)

    health_status = Column(String(20), nullable=False, default="unknown")
    transaction_count = Column(Integer, nullable=False, default=0)
    total_volume_cents = Column(BigInteger, nullable=False, default=0)
    last_transaction_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
