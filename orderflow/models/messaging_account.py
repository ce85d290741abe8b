import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from orderflow.core.database import Base

ACCOUNT_STATUSES = ("pending", "active", "suspended", "disconnected", "error")


class TenantMessagingAccount(Base):
    __tablename__ = "tenant_messaging_accounts"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), unique=True, nullable=False)
    waba_id = Column(String(64), nullable=False)
    phone_number_id = Column(String(64), unique=True, index=True, nullable=False)
    display_phone_number = Column(String(32), nullable=True)
    display_name = Column(String(255), nullable=True)

    access_token_encrypted = Column(Text, nullable=False)
    token_type = Column(String(20), nullable=False, default="permanent")
    webhook_verify_token = Column(String(64), nullable=True)
    subscribed_events = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)

    status = Column(String(20), nullable=False, default="pending")
    quality_rating = Column(String(20), nullable=True)
    error_message = Column(Text, nullable=True)
    last_health_check = Column(DateTime(timezone=True), nullable=True)
    last_message_sent_at = Column(DateTime(timezone=True), nullable=True)
    last_message_received_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
