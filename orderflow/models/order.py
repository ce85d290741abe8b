import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from orderflow.core.database import Base

ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "out_for_delivery", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "refunded", "cancelled")
ORDER_SOURCES = ("chat", "manual", "web", "phone")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("tenant_id", "order_number", name="uq_orders_tenant_number"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    order_number = Column(String(32), nullable=False)

    customer_name = Column(String(120), nullable=True)
    customer_phone = Column(String(30), nullable=True, index=True)

    subtotal_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    fee_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="ILS")

    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    source = Column(String(20), nullable=False, default="chat")

    # Append-only list of {status, timestamp, actor, note}
    timeline = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)

    payment_link_url = Column(Text, nullable=True)
    payment_provider_id = Column(Integer, ForeignKey("payment_provider_configs.id"), nullable=True)
    payment_transaction_id = Column(String(128), nullable=True)
    # Inbound message that triggered checkout; guards against replayed deliveries.
    source_message_id = Column(String, unique=True, nullable=True)
    notes = Column(Text, nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    customer = relationship("Customer", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )
