import sqlalchemy as sa
from sqlalchemy import Column, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from orderflow.core.database import Base


class OrderItem(Base):
    """Snapshot of one cart line at checkout; never updated afterwards."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(Integer, nullable=True)

    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price_cents = Column(Integer, nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="ILS")
    variants = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=False, default=list)

    order = relationship("Order", back_populates="items")
