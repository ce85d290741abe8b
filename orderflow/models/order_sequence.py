from sqlalchemy import Column, Date, ForeignKey, Integer, PrimaryKeyConstraint

from orderflow.core.database import Base


class OrderSequence(Base):
    __tablename__ = "order_sequences"
    __table_args__ = (PrimaryKeyConstraint("tenant_id", "day", name="pk_order_sequences"),)

    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    day = Column(Date, nullable=False)
    last_value = Column(Integer, nullable=False, default=0)
