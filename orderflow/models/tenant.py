from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, func

from orderflow.core.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    # Subject of the identity token that owns this business.
    owner_id = Column(String(64), nullable=False, index=True)
    welcome_message = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="ILS")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
