from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import relationship

from orderflow.core.database import Base


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (Index("ix_products_tenant_category", "tenant_id", "category"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), index=True, nullable=False)
    category = Column(String(120), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    base_price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="ILS")
    is_available = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    variant_groups = relationship(
        "VariantGroup",
        back_populates="product",
        order_by="VariantGroup.sort_order, VariantGroup.id",
        cascade="all, delete-orphan",
    )


class VariantGroup(Base):
    __tablename__ = "variant_groups"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    product = relationship("Product", back_populates="variant_groups")
    options = relationship(
        "VariantOption",
        back_populates="group",
        order_by="VariantOption.sort_order, VariantOption.id",
        cascade="all, delete-orphan",
    )


class VariantOption(Base):
    __tablename__ = "variant_options"

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("variant_groups.id"), index=True, nullable=False)
    label = Column(String(255), nullable=False)
    price_modifier_cents = Column(Integer, default=0, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    group = relationship("VariantGroup", back_populates="options")
