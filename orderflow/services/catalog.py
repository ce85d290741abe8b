from __future__ import annotations

from typing import Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from orderflow.models.catalog import Product, VariantGroup


class Catalog(Protocol):
    def list_categories(self, tenant_id: int) -> list[str]:
        ...

    def list_products(self, tenant_id: int, category: str, limit: int) -> list[Product]:
        ...

    def get_product(self, tenant_id: int, product_id: int) -> Product | None:
        ...


class SqlCatalog:
    """Read-only view over the tenant's product store."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def list_categories(self, tenant_id: int) -> list[str]:
        rows = (
            self.db.query(Product.category)
            .filter(Product.tenant_id == tenant_id, Product.is_available.is_(True))
            .group_by(Product.category)
            .order_by(func.min(Product.sort_order).asc(), Product.category.asc())
            .all()
        )
        return [row[0] for row in rows if row[0]]

    def list_products(self, tenant_id: int, category: str, limit: int) -> list[Product]:
        return (
            self.db.query(Product)
            .options(selectinload(Product.variant_groups).selectinload(VariantGroup.options))
            .filter(
                Product.tenant_id == tenant_id,
                Product.category == category,
                Product.is_available.is_(True),
            )
            .order_by(Product.sort_order.asc(), Product.name.asc())
            .limit(limit)
            .all()
        )

    def get_product(self, tenant_id: int, product_id: int) -> Product | None:
        return (
            self.db.query(Product)
            .options(selectinload(Product.variant_groups).selectinload(VariantGroup.options))
            .filter(Product.tenant_id == tenant_id, Product.id == product_id)
            .first()
        )
