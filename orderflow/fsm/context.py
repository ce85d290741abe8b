"""Typed session state stored in the JSON columns of ``ConversationSession``.

``cart`` holds a list of :class:`CartLine` and ``context`` holds exactly one
step context, tagged by the step it belongs to.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, computed_field


class CartLine(BaseModel):
    product_id: int
    name: str
    quantity: int = 1
    unit_base_price_cents: int
    variant_modifiers_cents: int = 0
    currency: str = "ILS"
    variants: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def subtotal_cents(self) -> int:
        return (self.unit_base_price_cents + self.variant_modifiers_cents) * self.quantity


class WelcomeContext(BaseModel):
    step: Literal["welcome"] = "welcome"


class CategoryContext(BaseModel):
    step: Literal["category_selection"] = "category_selection"
    categories: list[str]


class ProductContext(BaseModel):
    step: Literal["product_selection"] = "product_selection"
    selected_category: str
    product_ids: list[int]


class VariantContext(BaseModel):
    step: Literal["variant_selection"] = "variant_selection"
    selected_category: str
    product_id: int
    group_index: int = 0
    selected_labels: list[str] = Field(default_factory=list)


class CartContext(BaseModel):
    step: Literal["cart"] = "cart"


class CompletedContext(BaseModel):
    step: Literal["completed"] = "completed"
    order_id: int
    order_number: str


StepContext = Annotated[
    Union[WelcomeContext, CategoryContext, ProductContext, VariantContext, CartContext, CompletedContext],
    Field(discriminator="step"),
]

_context_adapter: TypeAdapter[Any] = TypeAdapter(StepContext)
_cart_adapter: TypeAdapter[list[CartLine]] = TypeAdapter(list[CartLine])


def load_context(raw: dict[str, Any] | None) -> StepContext | None:
    if not raw:
        return None
    try:
        return _context_adapter.validate_python(raw)
    except ValidationError:
        return None


def dump_context(context: StepContext) -> dict[str, Any]:
    return context.model_dump(mode="json")


def load_cart(raw: list[dict[str, Any]] | None) -> list[CartLine]:
    return _cart_adapter.validate_python(raw or [])


def dump_cart(cart: list[CartLine]) -> list[dict[str, Any]]:
    return [line.model_dump(mode="json") for line in cart]
