from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from orderflow.fsm.context import CartLine


class _Option(Protocol):
    label: str
    price_modifier_cents: int


class _Group(Protocol):
    options: Sequence[_Option]


class PricedProduct(Protocol):
    id: int
    name: str
    base_price_cents: int
    currency: str
    variant_groups: Sequence[_Group]


def variant_modifiers(product: PricedProduct, selected_labels: Iterable[str]) -> int:
    selected = set(selected_labels)
    total = 0
    for group in product.variant_groups:
        for option in group.options:
            if option.label in selected:
                total += int(option.price_modifier_cents or 0)
    return total


def line_price(product: PricedProduct, selected_labels: Iterable[str]) -> int:
    return int(product.base_price_cents) + variant_modifiers(product, selected_labels)


def build_cart_line(product: PricedProduct, selected_labels: Sequence[str]) -> CartLine:
    # Each add is its own line with quantity 1; repeated adds are not merged.
    return CartLine(
        product_id=product.id,
        name=product.name,
        quantity=1,
        unit_base_price_cents=int(product.base_price_cents),
        variant_modifiers_cents=variant_modifiers(product, selected_labels),
        currency=product.currency,
        variants=list(selected_labels),
    )


def cart_total(cart: Iterable[CartLine]) -> int:
    return sum(line.subtotal_cents for line in cart)


_CURRENCY_SYMBOLS = {"ILS": "₪", "USD": "$", "EUR": "€", "GBP": "£", "BRL": "R$"}


def format_price_cents(price_cents: int, currency: str = "ILS") -> str:
    symbol = _CURRENCY_SYMBOLS.get((currency or "").upper())
    amount = f"{price_cents / 100:,.2f}"
    if symbol:
        return f"{symbol}{amount}"
    return f"{amount} {currency}"
