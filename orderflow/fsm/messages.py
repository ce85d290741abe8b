from __future__ import annotations

from typing import Iterable, Sequence

from orderflow.fsm.context import CartLine
from orderflow.services.pricing import cart_total, format_price_cents

DEFAULT_GREETING = "Hi! 👋 Welcome, let's get your order started."
CATALOG_UNAVAILABLE = "Sorry, our menu is unavailable right now. Please try again later."
PAYMENT_PENDING = (
    "Your order is waiting for payment. Use the payment link we sent you to complete it, "
    "or contact us if you need help."
)
CART_CLEARED = "Your cart has been cleared. Send any message to start a new order."
CART_EMPTY = "Your cart is empty. Reply 1 to add items."
PRODUCT_UNAVAILABLE = "Sorry, that item is no longer available."
CATEGORY_EMPTY = "Sorry, there are no items available in {category} right now."


def render_categories(categories: Sequence[str]) -> str:
    lines = ["What would you like to order? Reply with a number:"]
    for idx, name in enumerate(categories, start=1):
        lines.append(f"{idx}. {name}")
    return "\n".join(lines)


def render_products(category: str, products: Iterable) -> str:
    lines = [f"*{category}*"]
    for idx, product in enumerate(products, start=1):
        lines.append(f"{idx}. {product.name} - {format_price_cents(product.base_price_cents, product.currency)}")
    lines.append("\nReply with the item number.")
    return "\n".join(lines)


def render_variant_group(group, currency: str) -> str:
    lines = [f"Choose {group.name}:"]
    for idx, option in enumerate(group.options, start=1):
        suffix = ""
        if option.price_modifier_cents > 0:
            suffix = f" (+{format_price_cents(option.price_modifier_cents, currency)})"
        lines.append(f"{idx}. {option.label}{suffix}")
    return "\n".join(lines)


def render_item_added(line: CartLine) -> str:
    return f"✅ {line.name} added to your cart."


def render_cart(cart: Sequence[CartLine]) -> str:
    currency = cart[0].currency if cart else "ILS"
    lines = ["🛒 Your cart:"]
    for idx, line in enumerate(cart, start=1):
        variants = f" ({', '.join(line.variants)})" if line.variants else ""
        lines.append(f"{idx}. {line.name}{variants} - {format_price_cents(line.subtotal_cents, line.currency)}")
    lines.append(f"\nTotal: {format_price_cents(cart_total(cart), currency)}")
    lines.append("\n1. Add more items\n2. Checkout\n3. Clear cart")
    return "\n".join(lines)


def render_invalid_choice(size: int) -> str:
    if size <= 1:
        return "Sorry, I didn't get that. Reply 1 to choose."
    return f"Sorry, I didn't get that. Please reply with a number from 1 to {size}."


def render_checkout(order_number: str, total_cents: int, currency: str, payment_url: str) -> str:
    return (
        f"🎉 Order {order_number} received!\n"
        f"Total: {format_price_cents(total_cents, currency)}\n\n"
        f"Pay here to confirm your order:\n{payment_url}"
    )


def render_payment_confirmed(order_number: str) -> str:
    return f"✅ Payment received for order {order_number}. Thank you! We're on it."
