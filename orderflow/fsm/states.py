from __future__ import annotations

from enum import Enum


class Step(str, Enum):
    WELCOME = "welcome"
    CATEGORY_SELECTION = "category_selection"
    PRODUCT_SELECTION = "product_selection"
    VARIANT_SELECTION = "variant_selection"
    CART = "cart"
    CHECKOUT = "checkout"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: str | None) -> "Step":
        """Unknown or missing step values restart the conversation."""
        try:
            return cls(value)
        except ValueError:
            return cls.WELCOME


# Every edge a step handler may take, including staying in place on re-prompt.
TRANSITIONS: dict[Step, frozenset[Step]] = {
    Step.WELCOME: frozenset({Step.WELCOME, Step.CATEGORY_SELECTION}),
    Step.CATEGORY_SELECTION: frozenset({Step.CATEGORY_SELECTION, Step.PRODUCT_SELECTION}),
    Step.PRODUCT_SELECTION: frozenset({Step.PRODUCT_SELECTION, Step.VARIANT_SELECTION, Step.CART}),
    Step.VARIANT_SELECTION: frozenset({Step.VARIANT_SELECTION, Step.CART}),
    Step.CART: frozenset({Step.CART, Step.CATEGORY_SELECTION, Step.CHECKOUT, Step.WELCOME}),
    Step.CHECKOUT: frozenset({Step.COMPLETED}),
    Step.COMPLETED: frozenset({Step.COMPLETED}),
}

AWAITING_PAYMENT = frozenset({Step.CHECKOUT, Step.COMPLETED})


def can_transition(current: Step, target: Step) -> bool:
    return target in TRANSITIONS[current]
