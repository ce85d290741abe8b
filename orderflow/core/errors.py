from __future__ import annotations


class OrderFlowError(Exception):
    """Base class for domain failures raised by the ordering engine."""


class ValidationError(OrderFlowError):
    pass


class NotFoundError(OrderFlowError):
    pass


class AuthError(OrderFlowError):
    """Outbound credential rejected by the provider."""


class WindowExpiredError(OrderFlowError):
    """Free-form reply attempted after the provider's messaging window closed."""


class ProviderError(OrderFlowError):
    def __init__(self, message: str, *, provider: str | None = None, code: str | int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        if self.code is None:
            return base
        return f"{base} (code={self.code})"


class SendError(ProviderError):
    pass


class OutOfRangeError(OrderFlowError):
    def __init__(self, amount_cents: int, min_cents: int | None, max_cents: int | None) -> None:
        super().__init__(f"Amount {amount_cents} outside allowed range [{min_cents}, {max_cents}]")
        self.amount_cents = amount_cents
        self.min_cents = min_cents
        self.max_cents = max_cents
