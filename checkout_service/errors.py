from typing import Iterable, Optional


class CheckoutError(Exception):
    """Base for errors surfaced to checkout callers."""

    code = "CheckoutError"
    http_status = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.extra}


class InvalidRequest(CheckoutError):
    code = "InvalidRequest"
    http_status = 400


class PricingError(CheckoutError):
    code = "PricingError"
    http_status = 400


class InsufficientStock(CheckoutError):
    code = "InsufficientStock"
    http_status = 409

    def __init__(self, short_skus: Iterable[str], message: Optional[str] = None):
        self.short_skus = sorted(set(short_skus))
        super().__init__(
            message or f"Insufficient stock for: {', '.join(self.short_skus)}",
            short_skus=self.short_skus,
        )


class PaymentProviderError(CheckoutError):
    code = "PaymentProviderError"
    http_status = 502


class StoreUnavailable(CheckoutError):
    code = "StoreUnavailable"
    http_status = 503


class ReservationError(Exception):
    pass


class LedgerError(Exception):
    pass
