from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from checkout_service.catalog import CatalogStore
from checkout_service.errors import CheckoutError, InvalidRequest, PaymentProviderError, PricingError
from checkout_service.gateway import PaymentGatewayClient
from checkout_service.ledger import OrderLedger, PricedLine

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckoutLine:
    sku: str
    quantity: int


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    preference_id: str
    redirect_url: str
    total: Decimal
    currency: str
    expires_at: datetime


class CheckoutOrchestrator:
    """Builds a checkout: price, draft order, reserve stock, open a provider preference.

    Once the draft exists, any failure cancels the order, which also frees
    its reservation, before the error is returned.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        ledger: OrderLedger,
        gateway: PaymentGatewayClient,
        currency: str,
        notification_url: str,
        back_urls,
        ttl: Optional[timedelta] = None,
    ):
        self._catalog = catalog
        self._ledger = ledger
        self._gateway = gateway
        self._currency = currency
        self._notification_url = notification_url
        self._back_urls = back_urls
        self._ttl = ttl

    def create_checkout(self, user_id: str, items: Iterable, payer: Optional[dict] = None) -> CheckoutResult:
        lines = self._validate(user_id, items)
        priced = self._price(lines)

        order = self._ledger.create_draft(user_id, priced, self._currency)
        log = logger.bind(order_id=order.id, user_id=user_id)

        try:
            reservation = self._ledger.reserve(order.id, ttl=self._ttl)
        except CheckoutError:
            # the ledger has already cancelled the order
            log.info("checkout.rejected", reason="insufficient_stock")
            raise
        except Exception:
            self._compensate(order.id, "reservation_error")
            raise

        try:
            preference = self._gateway.create_preference(
                items=[self._provider_item(line) for line in priced],
                external_reference=order.id,
                back_urls=self._back_urls(order.id),
                notification_url=self._notification_url,
                payer=payer,
            )
        except PaymentProviderError as exc:
            log.warning("checkout.provider_failed", error=exc.message)
            self._compensate(order.id, "payment_provider_error")
            raise
        except Exception as exc:
            self._compensate(order.id, "payment_provider_error")
            raise PaymentProviderError(f"preference creation failed: {exc}") from exc

        try:
            self._ledger.mark_awaiting_payment(order.id, preference)
        except Exception:
            self._compensate(order.id, "ledger_error")
            raise

        log.info("checkout.created", preference_id=preference.id, total=str(order.total))
        return CheckoutResult(
            order_id=order.id,
            preference_id=preference.id,
            redirect_url=preference.redirect_url,
            total=order.total,
            currency=order.currency,
            expires_at=reservation.expires_at,
        )

    def _compensate(self, order_id: str, reason: str) -> None:
        try:
            self._ledger.cancel(order_id, reason=reason)
        except SQLAlchemyError:
            # the reservation TTL frees the stock if this never lands
            logger.exception("checkout.compensation_failed", order_id=order_id, reason=reason)

    @staticmethod
    def _validate(user_id, items) -> List[CheckoutLine]:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidRequest("user_id is required")
        if not items:
            raise InvalidRequest("items must not be empty")

        lines = []
        for item in items:
            sku = item.get("sku") if isinstance(item, dict) else getattr(item, "sku", None)
            quantity = item.get("quantity") if isinstance(item, dict) else getattr(item, "quantity", None)
            if not isinstance(sku, str) or not sku.strip():
                raise InvalidRequest("every item needs a sku")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise InvalidRequest(f"quantity for {sku} must be a positive integer")
            lines.append(CheckoutLine(sku=sku.strip(), quantity=quantity))
        return lines

    def _price(self, lines: List[CheckoutLine]) -> List[PricedLine]:
        entries = self._catalog.lookup(line.sku for line in lines)

        unpriced = []
        for line in lines:
            entry = entries.get(line.sku)
            if entry is None or not entry.available or entry.unit_price is None or entry.unit_price <= 0:
                unpriced.append(line.sku)
        if unpriced:
            raise PricingError(
                f"cannot price: {', '.join(sorted(set(unpriced)))}",
                skus=sorted(set(unpriced)),
            )

        priced = []
        for line in lines:
            entry = entries[line.sku]
            priced.append(
                PricedLine(
                    sku=line.sku,
                    quantity=line.quantity,
                    unit_price=entry.unit_price,
                    snapshot={
                        "title": entry.title,
                        "attributes": entry.attributes,
                        "unit_price": str(entry.unit_price),
                    },
                )
            )
        return priced

    def _provider_item(self, line: PricedLine) -> dict:
        return {
            "id": line.sku,
            "title": line.snapshot.get("title") or line.sku,
            "quantity": line.quantity,
            "unit_price": float(line.unit_price),
            "currency_id": self._currency,
        }
