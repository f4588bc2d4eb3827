from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, selectinload

from checkout_service.database import session_scope
from checkout_service.errors import InsufficientStock, LedgerError
from checkout_service.gateway import PaymentDetails, Preference
from checkout_service.models import (
    TERMINAL_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Reservation,
    utcnow,
)
from checkout_service.reservations import ReservationEngine

logger = structlog.get_logger(__name__)

DRAFT = OrderStatus.DRAFT.value
RESERVED = OrderStatus.RESERVED.value
AWAITING_PAYMENT = OrderStatus.AWAITING_PAYMENT.value
PAID = OrderStatus.PAID.value
CANCELLED = OrderStatus.CANCELLED.value

OPEN_STATUSES = (DRAFT, RESERVED, AWAITING_PAYMENT)

# outcomes of apply_payment
APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
RECORDED = "recorded"
ANOMALY = "anomaly"
SKIPPED = "skipped"
ORDER_NOT_FOUND = "order_not_found"

_UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


@dataclass(frozen=True)
class PricedLine:
    sku: str
    quantity: int
    unit_price: Decimal
    snapshot: dict = field(default_factory=dict)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderLedger:
    """Owns the order state machine and the payment rows hanging off it.

    draft -> reserved -> awaiting_payment -> paid | cancelled

    Every transition is a conditional UPDATE on the current status, so two
    callers racing for the same transition cannot both win. The reservation
    call that goes with a transition runs in the same transaction.
    """

    def __init__(self, session_factory, reservations: ReservationEngine, provider: str = "mercadopago"):
        self._session_factory = session_factory
        self._reservations = reservations
        self.provider = provider

    def create_draft(
        self,
        user_id: str,
        lines: List[PricedLine],
        currency: str,
        shipping: Decimal = Decimal("0"),
        discount: Decimal = Decimal("0"),
    ) -> Order:
        subtotal = sum((line.line_total for line in lines), Decimal("0"))
        order = Order(
            user_id=user_id,
            status=DRAFT,
            subtotal=subtotal,
            shipping=shipping,
            discount=discount,
            total=subtotal + shipping - discount,
            currency=currency,
        )
        order.items = [
            OrderItem(
                sku=line.sku,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
                snapshot=line.snapshot,
            )
            for line in lines
        ]
        with session_scope(self._session_factory) as session:
            session.add(order)
            session.flush()
        logger.info("order.created", order_id=order.id, user_id=user_id, items=len(lines), total=str(order.total))
        return order

    def reserve(self, order_id: str, ttl: Optional[timedelta] = None) -> Reservation:
        """draft -> reserved. A stock shortage cancels the order and re-raises."""
        try:
            with session_scope(self._session_factory) as session:
                order = self._load(session, order_id)
                if order.status != DRAFT:
                    raise LedgerError(f"order {order_id} is {order.status}, expected {DRAFT}")
                items = [(item.sku, item.quantity) for item in order.items]
                reservation = self._reservations.reserve(session, order_id, items, ttl=ttl)
                if not self._transition(session, order_id, (DRAFT,), RESERVED):
                    raise LedgerError(f"order {order_id} left {DRAFT} while reserving")
                return reservation
        except InsufficientStock as exc:
            self.cancel(order_id, reason=f"insufficient_stock: {', '.join(exc.short_skus)}")
            raise

    def mark_awaiting_payment(self, order_id: str, preference: Preference) -> None:
        """reserved -> awaiting_payment, recording the pending checkout payment."""
        with session_scope(self._session_factory) as session:
            if not self._transition(session, order_id, (RESERVED,), AWAITING_PAYMENT):
                raise LedgerError(f"order {order_id} is not {RESERVED}")
            order = self._load(session, order_id)
            session.add(
                Payment(
                    order_id=order_id,
                    provider=self.provider,
                    provider_payment_id=preference.id,
                    provider_preference_id=preference.id,
                    status=PaymentStatus.PENDING.value,
                    amount=order.total,
                    currency=order.currency,
                    raw_payload=preference.raw,
                )
            )
        logger.info("order.awaiting_payment", order_id=order_id, preference_id=preference.id)

    def cancel(self, order_id: str, reason: str) -> bool:
        """Force-cancel any open order, releasing whatever it holds."""
        with session_scope(self._session_factory) as session:
            applied = self._transition(session, order_id, OPEN_STATUSES, CANCELLED, reason=reason)
            if applied:
                self._reservations.release(session, order_id)
        if applied:
            logger.info("order.cancelled", order_id=order_id, reason=reason)
        else:
            logger.warning("order.cancel_skipped", order_id=order_id, reason=reason)
        return applied

    def apply_payment(self, details: PaymentDetails, local_status: str, target: Optional[str]) -> str:
        """Record a provider payment and, if ``target`` is set, move the order there.

        The payment upsert and the order transition commit together.
        """
        order_id = details.external_reference
        with session_scope(self._session_factory) as session:
            order = session.get(Order, order_id) if order_id else None
            if order is None:
                logger.info("ledger.order_not_found", order_id=order_id, payment_id=details.id)
                return ORDER_NOT_FOUND

            self._upsert_payment(session, order_id, details, local_status)
            if target is None:
                return RECORDED

            if target == PAID:
                applied = self._transition(session, order_id, (AWAITING_PAYMENT,), PAID)
                if applied:
                    self._reservations.commit(session, order_id)
            elif target == CANCELLED:
                applied = self._transition(
                    session, order_id, (AWAITING_PAYMENT,), CANCELLED, reason=f"payment_{details.status}"
                )
                if applied:
                    self._reservations.release(session, order_id)
            else:
                raise LedgerError(f"unsupported payment transition to {target}")

            if applied:
                logger.info("order.payment_applied", order_id=order_id, payment_id=details.id, status=target)
                return APPLIED

            session.refresh(order)
            if order.status == target:
                return ALREADY_APPLIED
            if order.status in TERMINAL_STATUSES:
                logger.warning(
                    "ledger.anomaly",
                    order_id=order_id,
                    payment_id=details.id,
                    current=order.status,
                    requested=target,
                )
                return ANOMALY
            logger.warning("ledger.out_of_order", order_id=order_id, payment_id=details.id, current=order.status)
            # not applied yet: a redelivery must reach the ledger again
            self._clear_freshness(session, details.id)
            return SKIPPED

    def find_payment(self, provider_payment_id: str, provider: Optional[str] = None) -> Optional[Payment]:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(Payment).where(
                    Payment.provider == (provider or self.provider),
                    Payment.provider_payment_id == str(provider_payment_id),
                )
            ).scalar_one_or_none()

    def get_order(self, order_id: str) -> Optional[Order]:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items), selectinload(Order.payments))
            ).scalar_one_or_none()

    # -- internals -----------------------------------------------------

    @staticmethod
    def _load(session: Session, order_id: str) -> Order:
        order = session.get(Order, order_id, populate_existing=True)
        if order is None:
            raise LedgerError(f"order {order_id} not found")
        return order

    @staticmethod
    def _transition(
        session: Session,
        order_id: str,
        current: Iterable[str],
        target: str,
        reason: Optional[str] = None,
    ) -> bool:
        values = {"status": target, "updated_at": utcnow()}
        if reason is not None:
            values["cancel_reason"] = reason[:255]
        result = session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(list(current)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _clear_freshness(self, session: Session, provider_payment_id: str) -> None:
        session.execute(
            update(Payment)
            .where(Payment.provider == self.provider, Payment.provider_payment_id == str(provider_payment_id))
            .values(provider_updated_at=None)
            .execution_options(synchronize_session=False)
        )

    def _upsert_payment(self, session: Session, order_id: str, details: PaymentDetails, local_status: str) -> None:
        dialect = session.get_bind().dialect.name
        insert = _UPSERT_DIALECTS.get(dialect)
        if insert is None:
            raise LedgerError(f"no atomic upsert available for {dialect}")

        now = utcnow()
        table = Payment.__table__
        stmt = insert(table).values(
            order_id=order_id,
            provider=self.provider,
            provider_payment_id=str(details.id),
            provider_status=details.status,
            provider_updated_at=details.last_updated,
            status=local_status,
            amount=details.amount,
            currency=details.currency,
            raw_payload=details.raw,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.provider, table.c.provider_payment_id],
            set_={
                "provider_status": stmt.excluded.provider_status,
                "provider_updated_at": stmt.excluded.provider_updated_at,
                "status": stmt.excluded.status,
                "amount": stmt.excluded.amount,
                "currency": stmt.excluded.currency,
                "raw_payload": stmt.excluded.raw_payload,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
