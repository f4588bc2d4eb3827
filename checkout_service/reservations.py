from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from checkout_service.database import session_scope
from checkout_service.errors import InsufficientStock, ReservationError
from checkout_service.models import Reservation, ReservationLine, ReservationStatus, StockLevel, utcnow

logger = structlog.get_logger(__name__)

ACTIVE = ReservationStatus.ACTIVE.value
COMMITTED = ReservationStatus.COMMITTED.value
RELEASED = ReservationStatus.RELEASED.value
EXPIRED = ReservationStatus.EXPIRED.value


def _merge(items: Iterable[Tuple[str, int]]) -> "OrderedDict[str, int]":
    # sorted so concurrent reservations touch stock rows in the same order
    merged: Dict[str, int] = {}
    for sku, qty in items:
        merged[sku] = merged.get(sku, 0) + int(qty)
    return OrderedDict(sorted(merged.items()))


class ReservationEngine:
    """Time-bounded inventory holds keyed by order id.

    Every method that takes a ``session`` runs inside the caller's
    transaction; stock counters are only ever changed here, through
    conditional UPDATEs, so the check and the hold are a single statement.
    """

    def __init__(self, session_factory, ttl_minutes: int = 30):
        self._session_factory = session_factory
        self.ttl = timedelta(minutes=ttl_minutes)

    def reserve(
        self,
        session: Session,
        order_id: str,
        items: Iterable[Tuple[str, int]],
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = now or utcnow()
        wanted = _merge(items)
        if not wanted or any(qty <= 0 for qty in wanted.values()):
            raise ReservationError("reservation needs at least one positive quantity")

        self.sweep_expired(session, now=now)

        existing = self._get(session, order_id)
        if existing is not None:
            if existing.status == ACTIVE:
                return existing
            raise ReservationError(f"order {order_id} already has a {existing.status} reservation")

        # all-or-nothing: a short SKU rolls back every hold taken in this savepoint
        with session.begin_nested():
            short = [sku for sku, qty in wanted.items() if not self._hold(session, sku, qty)]
            if short:
                raise InsufficientStock(short)

            reservation = Reservation(
                order_id=order_id,
                status=ACTIVE,
                expires_at=now + (ttl or self.ttl),
            )
            reservation.lines = [ReservationLine(sku=sku, quantity=qty) for sku, qty in wanted.items()]
            session.add(reservation)
            session.flush()

        logger.info(
            "reservation.created",
            order_id=order_id,
            reservation_id=reservation.id,
            skus=list(wanted),
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    def commit(self, session: Session, order_id: str) -> bool:
        """Turn the order's hold into a sale. Returns False when already committed."""
        reservation = self._get(session, order_id)
        if reservation is None:
            raise ReservationError(f"no reservation for order {order_id}")

        if reservation.status == COMMITTED:
            return False

        if reservation.status == ACTIVE:
            if not self._transition(session, reservation.id, ACTIVE, COMMITTED):
                return self.commit(session, order_id)
            for line in reservation.lines:
                self._stock_update(
                    session, line.sku,
                    reserved=StockLevel.reserved - line.quantity,
                    sold=StockLevel.sold + line.quantity,
                )
            logger.info("reservation.committed", order_id=order_id, reservation_id=reservation.id)
            return True

        if reservation.status == EXPIRED:
            # paid after the hold lapsed; sell directly if the stock is still there
            with session.begin_nested():
                short = [line.sku for line in reservation.lines if not self._sell(session, line.sku, line.quantity)]
                if short:
                    raise InsufficientStock(short, message=f"reservation for order {order_id} expired and stock is gone")
                if not self._transition(session, reservation.id, EXPIRED, COMMITTED):
                    raise ReservationError(f"reservation for order {order_id} changed while committing")
            logger.warning("reservation.committed_after_expiry", order_id=order_id, reservation_id=reservation.id)
            return True

        raise ReservationError(f"cannot commit {reservation.status} reservation for order {order_id}")

    def release(self, session: Session, order_id: str) -> bool:
        """Give the held stock back. Returns False when there was nothing to free."""
        reservation = self._get(session, order_id)
        if reservation is None:
            return False
        if reservation.status != ACTIVE:
            if reservation.status == COMMITTED:
                logger.warning("reservation.release_committed", order_id=order_id)
            return False
        if not self._transition(session, reservation.id, ACTIVE, RELEASED):
            return self.release(session, order_id)
        for line in reservation.lines:
            self._stock_update(session, line.sku, reserved=StockLevel.reserved - line.quantity)
        logger.info("reservation.released", order_id=order_id, reservation_id=reservation.id)
        return True

    def sweep_expired(self, session: Session, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        overdue = session.execute(
            select(Reservation).where(Reservation.status == ACTIVE, Reservation.expires_at <= now)
        ).scalars().all()

        count = 0
        for reservation in overdue:
            if not self._transition(session, reservation.id, ACTIVE, EXPIRED):
                continue
            for line in reservation.lines:
                self._stock_update(session, line.sku, reserved=StockLevel.reserved - line.quantity)
            count += 1
            logger.info("reservation.expired", order_id=reservation.order_id, reservation_id=reservation.id)
        return count

    def expire_overdue(self) -> int:
        with session_scope(self._session_factory) as session:
            return self.sweep_expired(session)

    def get(self, session: Session, order_id: str) -> Optional[Reservation]:
        return self._get(session, order_id)

    # -- internals -----------------------------------------------------

    def _get(self, session: Session, order_id: str) -> Optional[Reservation]:
        reservation = session.execute(
            select(Reservation).where(Reservation.order_id == order_id)
        ).scalar_one_or_none()
        if reservation is not None:
            session.refresh(reservation)
        return reservation

    def _hold(self, session: Session, sku: str, qty: int) -> bool:
        available = StockLevel.on_hand - StockLevel.reserved - StockLevel.sold
        return self._stock_update(
            session, sku, available >= qty, reserved=StockLevel.reserved + qty
        )

    def _sell(self, session: Session, sku: str, qty: int) -> bool:
        available = StockLevel.on_hand - StockLevel.reserved - StockLevel.sold
        return self._stock_update(session, sku, available >= qty, sold=StockLevel.sold + qty)

    @staticmethod
    def _stock_update(session: Session, sku: str, *conditions, **values) -> bool:
        result = session.execute(
            update(StockLevel)
            .where(StockLevel.sku == sku, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _transition(session: Session, reservation_id: str, current: str, target: str) -> bool:
        result = session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == current)
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

