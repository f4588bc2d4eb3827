import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from checkout_service.database import session_scope
from checkout_service.models import CatalogItem

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    sku: str
    title: str
    unit_price: Optional[Decimal]
    available: bool
    attributes: dict = field(default_factory=dict)


class CatalogStore:
    """Read-only price and availability lookup by SKU."""

    def __init__(self, session_factory, attempts: int = 3, backoff: float = 0.2):
        self._session_factory = session_factory
        self._attempts = max(1, attempts)
        self._backoff = backoff

    def lookup(self, skus: Iterable[str]) -> Dict[str, CatalogEntry]:
        skus = list(dict.fromkeys(skus))
        if not skus:
            return {}
        for attempt in range(1, self._attempts + 1):
            try:
                return self._lookup(skus)
            except OperationalError:
                if attempt == self._attempts:
                    raise
                logger.warning("catalog.retry", attempt=attempt)
                time.sleep(self._backoff * 2 ** (attempt - 1))

    def get(self, sku: str) -> Optional[CatalogEntry]:
        return self.lookup([sku]).get(sku)

    def _lookup(self, skus) -> Dict[str, CatalogEntry]:
        with session_scope(self._session_factory) as session:
            rows = session.execute(select(CatalogItem).where(CatalogItem.sku.in_(skus))).scalars().all()
            return {
                row.sku: CatalogEntry(
                    sku=row.sku,
                    title=row.title,
                    unit_price=Decimal(str(row.unit_price)) if row.unit_price is not None else None,
                    available=bool(row.available),
                    attributes=dict(row.attributes or {}),
                )
                for row in rows
            }
