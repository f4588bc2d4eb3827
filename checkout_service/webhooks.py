import json
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from checkout_service.database import session_scope
from checkout_service.gateway import PaymentGatewayClient
from checkout_service.ledger import ALREADY_APPLIED, CANCELLED, PAID, OrderLedger
from checkout_service.models import FailedNotification, PaymentStatus, utcnow
from checkout_service.signature import SignatureVerifier

logger = structlog.get_logger(__name__)

# provider status -> (local payment status, order transition)
STATUS_ACTIONS = {
    "approved": (PaymentStatus.PAID.value, PAID),
    "rejected": (PaymentStatus.FAILED.value, CANCELLED),
    "cancelled": (PaymentStatus.FAILED.value, CANCELLED),
}


def map_status(provider_status: str) -> Tuple[str, Optional[str]]:
    return STATUS_ACTIONS.get((provider_status or "").lower(), (PaymentStatus.PENDING.value, None))


def parse_body(raw_body: bytes) -> dict:
    if not raw_body:
        return {}
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def extract_payment_id(payload: dict, query: Optional[Mapping] = None) -> Optional[str]:
    """Payment id from ``data.id``, ``id`` or the tail of ``resource``, then the query string."""
    data = payload.get("data")
    candidates = [
        data.get("id") if isinstance(data, dict) else None,
        payload.get("id"),
    ]
    resource = payload.get("resource")
    if isinstance(resource, str) and resource.strip("/"):
        candidates.append(resource.rstrip("/").rsplit("/", 1)[-1])
    if query:
        candidates.extend([query.get("data.id"), query.get("id")])

    for candidate in candidates:
        if candidate is not None and str(candidate).strip():
            return str(candidate).strip()
    return None


def notification_topic(payload: dict, query: Optional[Mapping] = None) -> Optional[str]:
    topic = payload.get("type") or payload.get("topic")
    if not topic and query:
        topic = query.get("type") or query.get("topic")
    return str(topic).lower() if topic else None


@dataclass
class WebhookResult:
    status_code: int
    body: dict = field(default_factory=dict)


class WebhookReconciler:
    """Turns provider notifications into ledger transitions, at most once per event.

    The notification is only a pointer: status and amounts always come from
    the provider API. Everything after signature verification answers 200.
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        gateway: PaymentGatewayClient,
        ledger: OrderLedger,
        session_factory,
    ):
        self._verifier = verifier
        self._gateway = gateway
        self._ledger = ledger
        self._session_factory = session_factory

    def handle_notification(
        self,
        raw_body: bytes,
        headers: Mapping,
        query: Optional[Mapping] = None,
    ) -> WebhookResult:
        headers = {str(k).lower(): v for k, v in headers.items()}
        payload = parse_body(raw_body)

        topic = notification_topic(payload, query)
        if topic and topic != "payment":
            logger.info("webhook.ignored", reason="topic", topic=topic)
            return WebhookResult(200, {"received": True, "ignored": True})

        payment_id = extract_payment_id(payload, query)
        if not payment_id:
            logger.info("webhook.ignored", reason="no_payment_id")
            return WebhookResult(200, {"received": True, "ignored": True})

        verified = self._verifier.verify(
            raw_body,
            headers.get("x-signature"),
            headers.get("x-request-id"),
            payment_id,
        )
        if not verified:
            logger.warning("webhook.invalid_signature", payment_id=payment_id)
            return WebhookResult(401, {"error": "Invalid signature"})

        try:
            outcome = self.reconcile(payment_id)
        except Exception as exc:
            logger.exception("webhook.reconcile_failed", payment_id=payment_id)
            self._record_failure(payment_id, exc)
            return WebhookResult(200, {"received": True, "deferred": True})

        return WebhookResult(200, {"received": True, **outcome})

    def reconcile(self, payment_id: str) -> dict:
        details = self._gateway.get_payment(payment_id)
        log = logger.bind(payment_id=details.id, status=details.status)

        existing = self._ledger.find_payment(details.id)
        if (
            existing is not None
            and existing.provider_updated_at is not None
            and existing.provider_status == details.status
            and existing.provider_updated_at == details.last_updated
        ):
            log.info("webhook.duplicate")
            return {"idempotent": True, "status": details.status}

        if not details.external_reference:
            log.info("webhook.ignored", reason="no_external_reference")
            return {"idempotent": False, "ignored": True, "status": details.status}

        local_status, target = map_status(details.status)
        outcome = self._ledger.apply_payment(details, local_status, target)
        log.info("webhook.processed", order_id=details.external_reference, outcome=outcome)
        return {
            "idempotent": outcome == ALREADY_APPLIED,
            "outcome": outcome,
            "status": details.status,
        }

    def retry_failed(self, limit: int = 50) -> dict:
        """Re-run reconciliation for deliveries that failed internally."""
        with session_scope(self._session_factory) as session:
            pending = session.execute(
                select(FailedNotification.id, FailedNotification.payment_id)
                .where(FailedNotification.resolved_at.is_(None))
                .order_by(FailedNotification.id)
                .limit(limit)
            ).all()

        resolved = failed = 0
        for row_id, payment_id in pending:
            try:
                self.reconcile(payment_id)
            except Exception as exc:
                failed += 1
                logger.warning("webhook.retry_failed", payment_id=payment_id, error=str(exc))
                with session_scope(self._session_factory) as session:
                    row = session.get(FailedNotification, row_id)
                    row.attempts += 1
                    row.error = repr(exc)
                continue
            resolved += 1
            with session_scope(self._session_factory) as session:
                session.get(FailedNotification, row_id).resolved_at = utcnow()
        return {"resolved": resolved, "failed": failed}

    def _record_failure(self, payment_id: str, exc: Exception) -> None:
        try:
            with session_scope(self._session_factory) as session:
                row = session.execute(
                    select(FailedNotification).where(
                        FailedNotification.payment_id == payment_id,
                        FailedNotification.resolved_at.is_(None),
                    )
                ).scalars().first()
                if row is None:
                    session.add(
                        FailedNotification(provider=self._gateway.provider, payment_id=payment_id, error=repr(exc))
                    )
                else:
                    row.attempts += 1
                    row.error = repr(exc)
        except SQLAlchemyError:
            logger.exception("webhook.failure_not_recorded", payment_id=payment_id)
