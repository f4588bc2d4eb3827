from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

import requests
import structlog
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from checkout_service.errors import PaymentProviderError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Preference:
    id: str
    redirect_url: str
    raw: dict


@dataclass(frozen=True)
class PaymentDetails:
    id: str
    status: str
    amount: Optional[Decimal]
    currency: Optional[str]
    last_updated: Optional[str]
    external_reference: Optional[str]
    raw: dict


class PaymentGatewayClient:
    """Mercado Pago preference and payment APIs over HTTPS."""

    provider = "mercadopago"

    def __init__(
        self,
        access_token: str,
        api_base: str = "https://api.mercadopago.com",
        timeout: float = 10,
        max_retries: int = 3,
        use_sandbox: bool = False,
        session: Optional[requests.Session] = None,
    ):
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._use_sandbox = use_sandbox
        self._session = session or self._build_session(max_retries)
        self._session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })

    @staticmethod
    def _build_session(max_retries: int) -> requests.Session:
        # POSTs are never retried
        retry = Retry(
            total=max_retries,
            backoff_factor=0.3,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def create_preference(
        self,
        items: List[dict],
        external_reference: str,
        back_urls: dict,
        notification_url: str,
        payer: Optional[dict] = None,
    ) -> Preference:
        body = {
            "items": items,
            "external_reference": external_reference,
            "notification_url": notification_url,
            "back_urls": back_urls,
            "auto_return": "approved",
        }
        if payer and payer.get("email"):
            body["payer"] = {"email": payer["email"]}

        data = self._request(
            "POST",
            "/checkout/preferences",
            json=body,
            headers={"X-Idempotency-Key": external_reference},
        )
        redirect_key = "sandbox_init_point" if self._use_sandbox else "init_point"
        if not data.get("id") or not data.get(redirect_key):
            raise PaymentProviderError(f"preference response without id/{redirect_key}")

        logger.info("gateway.preference_created", preference_id=data["id"], order_id=external_reference)
        return Preference(id=str(data["id"]), redirect_url=data[redirect_key], raw=data)

    def get_payment(self, payment_id: str) -> PaymentDetails:
        data = self._request("GET", f"/v1/payments/{payment_id}")
        if not data.get("status"):
            raise PaymentProviderError(f"payment {payment_id} response without status")

        amount = data.get("transaction_amount")
        return PaymentDetails(
            id=str(data.get("id", payment_id)),
            status=str(data["status"]),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get("currency_id"),
            last_updated=data.get("date_last_updated"),
            external_reference=data.get("external_reference") or None,
            raw=data,
        )

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self._api_base}{path}"
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.Timeout as exc:
            raise PaymentProviderError(f"{method} {path} timed out") from exc
        except requests.RequestException as exc:
            raise PaymentProviderError(f"{method} {path} failed: {exc}") from exc

        if not response.ok:
            logger.warning("gateway.http_error", method=method, path=path, status=response.status_code)
            raise PaymentProviderError(
                f"{method} {path} returned HTTP {response.status_code}",
                provider_status=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentProviderError(f"{method} {path} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise PaymentProviderError(f"{method} {path} returned unexpected JSON")
        return data
