import hashlib
import hmac
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import checkout_service.auth
from checkout_service.config import Settings
from checkout_service.database import Base, session_scope
from checkout_service.gateway import PaymentDetails, PaymentGatewayClient, Preference
from checkout_service.main import create_app
from checkout_service.models import CatalogItem, StockLevel

WEBHOOK_SECRET = "whsec_test"
JWT_SECRET = "jwt_test"


def make_settings(database_url, **overrides):
    values = dict(
        database_url=database_url,
        jwt_secret=JWT_SECRET,
        mp_access_token="TEST-token",
        mp_webhook_secret=WEBHOOK_SECRET,
        mp_api_base="https://api.mercadopago.test",
        mp_use_sandbox=False,
        app_url="https://shop.test",
        currency="BRL",
        reservation_ttl_minutes=30,
        http_timeout_seconds=5,
        http_max_retries=0,
        signature_schemes=("manifest", "body"),
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def sign(payment_id, request_id="req-1", ts="1700000000", secret=WEBHOOK_SECRET):
    manifest = f"id:{payment_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}


def sign_body(body: bytes, request_id="req-1", ts="1700000000", secret=WEBHOOK_SECRET):
    message = f"{ts}.{request_id}.".encode() + body
    digest = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}


def payment(payment_id, status, order_id, last_updated="2026-10-19T10:00:00.000-03:00", amount="20.00"):
    return PaymentDetails(
        id=str(payment_id),
        status=status,
        amount=Decimal(amount),
        currency="BRL",
        last_updated=last_updated,
        external_reference=order_id,
        raw={"id": payment_id, "status": status, "external_reference": order_id},
    )


def _preference(**kwargs):
    order_id = kwargs["external_reference"]
    return Preference(
        id=f"pref-{order_id}",
        redirect_url=f"https://mp.test/checkout?pref_id=pref-{order_id}",
        raw={"id": f"pref-{order_id}"},
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(f"sqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def gateway(mocker):
    gw = mocker.Mock(spec=PaymentGatewayClient)
    gw.provider = "mercadopago"
    gw.create_preference.side_effect = _preference
    return gw


@pytest.fixture
def app(settings, gateway):
    fastapi_app = create_app(settings, gateway=gateway)
    Base.metadata.create_all(bind=fastapi_app.state.engine)
    yield fastapi_app
    fastapi_app.state.engine.dispose()


@pytest.fixture
def client(app):
    # Bypass auth verification for tests
    app.dependency_overrides[checkout_service.auth.verify_token] = lambda: {"sub": "test"}
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def seed(app):
    def _seed(sku, stock, price="10.00", title=None, available=True, attributes=None):
        with session_scope(app.state.session_factory) as session:
            session.add(
                CatalogItem(
                    sku=sku,
                    title=title or f"Card {sku}",
                    unit_price=Decimal(price) if price is not None else None,
                    available=available,
                    attributes=attributes or {"condition": "NM"},
                )
            )
            session.add(StockLevel(sku=sku, on_hand=stock, reserved=0, sold=0))

    return _seed


@pytest.fixture
def stock(app):
    def _stock(sku):
        with session_scope(app.state.session_factory) as session:
            row = session.get(StockLevel, sku)
            return {"on_hand": row.on_hand, "reserved": row.reserved, "sold": row.sold, "available": row.available}

    return _stock
