from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.exc import OperationalError

from checkout_service.database import session_scope
from checkout_service.errors import PaymentProviderError
from checkout_service.models import Reservation, utcnow

from conftest import JWT_SECRET


def test_create_checkout_success(client, seed):
    seed("X", 3, price="12.00")

    response = client.post(
        "/checkout",
        json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 2}], "payer": {"email": "a@b.test"}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["redirect_url"] == f"https://mp.test/checkout?pref_id=pref-{body['order_id']}"
    assert body["preference_id"] == f"pref-{body['order_id']}"
    assert body["total"] == "24.00"
    assert body["currency"] == "BRL"


def test_create_checkout_validation_errors(client, seed):
    seed("X", 3)

    response = client.post("/checkout", json={"user_id": "user-1", "items": []})
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidRequest"

    response = client.post("/checkout", json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 0}]})
    assert response.status_code == 400

    response = client.post("/checkout", json={"items": "nope"})
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidRequest"


def test_create_checkout_pricing_error(client, seed):
    seed("X", 3, price=None)
    response = client.post("/checkout", json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 1}]})
    assert response.status_code == 400
    assert response.json() == {"error": "PricingError", "detail": "cannot price: X", "skus": ["X"]}


def test_create_checkout_out_of_stock(client, seed):
    seed("X", 1)
    response = client.post("/checkout", json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 2}]})
    assert response.status_code == 409
    assert response.json()["error"] == "InsufficientStock"
    assert response.json()["short_skus"] == ["X"]


def test_create_checkout_provider_failure(client, gateway, seed):
    seed("X", 1)
    gateway.create_preference.side_effect = PaymentProviderError("POST /checkout/preferences timed out")
    response = client.post("/checkout", json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 1}]})
    assert response.status_code == 502
    assert response.json()["error"] == "PaymentProviderError"


def test_get_order(client, seed):
    seed("X", 3, title="Darth Vader")
    order_id = client.post("/checkout", json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 1}]}).json()[
        "order_id"
    ]

    response = client.get(f"/orders/{order_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "awaiting_payment"
    assert body["items"][0]["snapshot"]["title"] == "Darth Vader"
    assert body["payments"] == [
        {
            "provider": "mercadopago",
            "provider_payment_id": f"pref-{order_id}",
            "provider_status": None,
            "status": "pending",
        }
    ]
    assert client.get("/orders/missing").status_code == 404


def test_sweep_endpoint(app, client, seed):
    seed("X", 1)
    order_id = client.post("/checkout", json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 1}]}).json()[
        "order_id"
    ]
    with session_scope(app.state.session_factory) as session:
        session.query(Reservation).filter_by(order_id=order_id).update(
            {"expires_at": utcnow() - timedelta(minutes=1)}
        )

    assert client.post("/ops/reservations/sweep").json() == {"expired": 1}
    assert client.post("/ops/reservations/sweep").json() == {"expired": 0}


@pytest.fixture
def raw_client(app):
    with TestClient(app) as c:
        yield c


def test_protected_routes_require_token(raw_client, seed):
    seed("X", 1)
    payload = {"user_id": "user-1", "items": [{"sku": "X", "quantity": 1}]}

    assert raw_client.post("/checkout", json=payload).status_code == 401
    assert raw_client.post("/checkout", json=payload, headers={"Authorization": "Bearer garbage"}).status_code == 401
    assert raw_client.post("/ops/reservations/sweep").status_code == 401

    token = jwt.encode({"sub": "storefront"}, JWT_SECRET, algorithm="HS256")
    response = raw_client.post("/checkout", json=payload, headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


def test_store_failure_is_rendered_as_json(app, client, seed, stock, mocker):
    seed("X", 1)
    mocker.patch.object(
        app.state.ledger, "create_draft", side_effect=OperationalError("INSERT", {}, Exception("database is locked"))
    )

    response = client.post("/checkout", json={"user_id": "user-1", "items": [{"sku": "X", "quantity": 1}]})

    assert response.status_code == 503
    assert response.json() == {"error": "StoreUnavailable", "detail": "order store unavailable, try again"}
    assert stock("X")["available"] == 1
