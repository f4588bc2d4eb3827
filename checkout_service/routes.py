from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from checkout_service.auth import verify_token

router = APIRouter()


class CheckoutItem(BaseModel):
    sku: str
    quantity: int


class Payer(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class CheckoutRequest(BaseModel):
    user_id: str
    items: List[CheckoutItem]
    payer: Optional[Payer] = None


@router.post("/checkout")
def create_checkout_api(
    request: Request,
    body: CheckoutRequest,
    auth=Depends(verify_token),
):
    checkout = request.app.state.checkout
    result = checkout.create_checkout(
        body.user_id,
        [item.model_dump() for item in body.items],
        payer=body.payer.model_dump() if body.payer else None,
    )
    return {
        "order_id": result.order_id,
        "preference_id": result.preference_id,
        "redirect_url": result.redirect_url,
        "total": str(result.total),
        "currency": result.currency,
        "expires_at": result.expires_at.isoformat() + "Z",
    }


@router.get("/orders/{order_id}")
def get_order(order_id: str, request: Request, auth=Depends(verify_token)):
    order = request.app.state.ledger.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")

    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "cancel_reason": order.cancel_reason,
        "subtotal": str(order.subtotal),
        "shipping": str(order.shipping),
        "discount": str(order.discount),
        "total": str(order.total),
        "currency": order.currency,
        "items": [
            {
                "sku": item.sku,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "line_total": str(item.line_total),
                "snapshot": item.snapshot,
            }
            for item in order.items
        ],
        "payments": [
            {
                "provider": p.provider,
                "provider_payment_id": p.provider_payment_id,
                "provider_status": p.provider_status,
                "status": p.status,
            }
            for p in order.payments
        ],
    }


@router.post("/ops/reservations/sweep")
def sweep_reservations(request: Request, auth=Depends(verify_token)):
    expired = request.app.state.reservations.expire_overdue()
    return {"expired": expired}


@router.post("/ops/notifications/retry")
def retry_notifications(request: Request, limit: int = 50, auth=Depends(verify_token)):
    return request.app.state.reconciler.retry_failed(limit=limit)
