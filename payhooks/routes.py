from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from payhooks.auth import verify_token
from payhooks.config import get_settings
from payhooks.dependencies import get_checkout, get_engine, get_status_cache
from payhooks.errors import NotFoundError

router = APIRouter()


class OrderRequest(BaseModel):
    subtotal: Decimal = Field(ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    total_amount: Decimal = Field(gt=0)
    payment_method: Optional[str] = None
    shipping_type: str = "standard"
    shipping_info: Dict[str, Any] = Field(default_factory=dict)


class CheckoutRequest(OrderRequest):
    provider: Literal["card", "aggregator"] = "card"


class MobileMoneyRequest(OrderRequest):
    phone_number: str = Field(min_length=9)


def _order_fields(request: OrderRequest) -> Dict[str, Any]:
    return {
        "currency": get_settings().default_currency,
        "subtotal": request.subtotal,
        "tax_amount": request.tax_amount,
        "shipping_cost": request.shipping_cost,
        "total_amount": request.total_amount,
        "payment_method": request.payment_method,
        "shipping_type": request.shipping_type,
        "shipping_info": request.shipping_info,
    }


@router.post("/orders")
def create_order(
    request: CheckoutRequest,
    user=Depends(verify_token),
    checkout=Depends(get_checkout),
):
    return checkout.initiate(user_id=user["user_id"], provider=request.provider, **_order_fields(request))


@router.post("/payments/mobile-money")
def create_mobile_money_payment(
    request: MobileMoneyRequest,
    user=Depends(verify_token),
    checkout=Depends(get_checkout),
    status_cache=Depends(get_status_cache),
):
    result = checkout.initiate_mobile_money(
        status_cache,
        request.phone_number,
        user_id=user["user_id"],
        **_order_fields(request),
    )
    return {"success": True, "message": "Payment initiated successfully", "data": result}


@router.get("/payments/mobile-money/status/{lookup_id}")
def mobile_money_status(lookup_id: str, status_cache=Depends(get_status_cache)):
    record = (
        status_cache.find_by_secondary_key("transaction_id", lookup_id)
        or status_cache.get(lookup_id)
        or status_cache.find_by_secondary_key("invoice_id", lookup_id)
    )
    if record is None:
        raise NotFoundError("Payment not found", id=lookup_id, status="NOT_FOUND")
    return {"success": record.status == "completed", "data": record.to_public()}


@router.get("/payments/{api_ref}")
def payment_status(api_ref: str, user=Depends(verify_token), engine=Depends(get_engine)):
    payment = engine.find_payment(api_ref)
    if payment is None:
        raise NotFoundError("Payment not found", api_ref=api_ref)

    body = {
        "payment_id": payment.id,
        "api_ref": payment.api_ref,
        "status": payment.status,
        "provider": payment.provider,
        "amount": payment.amount,
        "currency": payment.currency,
    }
    if payment.order_id:
        order = engine.orders.get(payment.order_id)
        if order is not None:
            body["order_number"] = order.order_number
            body["order_payment_status"] = order.payment_status
    return body
