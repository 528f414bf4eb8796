from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from hotel_payments.auth import verify_token
from hotel_payments.client import PaymentClient
from hotel_payments.schemas import CaptureRequest, CheckoutRequest, PaymentIntent, RefundRequest
from hotel_payments.subscriptions import PLANS

router = APIRouter()


def get_payment_client(request: Request) -> PaymentClient:
    """One client per process, built on first use from the app's config."""
    client = getattr(request.app.state, "payment_client", None)
    if client is None:
        client = PaymentClient(request.app.state.config)
        request.app.state.payment_client = client
    return client


@router.post("/payments")
async def create_payment_api(
    intent: PaymentIntent,
    auth=Depends(verify_token),
    client: PaymentClient = Depends(get_payment_client),
):
    payment = await client.create_payment(intent)
    return {"success": True, "payment": payment.model_dump(mode="json")}


@router.post("/checkout")
async def create_checkout_api(
    request: CheckoutRequest,
    auth=Depends(verify_token),
    client: PaymentClient = Depends(get_payment_client),
):
    payment = await client.create_checkout(
        request.amount,
        currency=request.currency,
        description=request.description,
        metadata=request.metadata,
        callback_url=request.callback_url,
    )
    return {
        "success": True,
        "checkout_url": payment.checkout_url,
        "payment_id": payment.id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
    }


@router.get("/payments")
async def list_payments_api(
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = None,
    status: Optional[str] = None,
    source_type: Optional[str] = None,
    page: Optional[int] = Query(None, ge=1),
    per_page: Optional[int] = Query(None, ge=1, le=100),
    auth=Depends(verify_token),
    client: PaymentClient = Depends(get_payment_client),
):
    result = await client.list_payments(
        from_=from_,
        to=to,
        status=status,
        source_type=source_type,
        page=page,
        per_page=per_page,
    )
    return result.model_dump(mode="json")


@router.get("/payments/{payment_id}")
async def get_payment_api(
    payment_id: str,
    auth=Depends(verify_token),
    client: PaymentClient = Depends(get_payment_client),
):
    payment = await client.get_payment(payment_id)
    return {"payment": payment.model_dump(mode="json")}


@router.post("/payments/{payment_id}/capture")
async def capture_payment_api(
    payment_id: str,
    request: Optional[CaptureRequest] = None,
    auth=Depends(verify_token),
    client: PaymentClient = Depends(get_payment_client),
):
    amount = request.amount if request else None
    payment = await client.capture_payment(payment_id, amount=amount)
    return {"success": True, "payment": payment.model_dump(mode="json")}


@router.post("/payments/{payment_id}/refund")
async def refund_payment_api(
    payment_id: str,
    request: Optional[RefundRequest] = None,
    auth=Depends(verify_token),
    client: PaymentClient = Depends(get_payment_client),
):
    request = request or RefundRequest()
    payment = await client.refund_payment(payment_id, amount=request.amount, reason=request.reason)
    return {"success": True, "payment": payment.model_dump(mode="json")}


@router.get("/plans")
def list_plans():
    return {
        "plans": [
            {
                "id": plan.id,
                "name": plan.name,
                "description": plan.description,
                "amount": str(plan.amount),
                "period": plan.period,
                "features": list(plan.features),
            }
            for plan in PLANS.values()
        ]
    }
