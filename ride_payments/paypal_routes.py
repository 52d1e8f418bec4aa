from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ride_payments import paypal_service
from ride_payments.database import get_db
from ride_payments.errors import ServiceUnavailable
from ride_payments.paypal_client import create_paypal_client
from ride_payments.responses import envelope

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/paypal", tags=["paypal"])

NOT_CONFIGURED = (
    "PayPal backend is not configured. Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET "
    "environment variables before enabling PayPal payments."
)

_client = None


def get_paypal_client():
    global _client
    if _client is None:
        try:
            _client = create_paypal_client()
        except ValueError as exc:
            logger.error("paypal_client_unavailable", error=str(exc))
            raise ServiceUnavailable(NOT_CONFIGURED)
    return _client


class OrderRequest(BaseModel):
    amount: float = Field(gt=0)
    currency: Literal["CAD", "USD", "EUR", "GBP"] = "CAD"
    intent: Literal["AUTHORIZE", "CAPTURE"] = "AUTHORIZE"
    booking_id: Optional[int] = None
    user_id: Optional[str] = None


class AuthorizationCaptureRequest(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    currency: Literal["CAD", "USD", "EUR", "GBP"] = "CAD"


@router.post("/orders", status_code=201)
def create_order_api(request: OrderRequest, client=Depends(get_paypal_client), db=Depends(get_db)):
    order = paypal_service.create_order(
        client,
        db,
        amount=request.amount,
        currency=request.currency,
        intent=request.intent,
        booking_id=request.booking_id,
        user_id=request.user_id,
    )
    return envelope(order, status_code=201)


@router.get("/orders/{order_id}")
def get_order_api(order_id: str, client=Depends(get_paypal_client)):
    return envelope(paypal_service.get_order(client, order_id))


@router.post("/orders/{order_id}/capture")
def capture_order_api(order_id: str, client=Depends(get_paypal_client)):
    return envelope(paypal_service.capture_order(client, order_id))


@router.post("/orders/{order_id}/authorize")
def authorize_order_api(order_id: str, client=Depends(get_paypal_client)):
    return envelope(paypal_service.authorize_order(client, order_id))


@router.post("/authorizations/{authorization_id}/capture")
def capture_authorization_api(
    authorization_id: str,
    request: Optional[AuthorizationCaptureRequest] = None,
    client=Depends(get_paypal_client),
):
    request = request or AuthorizationCaptureRequest()
    capture = paypal_service.capture_authorization(client, authorization_id, request.amount, request.currency)
    return envelope(capture)


@router.post("/authorizations/{authorization_id}/void")
def void_authorization_api(authorization_id: str, client=Depends(get_paypal_client)):
    paypal_service.void_authorization(client, authorization_id)
    return envelope({"voided": True})
