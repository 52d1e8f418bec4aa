from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response
from pydantic import BaseModel, Field

from ride_payments import config, connect_service, payout_methods, payouts, stripe_service, webhooks
from ride_payments.auth import current_user_id, ensure_owner
from ride_payments.database import get_db
from ride_payments.errors import InvalidRequest, NotFound, ProviderError
from ride_payments.models import Payment
from ride_payments.responses import envelope
from ride_payments.stripe_service import serialize

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
payments_router = APIRouter(prefix="/api/payments", tags=["payments"])


class PaymentIntentRequest(BaseModel):
    amount: float = Field(gt=0)                  # dollars
    currency: str = "cad"
    capture_method: Literal["automatic", "manual"] = "manual"
    booking_id: int
    user_id: str = Field(min_length=1)
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class CaptureRequest(BaseModel):
    amount_to_capture: Optional[float] = Field(default=None, gt=0)


class CancelRequest(BaseModel):
    cancellation_reason: Optional[str] = None


class RefundRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)
    amount: Optional[float] = Field(default=None, gt=0)
    reason: Optional[str] = None


class CustomerRequest(BaseModel):
    email: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    name: Optional[str] = None
    phone: Optional[str] = None
    metadata: Optional[dict[str, str]] = None


class CustomerUpdateRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    metadata: Optional[dict[str, str]] = None


class AttachPaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)
    set_as_default: bool = False


class SetupIntentRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    payment_method_types: Optional[list[str]] = None


class PayoutMethodRequest(BaseModel):
    user_id: str = Field(min_length=1)
    payout_type: str = Field(min_length=1)
    details: dict
    make_default: bool = False


class DefaultPayoutMethodRequest(BaseModel):
    user_id: str = Field(min_length=1)


class PayoutRequestBody(BaseModel):
    payout_request_id: str = Field(min_length=1)


class OnboardingLinkRequest(BaseModel):
    user_id: str = Field(min_length=1)
    refresh_url: Optional[str] = None
    return_url: Optional[str] = None


# --- Payment intents and refunds -------------------------------------------

@router.post("/payment-intents")
def create_payment_intent_api(
    request: PaymentIntentRequest,
    idempotency_key: Optional[str] = Header(None),
    db=Depends(get_db),
):
    intent = stripe_service.create_payment_intent(
        db,
        amount=request.amount,
        currency=request.currency,
        booking_id=request.booking_id,
        user_id=request.user_id,
        capture_method=request.capture_method,
        customer_id=request.customer_id,
        payment_method_id=request.payment_method_id,
        idempotency_key=request.idempotency_key or idempotency_key,
    )
    return envelope({"payment_intent": serialize(intent), "client_secret": intent.client_secret})


@router.get("/payment-intents/{payment_intent_id}")
def get_payment_intent_api(payment_intent_id: str):
    intent = stripe_service.retrieve_payment_intent(payment_intent_id)
    return envelope({"payment_intent": serialize(intent)})


@router.post("/payment-intents/{payment_intent_id}/capture")
def capture_payment_intent_api(payment_intent_id: str, request: Optional[CaptureRequest] = None, db=Depends(get_db)):
    amount = request.amount_to_capture if request else None
    intent, amount_processed = stripe_service.capture_payment_intent(db, payment_intent_id, amount)
    return envelope({"payment_intent": serialize(intent), "amount_processed": amount_processed})


@router.post("/payment-intents/{payment_intent_id}/cancel")
def cancel_payment_intent_api(payment_intent_id: str, request: Optional[CancelRequest] = None, db=Depends(get_db)):
    reason = request.cancellation_reason if request else None
    intent = stripe_service.cancel_payment_intent(db, payment_intent_id, reason)
    return envelope({"payment_intent": serialize(intent), "amount_processed": 0})


@router.post("/refunds")
def create_refund_api(request: RefundRequest, db=Depends(get_db)):
    refund, amount_processed = stripe_service.create_refund(db, request.payment_intent_id, request.amount, request.reason)
    return envelope({"refund": serialize(refund), "amount_processed": amount_processed})


@router.post("/holds/release-expired")
def release_expired_holds_api(db=Depends(get_db)):
    return envelope(stripe_service.release_expired_holds(db))


# --- Customers, payment methods, setup intents -----------------------------

@router.post("/customers")
def create_customer_api(request: CustomerRequest):
    customer = stripe_service.create_customer(
        request.email, request.user_id, name=request.name, phone=request.phone, metadata=request.metadata
    )
    return envelope({"customer": serialize(customer)})


@router.get("/customers/{customer_id}")
def get_customer_api(customer_id: str):
    return envelope({"customer": serialize(stripe_service.get_customer(customer_id))})


@router.put("/customers/{customer_id}")
def update_customer_api(customer_id: str, request: CustomerUpdateRequest):
    customer = stripe_service.update_customer(customer_id, **request.model_dump())
    return envelope({"customer": serialize(customer)})


@router.delete("/customers/{customer_id}")
def delete_customer_api(customer_id: str):
    return envelope({"customer": serialize(stripe_service.delete_customer(customer_id))})


@router.post("/customers/{customer_id}/payment-methods")
def attach_payment_method_api(customer_id: str, request: AttachPaymentMethodRequest):
    payment_method = stripe_service.attach_payment_method(
        customer_id, request.payment_method_id, request.set_as_default
    )
    return envelope({"payment_method": serialize(payment_method)})


@router.get("/customers/{customer_id}/payment-methods")
def list_payment_methods_api(customer_id: str, type: str = "card"):
    methods = stripe_service.list_payment_methods(customer_id, type)
    return envelope({"payment_methods": serialize(list(methods))})


@router.get("/payment-methods/{payment_method_id}")
def get_payment_method_api(payment_method_id: str):
    return envelope({"payment_method": serialize(stripe_service.get_payment_method(payment_method_id))})


@router.delete("/payment-methods/{payment_method_id}")
def detach_payment_method_api(payment_method_id: str):
    return envelope({"payment_method": serialize(stripe_service.detach_payment_method(payment_method_id))})


@router.post("/setup-intents")
def create_setup_intent_api(request: SetupIntentRequest):
    setup_intent = stripe_service.create_setup_intent(request.customer_id, request.payment_method_types)
    return envelope({"setup_intent": serialize(setup_intent), "client_secret": setup_intent.client_secret})


# --- Payout methods ----------------------------------------------------------

@router.post("/payout-methods")
def create_payout_method_api(request: PayoutMethodRequest, user=Depends(current_user_id), db=Depends(get_db)):
    ensure_owner(user, request.user_id)
    method = payout_methods.create_payout_method(
        db, request.user_id, request.payout_type, request.details, request.make_default
    )
    return envelope({"payout_method": method.to_dict()}, status_code=201)


@router.get("/payout-methods")
def list_payout_methods_api(user_id: Optional[str] = None, user=Depends(current_user_id), db=Depends(get_db)):
    if not user_id:
        raise InvalidRequest("Invalid or missing user_id query parameter")
    ensure_owner(user, user_id)

    methods = payout_methods.list_payout_methods(db, user_id)
    if not methods:
        raise NotFound("No payout methods found for user")
    return envelope({"payout_methods": [method.to_dict() for method in methods]})


@router.delete("/payout-methods/{payout_method_id}", status_code=204)
def delete_payout_method_api(payout_method_id: str, user=Depends(current_user_id), db=Depends(get_db)):
    method = payout_methods.get_payout_method(db, payout_method_id)
    ensure_owner(user, method.user_id, "Unauthorized: token does not match payout method owner")
    payout_methods.delete_payout_method(db, method)
    return Response(status_code=204)


@router.post("/payout-methods/{payout_method_id}/default")
def set_default_payout_method_api(
    payout_method_id: str,
    request: DefaultPayoutMethodRequest,
    user=Depends(current_user_id),
    db=Depends(get_db),
):
    ensure_owner(user, request.user_id)
    method = payout_methods.set_default_payout_method(db, request.user_id, payout_method_id)
    return envelope({"payout_method": method.to_dict()})


# --- Payouts and Connect onboarding ------------------------------------------

@router.post("/payouts")
def create_payout_api(request: PayoutRequestBody, user=Depends(current_user_id), db=Depends(get_db)):
    payout_request = payouts.get_payout_request(db, request.payout_request_id)
    ensure_owner(user, payout_request.driver_id, "Unauthorized: token does not match payout request owner")
    return envelope(payouts.initiate_driver_payout(db, payout_request))


@router.post("/connect/onboarding-link")
def create_onboarding_link_api(request: OnboardingLinkRequest, user=Depends(current_user_id), db=Depends(get_db)):
    ensure_owner(user, request.user_id)
    refresh_url = request.refresh_url or config.connect_refresh_url()
    return_url = request.return_url or config.connect_return_url()
    if not refresh_url or not return_url:
        raise InvalidRequest("Invalid or missing refresh_url and return_url")

    return envelope(connect_service.create_account_link(db, request.user_id, refresh_url, return_url))


@router.get("/connect/account-status")
def get_account_status_api(user_id: Optional[str] = None, user=Depends(current_user_id), db=Depends(get_db)):
    if not user_id:
        raise InvalidRequest("Invalid or missing user_id query parameter")
    ensure_owner(user, user_id)
    return envelope(connect_service.get_account_status(db, user_id))


# --- Webhooks ------------------------------------------------------------------

@router.post("/webhooks")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None), db=Depends(get_db)):
    payload = await request.body()
    event = webhooks.construct_event(payload, stripe_signature)

    try:
        webhooks.dispatch_event(db, event)
    except Exception as exc:
        db.rollback()
        logger.exception("webhook_processing_failed", event_type=event["type"])
        raise ProviderError("Webhook processing failed") from exc

    return envelope({"received": True})


# --- Local payment history ------------------------------------------------------

@payments_router.get("/history")
def payment_history_api(
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    user=Depends(current_user_id),
    db=Depends(get_db),
):
    if not user_id:
        raise InvalidRequest("Invalid or missing user_id query parameter")
    ensure_owner(user, user_id)

    query = db.query(Payment).filter(Payment.user_id == user_id)
    if status:
        query = query.filter(Payment.status == status)
    payments = query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()
    return envelope({"payments": [payment.to_dict() for payment in payments]})
