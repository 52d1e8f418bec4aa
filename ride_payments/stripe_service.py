import json
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

import stripe
import structlog
from sqlalchemy.exc import SQLAlchemyError

from ride_payments import config
from ride_payments.errors import InvalidRequest, NotFound, vendor_errors
from ride_payments.models import Payment

stripe.api_key = config.stripe_secret_key()
stripe.api_version = config.stripe_api_version()

logger = structlog.get_logger(__name__)

APP_TAG = "RidePayments"
AUTHORIZATION_HOLD = timedelta(hours=12)
HOLD_STATUSES = ("authorized", "requires_action")
CANCELLABLE_STATUSES = ("requires_payment_method", "requires_capture", "requires_confirmation", "requires_action")

# PaymentIntent status -> local mirror status
MIRROR_STATUSES = {
    "requires_capture": "authorized",
    "requires_action": "requires_action",
    "succeeded": "completed",
    "canceled": "cancelled",
}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def serialize(obj):
    """Plain JSON-ready data from Stripe objects (single objects or lists)."""
    if isinstance(obj, list):
        return [serialize(item) for item in obj]
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


def _metadata(obj) -> dict:
    return serialize(getattr(obj, "metadata", None)) or {}


def _positive_cents(amount, field: str) -> int:
    cents = to_cents(amount)
    if cents < 1:
        raise InvalidRequest(f"Invalid or missing {field}")
    return cents


def _save_mirror(db, payment: Payment | None, **fields):
    if payment is None:
        return None
    for name, value in fields.items():
        setattr(payment, name, value)
    try:
        db.add(payment)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("payment_mirror_write_failed", payment_intent_id=payment.payment_intent_id, error=str(exc))
        return None
    return payment


def update_mirror(db, payment_intent_id: str, **fields):
    payment = db.query(Payment).filter_by(payment_intent_id=payment_intent_id).first()
    if payment is None:
        logger.info("payment_mirror_missing", payment_intent_id=payment_intent_id)
    return _save_mirror(db, payment, **fields)


# --- Payment intents -------------------------------------------------------

def create_payment_intent(
    db,
    amount: float,
    currency: str,
    booking_id: int,
    user_id: str,
    capture_method: str = "manual",
    customer_id: str | None = None,
    payment_method_id: str | None = None,
    idempotency_key: str | None = None,
):
    customer_id = (customer_id or "").strip() or None
    if payment_method_id and not customer_id:
        raise InvalidRequest("customer_id is required when using a saved payment_method_id")

    metadata = {
        "booking_id": str(booking_id),
        "user_id": user_id,
        "app": APP_TAG,
        "created_at": now_iso(),
    }
    params = {
        "amount": _positive_cents(amount, "amount"),
        "currency": currency.lower(),
        "capture_method": capture_method,
        "metadata": metadata,
        "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
    }
    if customer_id:
        metadata["customer_id"] = customer_id
        params["customer"] = customer_id
    if payment_method_id:
        params["payment_method"] = payment_method_id
        params["confirm"] = True
    if idempotency_key:
        params["idempotency_key"] = idempotency_key

    with vendor_errors("Failed to create payment authorization", "payment_intent_create_failed",
                       booking_id=booking_id, user_id=user_id):
        intent = stripe.PaymentIntent.create(**params)

    logger.info("payment_intent_created", payment_intent_id=intent.id, booking_id=booking_id, status=intent.status)

    existing = db.query(Payment).filter_by(payment_intent_id=intent.id).first()
    payment = existing or Payment(
        booking_id=booking_id,
        user_id=user_id,
        amount=float(amount),
        currency=currency.lower(),
        payment_method="stripe",
        payment_method_id=payment_method_id,
        payment_intent_id=intent.id,
        authorization_id=intent.id,
    )
    expires_at = datetime.now(timezone.utc) + AUTHORIZATION_HOLD if capture_method == "manual" else None
    _save_mirror(db, payment, status=MIRROR_STATUSES.get(intent.status, "pending"), expires_at=expires_at)

    return intent


def retrieve_payment_intent(payment_intent_id: str, expand: list[str] | None = None):
    with vendor_errors("Failed to retrieve payment status", "payment_intent_retrieve_failed",
                       payment_intent_id=payment_intent_id):
        params = {"expand": expand} if expand else {}
        return stripe.PaymentIntent.retrieve(payment_intent_id, **params)


def capture_payment_intent(db, payment_intent_id: str, amount_to_capture: float | None = None):
    """Capture a held authorization, optionally for less than the held amount.

    Returns the captured intent and the captured amount in dollars.
    """
    intent = retrieve_payment_intent(payment_intent_id)
    if intent.status != "requires_capture":
        raise InvalidRequest(f"Payment intent cannot be captured. Current status: {intent.status}")

    capture_amount = intent.amount
    if amount_to_capture:
        capture_amount = _positive_cents(amount_to_capture, "amount_to_capture")
        if capture_amount > intent.amount:
            raise InvalidRequest("Capture amount cannot exceed authorized amount")

    with vendor_errors("Failed to capture payment", "payment_intent_capture_failed",
                       payment_intent_id=payment_intent_id):
        if capture_amount < intent.amount:
            captured = stripe.PaymentIntent.capture(payment_intent_id, amount_to_capture=capture_amount)
        else:
            captured = stripe.PaymentIntent.capture(payment_intent_id)

    logger.info("payment_intent_captured", payment_intent_id=payment_intent_id, amount=capture_amount)
    update_mirror(db, payment_intent_id, status="captured", captured_at=datetime.now(timezone.utc))
    return captured, capture_amount / 100


def cancel_payment_intent(db, payment_intent_id: str, cancellation_reason: str | None = None):
    intent = retrieve_payment_intent(payment_intent_id)
    if intent.status not in CANCELLABLE_STATUSES:
        raise InvalidRequest(f"Payment intent cannot be cancelled. Current status: {intent.status}")

    with vendor_errors("Failed to cancel payment authorization", "payment_intent_cancel_failed",
                       payment_intent_id=payment_intent_id):
        if cancellation_reason:
            metadata = _metadata(intent)
            metadata.update(cancellation_reason=cancellation_reason, cancelled_at=now_iso())
            stripe.PaymentIntent.modify(payment_intent_id, metadata=metadata)
        cancelled = stripe.PaymentIntent.cancel(payment_intent_id)

    logger.info("payment_intent_cancelled", payment_intent_id=payment_intent_id, reason=cancellation_reason)
    update_mirror(db, payment_intent_id, status="cancelled")
    return cancelled


def create_refund(db, payment_intent_id: str, amount: float | None = None, reason: str | None = None):
    """Refund a captured payment; returns the refund and the refunded amount in dollars."""
    intent = retrieve_payment_intent(payment_intent_id, expand=["latest_charge"])
    if intent.status != "succeeded":
        raise InvalidRequest(f"Payment cannot be refunded. Current status: {intent.status}")

    refundable = intent.amount_received - _amount_refunded(intent)
    if refundable <= 0:
        raise InvalidRequest("Payment has already been fully refunded")

    refund_amount = refundable
    if amount:
        refund_amount = _positive_cents(amount, "amount")
        if refund_amount > refundable:
            raise InvalidRequest("Refund amount cannot exceed remaining captured amount")

    metadata = _metadata(intent)
    with vendor_errors("Failed to process refund", "refund_create_failed", payment_intent_id=payment_intent_id):
        refund = stripe.Refund.create(
            payment_intent=payment_intent_id,
            amount=refund_amount,
            metadata={
                "booking_id": metadata.get("booking_id", ""),
                "user_id": metadata.get("user_id", ""),
                "refund_reason": reason or "requested",
                "refunded_at": now_iso(),
            },
        )

    logger.info("refund_created", payment_intent_id=payment_intent_id, refund_id=refund.id, amount=refund_amount)
    update_mirror(
        db,
        payment_intent_id,
        status="refunded",
        refund_id=refund.id,
        refund_reason=reason or "requested",
        refunded_at=datetime.now(timezone.utc),
    )
    return refund, refund_amount / 100


def _amount_refunded(intent) -> int:
    charge = getattr(intent, "latest_charge", None)
    if isinstance(charge, stripe.StripeObject):
        return getattr(charge, "amount_refunded", None) or 0
    return 0


def release_expired_holds(db, now: datetime | None = None):
    """Cancel Stripe authorizations whose hold window has passed.

    Rows still ``authorized`` or ``requires_action`` after ``expires_at`` are
    cancelled at Stripe and marked ``cancelled``. A Stripe failure leaves the
    row untouched for the next run.
    """
    now = now or datetime.now(timezone.utc)
    expired = (
        db.query(Payment)
        .filter(
            Payment.payment_method == "stripe",
            Payment.status.in_(HOLD_STATUSES),
            Payment.expires_at.isnot(None),
            Payment.expires_at <= now,
        )
        .order_by(Payment.expires_at.asc())
        .all()
    )

    released, failed = [], []
    for payment in expired:
        try:
            stripe.PaymentIntent.cancel(payment.payment_intent_id, cancellation_reason="abandoned")
        except stripe.StripeError as exc:
            logger.warning("hold_release_failed", payment_intent_id=payment.payment_intent_id, error=str(exc))
            failed.append(payment.payment_intent_id)
            continue
        if _save_mirror(db, payment, status="cancelled") is None:
            failed.append(payment.payment_intent_id)
            continue
        released.append(payment.payment_intent_id)

    logger.info("expired_holds_released", released=len(released), failed=len(failed))
    return {"released": released, "failed": failed}


# --- Customers and payment methods -----------------------------------------

def create_customer(email: str, user_id: str, name: str | None = None, phone: str | None = None,
                    metadata: dict | None = None):
    """Return the customer for this email, creating it when none exists."""
    with vendor_errors("Failed to create customer", "customer_create_failed", user_id=user_id):
        existing = stripe.Customer.list(email=email, limit=1).data
        if existing:
            customer = existing[0]
            current = _metadata(customer)
            if current.get("user_id") != user_id:
                current.update(user_id=user_id, updated_at=now_iso())
                customer = stripe.Customer.modify(customer.id, metadata=current)
                logger.info("customer_relinked", customer_id=customer.id, user_id=user_id)
            return customer

        customer = stripe.Customer.create(
            email=email,
            name=name,
            phone=phone,
            metadata={"user_id": user_id, "app": APP_TAG, "created_at": now_iso(), **(metadata or {})},
        )

    logger.info("customer_created", customer_id=customer.id, user_id=user_id)
    return customer


def get_customer(customer_id_or_email: str):
    with vendor_errors("Failed to retrieve customer", "customer_retrieve_failed", customer=customer_id_or_email):
        if "@" not in customer_id_or_email:
            return stripe.Customer.retrieve(customer_id_or_email)
        matches = stripe.Customer.list(email=customer_id_or_email, limit=1).data
    if not matches:
        raise NotFound("Customer not found")
    return matches[0]


def update_customer(customer_id: str, email=None, name=None, phone=None, metadata=None):
    params = {}
    if email:
        params["email"] = email
    if name:
        params["name"] = name
    if phone:
        params["phone"] = phone
    if metadata:
        params["metadata"] = {**metadata, "updated_at": now_iso()}

    with vendor_errors("Failed to update customer", "customer_update_failed", customer_id=customer_id):
        return stripe.Customer.modify(customer_id, **params)


def delete_customer(customer_id: str):
    with vendor_errors("Failed to delete customer", "customer_delete_failed", customer_id=customer_id):
        deleted = stripe.Customer.delete(customer_id)
    logger.info("customer_deleted", customer_id=customer_id)
    return deleted


def attach_payment_method(customer_id: str, payment_method_id: str, set_as_default: bool = False):
    with vendor_errors("Failed to attach payment method", "payment_method_attach_failed",
                       customer_id=customer_id, payment_method_id=payment_method_id):
        payment_method = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        if set_as_default:
            stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": payment_method_id})
    return payment_method


def detach_payment_method(payment_method_id: str):
    with vendor_errors("Failed to detach payment method", "payment_method_detach_failed",
                       payment_method_id=payment_method_id):
        return stripe.PaymentMethod.detach(payment_method_id)


def list_payment_methods(customer_id: str, type: str = "card"):
    with vendor_errors("Failed to list payment methods", "payment_method_list_failed", customer_id=customer_id):
        return stripe.PaymentMethod.list(customer=customer_id, type=type).data


def get_payment_method(payment_method_id: str):
    with vendor_errors("Failed to retrieve payment method", "payment_method_retrieve_failed",
                       payment_method_id=payment_method_id):
        return stripe.PaymentMethod.retrieve(payment_method_id)


def create_setup_intent(customer_id: str, payment_method_types: list[str] | None = None):
    with vendor_errors("Failed to create setup intent", "setup_intent_create_failed", customer_id=customer_id):
        return stripe.SetupIntent.create(
            customer=customer_id,
            payment_method_types=payment_method_types or ["card"],
            usage="off_session",
            metadata={"created_at": now_iso(), "app": APP_TAG},
        )
