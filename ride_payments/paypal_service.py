from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy.exc import SQLAlchemyError

from ride_payments.errors import vendor_errors
from ride_payments.models import Payment

logger = structlog.get_logger(__name__)

SUPPORTED_CURRENCIES = ("CAD", "USD", "EUR", "GBP")
ORDER_INTENTS = ("AUTHORIZE", "CAPTURE")


def format_amount(amount) -> str:
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def create_order(client, db, amount: float, currency: str = "CAD", intent: str = "AUTHORIZE",
                 booking_id: int | None = None, user_id: str | None = None):
    payload = {
        "intent": intent,
        "purchase_units": [
            {"amount": {"currency_code": currency, "value": format_amount(amount)}},
        ],
        "application_context": {
            "shipping_preference": "NO_SHIPPING",
            "user_action": "CONTINUE" if intent == "AUTHORIZE" else "PAY_NOW",
        },
    }
    if booking_id is not None:
        payload["purchase_units"][0]["custom_id"] = str(booking_id)

    with vendor_errors("Failed to create PayPal order", "paypal_order_create_failed", booking_id=booking_id):
        order = client.post("/v2/checkout/orders", payload)

    logger.info("paypal_order_created", order_id=order.get("id"), intent=intent, booking_id=booking_id)

    if booking_id is not None and user_id:
        db.add(Payment(
            booking_id=booking_id,
            user_id=user_id,
            amount=float(amount),
            currency=currency.lower(),
            status="pending",
            payment_method="paypal",
            transaction_id=order.get("id"),
        ))
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("payment_mirror_write_failed", order_id=order.get("id"), error=str(exc))

    return order


def get_order(client, order_id: str):
    with vendor_errors("Failed to fetch PayPal order details", "paypal_order_get_failed", order_id=order_id):
        return client.get(f"/v2/checkout/orders/{order_id}")


def capture_order(client, order_id: str):
    with vendor_errors("Failed to capture PayPal order", "paypal_order_capture_failed", order_id=order_id):
        return client.post(f"/v2/checkout/orders/{order_id}/capture")


def authorize_order(client, order_id: str):
    with vendor_errors("Failed to authorize PayPal order", "paypal_order_authorize_failed", order_id=order_id):
        return client.post(f"/v2/checkout/orders/{order_id}/authorize")


def capture_authorization(client, authorization_id: str, amount: float | None = None, currency: str = "CAD"):
    """Capture an authorization; the full authorized amount unless ``amount`` is given."""
    payload = None
    if amount:
        payload = {"amount": {"currency_code": currency, "value": format_amount(amount)}}

    with vendor_errors("Failed to capture PayPal authorization", "paypal_authorization_capture_failed",
                       authorization_id=authorization_id):
        return client.post(f"/v2/payments/authorizations/{authorization_id}/capture", payload)


def void_authorization(client, authorization_id: str):
    with vendor_errors("Failed to void PayPal authorization", "paypal_authorization_void_failed",
                       authorization_id=authorization_id):
        client.post(f"/v2/payments/authorizations/{authorization_id}/void")
    logger.info("paypal_authorization_voided", authorization_id=authorization_id)
