"""Stripe webhook intake: signature verification and event dispatch."""
from datetime import datetime, timezone

import stripe
import structlog

from ride_payments import config
from ride_payments.errors import InvalidRequest
from ride_payments.models import Payment
from ride_payments.stripe_service import serialize

logger = structlog.get_logger(__name__)

# payment_intent.* event -> local mirror status
PAYMENT_INTENT_STATUSES = {
    "payment_intent.succeeded": "completed",
    "payment_intent.amount_capturable_updated": "authorized",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "cancelled",
    "payment_intent.requires_action": "requires_action",
}

# Settled rows accept no payment_intent transition other than captured -> completed
SETTLED_STATUSES = ("captured", "completed", "cancelled", "refunded")
SETTLED_TRANSITIONS = {"captured": ("completed",)}


def construct_event(payload: bytes, signature: str | None):
    if not signature:
        raise InvalidRequest("Missing Stripe signature header")
    try:
        event = stripe.Webhook.construct_event(payload, signature, config.stripe_webhook_secret())
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("webhook_signature_invalid", error=str(exc))
        raise InvalidRequest("Webhook signature verification failed")
    return serialize(event)


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return False
    if current in SETTLED_STATUSES:
        return new in SETTLED_TRANSITIONS.get(current, ())
    return True


def _mirror_row(db, payment_intent_id):
    if not payment_intent_id:
        return None
    return db.query(Payment).filter_by(payment_intent_id=payment_intent_id).first()


def handle_payment_intent_event(db, event):
    intent = event["data"]["object"]
    status = PAYMENT_INTENT_STATUSES[event["type"]]
    logger.info("payment_intent_event", event_type=event["type"], payment_intent_id=intent["id"])

    payment = _mirror_row(db, intent["id"])
    if payment is None:
        return
    if not can_transition(payment.status, status):
        logger.info("payment_status_transition_skipped", payment_intent_id=intent["id"],
                    current=payment.status, incoming=status)
        return

    payment.status = status
    if status == "completed" and payment.captured_at is None:
        payment.captured_at = datetime.now(timezone.utc)
    db.commit()


def handle_charge_event(db, event):
    charge = event["data"]["object"]
    logger.info("charge_event", event_type=event["type"], charge_id=charge["id"])
    if event["type"] != "charge.refunded":
        return

    payment = _mirror_row(db, charge.get("payment_intent"))
    if payment is None or payment.status == "refunded":
        return
    payment.status = "refunded"
    payment.refunded_at = datetime.now(timezone.utc)
    db.commit()


def log_event(db, event):
    obj = event["data"]["object"]
    logger.info("stripe_event", event_type=event["type"], object_id=obj.get("id"))


EVENT_HANDLERS = {
    **{event_type: handle_payment_intent_event for event_type in PAYMENT_INTENT_STATUSES},
    "charge.succeeded": handle_charge_event,
    "charge.failed": handle_charge_event,
    "charge.captured": handle_charge_event,
    "charge.refunded": handle_charge_event,
    "customer.created": log_event,
    "customer.updated": log_event,
    "customer.deleted": log_event,
    "payment_method.attached": log_event,
    "payment_method.detached": log_event,
    "setup_intent.succeeded": log_event,
    "setup_intent.setup_failed": log_event,
}


def dispatch_event(db, event) -> bool:
    """Run the handler for this event type; False when the type is not handled."""
    handler = EVENT_HANDLERS.get(event["type"])
    if handler is None:
        logger.info("webhook_event_unhandled", event_type=event["type"])
        return False
    handler(db, event)
    return True
