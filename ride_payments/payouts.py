from datetime import datetime, timezone

import stripe
import structlog
from sqlalchemy.exc import SQLAlchemyError

from ride_payments import config
from ride_payments.errors import InvalidRequest, NotFound, vendor_errors
from ride_payments.models import PayoutRequest, User
from ride_payments.stripe_service import APP_TAG, to_cents

logger = structlog.get_logger(__name__)

PAYABLE_STATUSES = ("pending", "approved")


def get_payout_request(db, payout_request_id: str) -> PayoutRequest:
    payout_request = db.get(PayoutRequest, payout_request_id)
    if payout_request is None:
        raise NotFound("Payout request not found")
    return payout_request


def initiate_driver_payout(db, payout_request: PayoutRequest):
    """Pay out an approved request to the driver's connected account and mark it processing."""
    if payout_request.status not in PAYABLE_STATUSES:
        raise InvalidRequest(
            f"Invalid payout request status: {payout_request.status}. Expected 'pending' or 'approved'."
        )

    driver = db.get(User, payout_request.driver_id)
    if driver is None:
        raise NotFound("Driver not found")
    if not driver.stripe_connect_account_id:
        raise InvalidRequest("Driver does not have a Stripe Connect account configured")

    with vendor_errors("Failed to create Stripe payout", "payout_create_failed",
                       payout_request_id=payout_request.id, driver_id=payout_request.driver_id):
        payout = stripe.Payout.create(
            amount=to_cents(payout_request.amount),
            currency=config.payout_currency(),
            method=config.payout_method(),
            description=f"Payout for payout request {payout_request.id}",
            metadata={
                "payout_request_id": payout_request.id,
                "driver_id": payout_request.driver_id,
                "platform": APP_TAG,
            },
            stripe_account=driver.stripe_connect_account_id,
        )

    arrival_date = None
    if getattr(payout, "arrival_date", None):
        arrival_date = datetime.fromtimestamp(payout.arrival_date, tz=timezone.utc)

    result = {
        "payout_request_id": payout_request.id,
        "payout_id": payout.id,
        "amount": payout.amount / 100 if getattr(payout, "amount", None) else payout_request.amount,
        "currency": (getattr(payout, "currency", None) or config.payout_currency()).upper(),
        "arrival_date": arrival_date,
    }
    logger.info("payout_created", payout_id=payout.id, payout_request_id=payout_request.id,
                driver_id=payout_request.driver_id)

    payout_request.status = "processing"
    payout_request.payout_id = payout.id
    payout_request.processed_at = datetime.now(timezone.utc)
    payout_request.arrival_date = arrival_date
    try:
        db.commit()
    except SQLAlchemyError as exc:
        # The money is already moving; report success and leave the row for reconciliation
        db.rollback()
        logger.warning("payout_request_update_failed", payout_request_id=result["payout_request_id"],
                       payout_id=payout.id, error=str(exc))

    return result
