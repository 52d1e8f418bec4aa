"""Stripe Connect (Express) onboarding for drivers receiving payouts."""
import stripe
import structlog
from sqlalchemy.exc import SQLAlchemyError

from ride_payments import config
from ride_payments.errors import NotFound, vendor_errors
from ride_payments.models import User
from ride_payments.stripe_service import APP_TAG, now_iso

logger = structlog.get_logger(__name__)


def default_account_status():
    return {
        "stripe_account_id": "",
        "payouts_enabled": False,
        "charges_enabled": False,
        "details_submitted": False,
        "requirements": {"currently_due": [], "past_due": [], "eventually_due": []},
    }


def _due(requirements, name: str) -> list:
    return list(getattr(requirements, name, None) or [])


def get_or_create_connect_account(db, user_id: str) -> str:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if user.stripe_connect_account_id:
        return user.stripe_connect_account_id

    params = {
        "type": "express",
        "country": config.connect_country(),
        "business_type": "individual",
        "metadata": {"user_id": user_id, "app": APP_TAG, "created_at": now_iso()},
    }
    if user.email:
        params["email"] = user.email

    with vendor_errors("Failed to create Stripe Connect account", "connect_account_create_failed", user_id=user_id):
        account = stripe.Account.create(**params)
    logger.info("connect_account_created", user_id=user_id, stripe_account_id=account.id)

    user.stripe_connect_account_id = account.id
    try:
        db.commit()
    except SQLAlchemyError as exc:
        # The Stripe account exists either way; the next call creates a fresh one
        db.rollback()
        logger.warning("connect_account_id_not_stored", user_id=user_id, stripe_account_id=account.id, error=str(exc))

    return account.id


def create_account_link(db, user_id: str, refresh_url: str, return_url: str):
    stripe_account_id = get_or_create_connect_account(db, user_id)

    with vendor_errors("Failed to create account link", "account_link_create_failed",
                       user_id=user_id, stripe_account_id=stripe_account_id):
        link = stripe.AccountLink.create(
            account=stripe_account_id,
            type="account_onboarding",
            refresh_url=refresh_url,
            return_url=return_url,
        )

    return {"account_link_url": link.url, "stripe_account_id": stripe_account_id}


def get_account_status(db, user_id: str):
    """Connect account capabilities; degraded lookups yield the empty default status."""
    try:
        user = db.get(User, user_id)
    except SQLAlchemyError as exc:
        logger.warning("account_status_user_lookup_failed", user_id=user_id, error=str(exc))
        return default_account_status()

    if user is None or not user.stripe_connect_account_id:
        return default_account_status()

    try:
        account = stripe.Account.retrieve(user.stripe_connect_account_id)
    except stripe.StripeError as exc:
        logger.warning("account_status_retrieve_failed", user_id=user_id,
                       stripe_account_id=user.stripe_connect_account_id, error=str(exc))
        return default_account_status()

    requirements = getattr(account, "requirements", None)
    return {
        "stripe_account_id": user.stripe_connect_account_id,
        "payouts_enabled": bool(getattr(account, "payouts_enabled", False)),
        "charges_enabled": bool(getattr(account, "charges_enabled", False)),
        "details_submitted": bool(getattr(account, "details_submitted", False)),
        "requirements": {
            "currently_due": _due(requirements, "currently_due"),
            "past_due": _due(requirements, "past_due"),
            "eventually_due": _due(requirements, "eventually_due"),
        },
    }
