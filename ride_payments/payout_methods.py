"""Driver payout methods.

A user has at most one default payout method. Changing the default demotes
the previous one and promotes the new one inside a single transaction that
locks the user's rows, and the partial unique index on
``payout_methods(user_id) WHERE is_default`` rejects any writer that still
slips through. The default method cannot be deleted.
"""
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ride_payments.errors import Conflict, InvalidRequest, NotFound, ProviderError
from ride_payments.models import PayoutMethod, User

logger = structlog.get_logger(__name__)

PAYOUT_TYPES = ("bank_transfer", "paypal")
DETAIL_FIELDS = {
    "bank_transfer": ("account_holder_name", "institution_number", "transit_number", "account_number"),
    "paypal": ("paypal_email",),
}


def _clean(value):
    return value.strip() if isinstance(value, str) else None


def _lock_user_methods(db, user_id: str):
    return (
        db.query(PayoutMethod)
        .filter(PayoutMethod.user_id == user_id)
        .with_for_update()
        .all()
    )


def _demote_others(db, user_id: str, keep_id: str | None = None):
    query = db.query(PayoutMethod).filter(
        PayoutMethod.user_id == user_id,
        PayoutMethod.is_default.is_(True),
    )
    if keep_id is not None:
        query = query.filter(PayoutMethod.id != keep_id)
    query.update({"is_default": False, "updated_at": datetime.now(timezone.utc)}, synchronize_session="fetch")


def _commit(db, failure_message: str, **context):
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("payout_default_conflict", error=str(exc), **context)
        raise Conflict("Default payout method was changed concurrently; retry the request")
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("payout_method_write_failed", error=str(exc), **context)
        raise ProviderError(failure_message)


def list_payout_methods(db, user_id: str) -> list[PayoutMethod]:
    """All of a user's methods, default first, then oldest first."""
    return (
        db.query(PayoutMethod)
        .filter(PayoutMethod.user_id == user_id)
        .order_by(PayoutMethod.is_default.desc(), PayoutMethod.created_at.asc())
        .all()
    )


def create_payout_method(db, user_id: str, payout_type: str, details: dict, make_default: bool = False) -> PayoutMethod:
    if payout_type not in PAYOUT_TYPES:
        raise InvalidRequest("Invalid or missing payout_type")

    if db.get(User, user_id) is None:
        raise NotFound("User not found")

    now = datetime.now(timezone.utc)
    method = PayoutMethod(
        user_id=user_id,
        payout_type=payout_type,
        is_default=make_default,
        created_at=now,
        updated_at=now,
    )
    for field in DETAIL_FIELDS[payout_type]:
        setattr(method, field, _clean(details.get(field)))

    if make_default:
        _lock_user_methods(db, user_id)
        _demote_others(db, user_id)

    db.add(method)
    _commit(db, "Failed to create payout method", user_id=user_id)
    db.refresh(method)

    logger.info("payout_method_created", user_id=user_id, payout_method_id=method.id,
                payout_type=payout_type, is_default=make_default)
    return method


def set_default_payout_method(db, user_id: str, payout_method_id: str) -> PayoutMethod:
    methods = {method.id: method for method in _lock_user_methods(db, user_id)}
    target = methods.get(payout_method_id)
    if target is None:
        db.rollback()
        raise NotFound("Payout method not found or does not belong to user")

    _demote_others(db, user_id, keep_id=payout_method_id)
    target.is_default = True
    target.updated_at = datetime.now(timezone.utc)
    _commit(db, "Failed to set default payout method", user_id=user_id, payout_method_id=payout_method_id)
    db.refresh(target)

    logger.info("payout_method_default_set", user_id=user_id, payout_method_id=payout_method_id)
    return target


def get_payout_method(db, payout_method_id: str) -> PayoutMethod:
    method = db.get(PayoutMethod, payout_method_id)
    if method is None:
        raise NotFound("Payout method not found")
    return method


def delete_payout_method(db, method: PayoutMethod) -> None:
    if method.is_default:
        raise InvalidRequest("Cannot delete the default payout method")

    payout_method_id, user_id = method.id, method.user_id
    db.delete(method)
    _commit(db, "Failed to delete payout method", payout_method_id=payout_method_id)
    logger.info("payout_method_deleted", user_id=user_id, payout_method_id=payout_method_id)
