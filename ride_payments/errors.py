from contextlib import contextmanager

import httpx
import stripe
import structlog

logger = structlog.get_logger(__name__)


class PaymentsError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequest(PaymentsError):
    status_code = 400


class Unauthorized(PaymentsError):
    status_code = 401


class Forbidden(PaymentsError):
    status_code = 403


class NotFound(PaymentsError):
    status_code = 404


class Conflict(PaymentsError):
    status_code = 409


class ProviderError(PaymentsError):
    status_code = 500


class ServiceUnavailable(PaymentsError):
    status_code = 503


class PayPalError(Exception):
    """Non-2xx answer from the PayPal REST API."""

    def __init__(self, message: str, status_code: int | None = None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@contextmanager
def vendor_errors(message: str, event: str, **context):
    """Turn Stripe/PayPal failures into a ProviderError carrying a generic message."""
    try:
        yield
    except (stripe.StripeError, PayPalError, httpx.HTTPError) as exc:
        logger.error(event, error=str(exc), error_type=type(exc).__name__, **context)
        raise ProviderError(message) from exc
