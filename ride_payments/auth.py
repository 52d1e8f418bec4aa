from fastapi import Header
from jose import JWTError, jwt

from ride_payments import config
from ride_payments.errors import Forbidden, Unauthorized


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def decode_subject(token: str) -> str:
    """Verify an auth-service JWT and return its subject (the user id)."""
    secret = config.jwt_secret()
    if not secret:
        raise Unauthorized("Invalid or missing token")

    audience = config.jwt_audience()
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_aud": audience is not None},
        )
    except JWTError:
        raise Unauthorized("Invalid or missing token")

    subject = claims.get("sub")
    if not subject:
        raise Unauthorized("Invalid or missing token")
    return subject


def current_user_id(authorization: str | None = Header(None)) -> str:
    token = extract_bearer_token(authorization)
    if not token:
        raise Forbidden("Unauthorized: missing bearer token")
    return decode_subject(token)


def ensure_owner(current_user: str, user_id: str, message: str = "Unauthorized: token does not match user_id"):
    if current_user != user_id:
        raise Forbidden(message)
