"""Minimal PayPal REST client: OAuth2 client-credentials token plus JSON calls."""
import time

import httpx
import structlog

from ride_payments import config
from ride_payments.errors import PayPalError

logger = structlog.get_logger(__name__)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

# Refresh this long before the token actually expires
TOKEN_EXPIRY_MARGIN = 60


def _error_body(response: httpx.Response):
    if not response.text:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class PayPalClient:
    """Token cache is a plain attribute: a concurrent refresh only fetches a spare token."""

    def __init__(self, client_id: str, client_secret: str, environment: str = "sandbox",
                 http_client: httpx.Client | None = None, clock=time.time):
        self.client_id = client_id
        self.client_secret = client_secret
        self.environment = environment
        self.http = http_client or httpx.Client(timeout=30.0)
        self.clock = clock
        self._token = None
        self._token_expires_at = 0.0

    @property
    def base_url(self) -> str:
        return LIVE_URL if self.environment == "live" else SANDBOX_URL

    def get_access_token(self) -> str:
        if self._token and self.clock() < self._token_expires_at - TOKEN_EXPIRY_MARGIN:
            return self._token

        response = self.http.post(
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            content="grant_type=client_credentials",
        )
        if response.is_error:
            raise PayPalError(
                f"Failed to obtain PayPal access token: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                body=_error_body(response),
            )

        data = response.json()
        self._token = data["access_token"]
        self._token_expires_at = self.clock() + data["expires_in"]
        logger.info("paypal_token_refreshed", environment=self.environment, expires_in=data["expires_in"])
        return self._token

    def _request(self, method: str, path: str, payload=None) -> dict:
        token = self.get_access_token()
        response = self.http.request(
            method,
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            json=payload,
        )
        if response.is_error:
            raise PayPalError(
                f"PayPal API request failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                body=_error_body(response),
            )
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def get(self, path: str) -> dict:
        return self._request("GET", path)

    def post(self, path: str, payload=None) -> dict:
        return self._request("POST", path, payload)


def create_paypal_client(http_client: httpx.Client | None = None) -> PayPalClient:
    client_id = config.paypal_client_id()
    if not client_id:
        raise ValueError("PayPal client ID is not configured. Set PAYPAL_CLIENT_ID.")
    client_secret = config.paypal_client_secret()
    if not client_secret:
        raise ValueError("PayPal client secret is not configured. Set PAYPAL_CLIENT_SECRET.")

    environment = "sandbox" if config.paypal_sandbox() else "live"
    logger.info("paypal_client_initialized", environment=environment)
    return PayPalClient(client_id, client_secret, environment, http_client=http_client)
