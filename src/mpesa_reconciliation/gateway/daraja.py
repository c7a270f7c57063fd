"""Safaricom Daraja (Lipa Na M-Pesa Online) adapter."""

from __future__ import annotations

import base64
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from mpesa_reconciliation.config import DarajaConfig
from mpesa_reconciliation.errors import GatewayError, GatewayTransportError
from mpesa_reconciliation.gateway.base import InitiateResult, StatusQueryResult

logger = logging.getLogger(__name__)

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))

OAUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Query answered with HTTP 500 while the payer has not yet responded
PROCESSING_ERROR_CODE = "500.001.1001"


class DarajaGateway:
    """Push-payment adapter for the Daraja REST API.

    Access tokens are cached until shortly before expiry. Secrets are never
    logged.
    """

    provider_name = "daraja"

    def __init__(
        self,
        config: DarajaConfig,
        client: httpx.AsyncClient | None = None,
        processing_code: str = "1032",
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.processing_code = processing_code
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url, timeout=config.timeout_seconds
        )
        self._owns_client = client is None
        self._clock = clock or (lambda: datetime.now(EAT))
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._owns_client:
            await self._client.aclose()

    def timestamp(self) -> str:
        """Current request timestamp, YYYYMMDDHHMMSS."""
        return self._clock().strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        """base64(shortcode + passkey + timestamp)."""
        raw = f"{self.config.short_code}{self.config.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def access_token(self) -> str:
        """Fetch (or reuse) an OAuth client-credentials token."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = await self._client.get(
                self._url(OAUTH_PATH),
                auth=(self.config.consumer_key, self.config.consumer_secret),
            )
        except httpx.HTTPError as e:
            raise GatewayTransportError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise GatewayError(
                "Token request rejected",
                response_code=str(response.status_code),
                response_description=response.text[:200],
            )

        body = self._json(response)
        token = body.get("access_token")
        if not token:
            raise GatewayError("Token response missing access_token")

        # refresh a minute early
        expires_in = int(body.get("expires_in", 3599))
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        return token

    async def initiate_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> InitiateResult:
        """Submit an STK push request."""
        ts = self.timestamp()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": self.password(ts),
            "Timestamp": ts,
            "TransactionType": self.config.transaction_type,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.config.short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        response = await self._post(STK_PUSH_PATH, payload)
        body = self._json(response)
        response_code = str(body.get("ResponseCode", body.get("errorCode", "")))

        if response.status_code != 200 or response_code != "0":
            description_text = body.get("ResponseDescription") or body.get("errorMessage") or ""
            logger.warning(
                "STK push rejected: code=%s desc=%s", response_code, description_text
            )
            raise GatewayError(
                "Payment request rejected by gateway",
                response_code=response_code or str(response.status_code),
                response_description=description_text,
            )

        checkout_request_id = body.get("CheckoutRequestID")
        if not checkout_request_id:
            raise GatewayError("Gateway response missing CheckoutRequestID")

        logger.info("STK push accepted: checkout_request_id=%s", checkout_request_id)
        return InitiateResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=body.get("MerchantRequestID"),
            response_code=response_code,
            response_description=body.get("ResponseDescription", ""),
            customer_message=body.get("CustomerMessage", ""),
        )

    async def query_status(self, checkout_request_id: str) -> StatusQueryResult:
        """Query the STK push result."""
        ts = self.timestamp()
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": self.password(ts),
            "Timestamp": ts,
            "CheckoutRequestID": checkout_request_id,
        }

        response = await self._post(STK_QUERY_PATH, payload)
        body = self._json(response)

        if response.status_code == 200:
            code = body.get("ResultCode")
            return StatusQueryResult(
                result_code=None if code is None else str(code),
                result_desc=body.get("ResultDesc", ""),
                raw=body,
            )

        if str(body.get("errorCode", "")) == PROCESSING_ERROR_CODE:
            return StatusQueryResult(
                result_code=self.processing_code,
                result_desc=body.get("errorMessage", "The transaction is being processed"),
                raw=body,
            )

        raise GatewayTransportError(
            f"Status query failed with HTTP {response.status_code}",
            response_code=str(body.get("errorCode", response.status_code)),
            response_description=body.get("errorMessage", ""),
        )

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        token = await self.access_token()
        try:
            return await self._client.post(
                self._url(path),
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise GatewayTransportError(f"Request to {path} failed: {e}") from e

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayTransportError(
                f"Unparseable gateway response (HTTP {response.status_code})"
            ) from e
        if not isinstance(body, dict):
            raise GatewayTransportError("Unexpected gateway response shape")
        return body
