"""Payment gateway port and its adapters (Stripe REST over httpx, null gateway)"""

import logging
from typing import Any, Dict, Optional

import httpx

from spotme_settlement.config import Settings, settings
from spotme_settlement.domain.exceptions import (
    GatewayNotConfiguredError,
    GatewayRejectedError,
    GatewayTransientError,
)
from spotme_settlement.domain.models import PaymentIntent
from spotme_settlement.infrastructure.observability.metrics import (
    gateway_failures_counter,
    gateway_latency_histogram,
)

logger = logging.getLogger(__name__)


class GatewayPort:
    """Operations the settlement engine needs from a card gateway"""

    mode = "gateway"

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        destination: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentIntent:
        raise NotImplementedError

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        raise NotImplementedError

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        raise NotImplementedError


class NullGateway(GatewayPort):
    """Selected when no gateway is configured; every call routes to direct mode"""

    mode = "direct"

    async def create_payment_intent(self, amount_cents, currency, metadata, destination=None, application_fee_cents=None):
        raise GatewayNotConfiguredError("Payment gateway is not configured")

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        raise GatewayNotConfiguredError("Payment gateway is not configured")

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        raise GatewayNotConfiguredError("Payment gateway is not configured")


def parse_intent(data: Dict[str, Any]) -> PaymentIntent:
    """Map a Stripe payment_intent object to the domain model"""
    error = data.get("last_payment_error") or {}
    return PaymentIntent(
        id=data["id"],
        client_secret=data.get("client_secret"),
        status=data["status"],
        amount=int(data.get("amount") or 0),
        last_payment_error_message=error.get("message"),
        last_payment_error_code=error.get("code") or error.get("decline_code"),
    )


class StripeGateway(GatewayPort):
    """Client for the Stripe payment-intent API"""

    def __init__(
        self,
        secret_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.base_url = (base_url or settings.gateway_api_base).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            transport=self.transport,
        )

    async def _request(self, operation: str, method: str, path: str, data: Dict[str, str] | None = None) -> PaymentIntent:
        """
        Send one gateway request and classify failures.

        Raises:
            GatewayNotConfiguredError: 401/403, the key is missing or revoked
            GatewayRejectedError: 4xx card or request errors, with reason and code
            GatewayTransientError: timeouts, connection errors, 429 and 5xx
        """
        async with self._client() as client:
            try:
                with gateway_latency_histogram.labels(operation=operation).time():
                    response = await client.request(method, path, data=data)
                response.raise_for_status()
                return parse_intent(response.json())

            except httpx.TimeoutException as e:
                gateway_failures_counter.labels(kind="timeout").inc()
                raise GatewayTransientError(f"Gateway timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise self._classify(e.response) from e
            except httpx.RequestError as e:
                gateway_failures_counter.labels(kind="network").inc()
                raise GatewayTransientError(f"Gateway unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                gateway_failures_counter.labels(kind="malformed").inc()
                raise GatewayTransientError(f"Invalid response from gateway: {e}") from e

    @staticmethod
    def _classify(response: httpx.Response) -> Exception:
        status = response.status_code
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        message = error.get("message") or f"Gateway error: {status}"

        if status in (401, 403):
            gateway_failures_counter.labels(kind="auth").inc()
            return GatewayNotConfiguredError(message)
        if status == 429 or status >= 500:
            gateway_failures_counter.labels(kind="server").inc()
            return GatewayTransientError(message)

        gateway_failures_counter.labels(kind="rejected").inc()
        code = error.get("decline_code") or error.get("code") or error.get("type")
        return GatewayRejectedError(message, code)

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        destination: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
    ) -> PaymentIntent:
        form: Dict[str, str] = {
            "amount": str(amount_cents),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)
        if destination:
            form["transfer_data[destination]"] = destination
            if application_fee_cents and application_fee_cents > 0:
                form["application_fee_amount"] = str(application_fee_cents)

        return await self._request("create", "POST", "/v1/payment_intents", data=form)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        return await self._request("retrieve", "GET", f"/v1/payment_intents/{intent_id}")

    async def cancel_payment_intent(self, intent_id: str) -> PaymentIntent:
        return await self._request("cancel", "POST", f"/v1/payment_intents/{intent_id}/cancel")


def build_gateway(config: Settings | None = None) -> GatewayPort:
    """Configuration health check, run once: pick the real gateway or the null one"""
    config = config or settings
    if config.gateway_configured:
        logger.info("Payment gateway configured", extra={"gateway_mode": "gateway", "base_url": config.gateway_api_base})
        return StripeGateway(config.stripe_secret_key, config.gateway_api_base, config.http_timeout_seconds)

    logger.warning(
        "Payment gateway not configured, contributions settle in direct mode",
        extra={"gateway_mode": "direct"},
    )
    return NullGateway()
