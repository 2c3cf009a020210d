"""Unit tests for the Stripe gateway client"""

import httpx
import pytest
from urllib.parse import parse_qsl
from spotme_settlement.config import Settings
from spotme_settlement.domain.exceptions import (
    GatewayNotConfiguredError,
    GatewayRejectedError,
    GatewayTransientError,
)
from spotme_settlement.infrastructure.clients.gateway import NullGateway, StripeGateway, build_gateway


def gateway_with(handler) -> StripeGateway:
    return StripeGateway("sk_test_123", base_url="https://gateway.test", timeout=2.0, transport=httpx.MockTransport(handler))


def intent_json(**fields) -> dict:
    body = {"id": "pi_123", "object": "payment_intent", "client_secret": "pi_123_secret", "status": "requires_payment_method", "amount": 2700}
    body.update(fields)
    return body


@pytest.mark.asyncio
async def test_create_sends_form_encoded_destination_charge():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["path"] = request.url.path
        seen["form"] = dict(parse_qsl(request.content.decode()))
        return httpx.Response(200, json=intent_json())

    intent = await gateway_with(handler).create_payment_intent(
        2700, "usd", {"need_id": "n1", "type": "contribution"}, destination="acct_1", application_fee_cents=200
    )

    assert intent.id == "pi_123"
    assert intent.client_secret == "pi_123_secret"
    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["path"] == "/v1/payment_intents"
    assert seen["form"]["amount"] == "2700"
    assert seen["form"]["currency"] == "usd"
    assert seen["form"]["automatic_payment_methods[enabled]"] == "true"
    assert seen["form"]["metadata[need_id]"] == "n1"
    assert seen["form"]["transfer_data[destination]"] == "acct_1"
    assert seen["form"]["application_fee_amount"] == "200"


@pytest.mark.asyncio
async def test_platform_charge_omits_routing_fields():
    seen = {}

    def handler(request):
        seen["form"] = dict(parse_qsl(request.content.decode()))
        return httpx.Response(200, json=intent_json())

    await gateway_with(handler).create_payment_intent(500, "usd", {}, destination=None, application_fee_cents=None)

    assert "transfer_data[destination]" not in seen["form"]
    assert "application_fee_amount" not in seen["form"]


@pytest.mark.asyncio
async def test_retrieve_maps_last_payment_error():
    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/v1/payment_intents/pi_123"
        return httpx.Response(
            200,
            json=intent_json(last_payment_error={"message": "Your card was declined.", "code": "card_declined"}),
        )

    intent = await gateway_with(handler).retrieve_payment_intent("pi_123")

    assert intent.status == "requires_payment_method"
    assert intent.last_payment_error_message == "Your card was declined."
    assert intent.last_payment_error_code == "card_declined"


@pytest.mark.asyncio
async def test_cancel_posts_to_cancel_endpoint():
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/v1/payment_intents/pi_123/cancel"
        return httpx.Response(200, json=intent_json(status="canceled"))

    intent = await gateway_with(handler).cancel_payment_intent("pi_123")

    assert intent.status == "canceled"


@pytest.mark.asyncio
async def test_auth_failure_means_not_configured():
    def handler(request):
        return httpx.Response(401, json={"error": {"type": "invalid_request_error", "message": "Invalid API Key provided"}})

    with pytest.raises(GatewayNotConfiguredError):
        await gateway_with(handler).create_payment_intent(500, "usd", {})


@pytest.mark.asyncio
async def test_card_error_is_rejected_with_decline_code():
    def handler(request):
        return httpx.Response(
            402,
            json={"error": {"type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds", "message": "Your card has insufficient funds."}},
        )

    with pytest.raises(GatewayRejectedError) as exc:
        await gateway_with(handler).create_payment_intent(500, "usd", {})

    assert exc.value.reason == "Your card has insufficient funds."
    assert exc.value.decline_code == "insufficient_funds"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_server_errors_are_transient(status):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "try later"}})

    with pytest.raises(GatewayTransientError):
        await gateway_with(handler).create_payment_intent(500, "usd", {})


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTransientError, match="timeout"):
        await gateway_with(handler).retrieve_payment_intent("pi_123")


@pytest.mark.asyncio
async def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayTransientError, match="unreachable"):
        await gateway_with(handler).retrieve_payment_intent("pi_123")


@pytest.mark.asyncio
async def test_malformed_body_is_transient():
    def handler(request):
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(GatewayTransientError, match="Invalid response"):
        await gateway_with(handler).retrieve_payment_intent("pi_123")


@pytest.mark.asyncio
async def test_null_gateway_always_routes_to_direct_mode():
    with pytest.raises(GatewayNotConfiguredError):
        await NullGateway().create_payment_intent(500, "usd", {})


@pytest.mark.parametrize("key", [None, "", "   ", "sk_test_REPLACE_ME"])
def test_missing_or_placeholder_key_builds_null_gateway(key):
    gateway = build_gateway(Settings(stripe_secret_key=key))
    assert isinstance(gateway, NullGateway)
    assert gateway.mode == "direct"


def test_configured_key_builds_stripe_gateway():
    gateway = build_gateway(Settings(stripe_secret_key="sk_test_abc", gateway_api_base="http://localhost:8001"))
    assert isinstance(gateway, StripeGateway)
    assert gateway.base_url == "http://localhost:8001"
