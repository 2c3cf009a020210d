"""Integration tests for the action endpoint"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient
from spotme_settlement.domain.exceptions import GatewayNotConfiguredError, GatewayRejectedError
from spotme_settlement.domain.models import PAYMENT_FAILED
from spotme_settlement.infrastructure.database.models import Payment
from spotme_settlement.infrastructure.database.repositories import NeedRepository


def act(client: TestClient, action: str, **fields) -> dict:
    response = client.post("/v1/actions", json={"action": action, **fields})
    assert response.status_code == 200
    return response.json()


def test_health_endpoint(client: TestClient):
    """Test health check reports gateway mode and registered actions"""
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["gateway_mode"] == "gateway"
    assert "create_checkout" in body["actions"]
    assert len(body["actions"]) == 9


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "spotme_checkout_total" in response.text


def test_checkout_then_verify(client: TestClient, db, make_need, fake_gateway):
    need = make_need(goal="100.00", title="Utility bill")

    checkout = act(client, "create_checkout", needId=str(need.id), amount=25, tipAmount=2, contributorName="Sam")

    assert checkout["success"] is True
    assert checkout["mode"] == "gateway"
    assert checkout["clientSecret"] == "pi_test_1_secret"
    assert checkout["amount"] == 25.0
    assert checkout["tipAmount"] == 2.0
    assert checkout["recipientReceives"] == 25.0
    assert checkout["destinationCharge"] is False
    assert "stripeNotConfigured" not in checkout

    fake_gateway.set_status("pi_test_1", "succeeded")
    verified = act(client, "verify_payment", paymentId=checkout["paymentId"])

    assert verified["success"] is True
    assert verified["status"] == "completed"
    assert verified["receiptNumber"].startswith("SM-")

    db.expire_all()
    assert NeedRepository(db).get(need.id).raised_amount == Decimal("25.00")

    payment = act(client, "get_payment", paymentId=checkout["paymentId"])["payment"]
    assert payment["status"] == "completed"
    assert payment["allocations"] == [{"needId": str(need.id), "amount": 25.0, "fee": 0.0}]


def test_direct_mode_checkout(client: TestClient, db, make_need, fake_gateway, contributor):
    fake_gateway.create_error = GatewayNotConfiguredError("Payment gateway is not configured")
    need = make_need(goal="100.00")

    body = act(client, "create_checkout", needId=str(need.id), amount="25.00", contributorId="contributor-1")

    assert body["success"] is True
    assert body["mode"] == "direct"
    assert body["stripeNotConfigured"] is True
    assert body["notice"] == "Processed without card charge"
    assert "clientSecret" not in body

    db.expire_all()
    assert NeedRepository(db).get(need.id).raised_amount == Decimal("25.00")

    receipts = act(client, "fetch_receipts", userId="contributor-1")["receipts"]
    assert len(receipts) == 1
    assert receipts[0]["amount"] == 25.0
    assert receipts[0]["receiptNumber"] == body["receiptNumber"]


def test_spread_checkout_by_strategy(client: TestClient, make_need):
    make_need(goal="10.00", raised="5.00", owner_id="owner-a")
    make_need(goal="10.00", owner_id="owner-b")
    make_need(goal="40.00", owner_id="owner-c")

    body = act(client, "create_checkout", amount=30, spreadStrategy="closest")

    assert body["success"] is True
    assert body["amount"] == 30.0
    assert body["spread"]["goalsCompleted"] == 2
    assert body["spread"]["summary"] == "$30.00 spread across 3 people, completing 2 goals"
    assert [a["amount"] for a in body["spread"]["allocations"]] == [5.0, 10.0, 15.0]


def test_unknown_action(client: TestClient):
    body = act(client, "refund_everything")
    assert body == {"success": False, "error": "Unknown action: refund_everything"}


def test_missing_action(client: TestClient):
    response = client.post("/v1/actions", json={"amount": 5})
    assert response.json() == {"success": False, "error": "Unknown action: None"}


def test_invalid_json_body(client: TestClient):
    response = client.post("/v1/actions", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 200
    assert response.json()["success"] is False


def test_validation_error_names_the_field(client: TestClient):
    body = act(client, "verify_payment")
    assert body["success"] is False
    assert body["error"].startswith("paymentId")


def test_checkout_requires_a_target(client: TestClient):
    body = act(client, "create_checkout", amount=5)
    assert body["success"] is False
    assert "needId or spreadAllocations is required" in body["error"]


def test_domain_error_carries_code(client: TestClient, make_need):
    need = make_need()
    body = act(client, "create_checkout", needId=str(need.id), amount="20000")

    assert body["success"] is False
    assert body["code"] == "invalid_contribution"
    assert body["retryable"] is False


def test_declined_checkout_reports_decline_code(client: TestClient, db, make_need, fake_gateway):
    fake_gateway.create_error = GatewayRejectedError("Your card was declined.", "card_declined")
    need = make_need()

    body = act(client, "create_checkout", needId=str(need.id), amount=10)

    assert body["success"] is False
    assert body["code"] == "gateway_rejected"
    assert body["declineCode"] == "card_declined"
    assert body["retryable"] is True
    assert db.query(Payment).count() == 0


def test_webhook_duplicate_delivery(client: TestClient, db, make_need, make_payment):
    need = make_need(goal="100.00")
    make_payment(need, amount="25.00", intent_id="pi_api_hook")
    event = {"data": {"object": {"id": "pi_api_hook"}}}

    first = act(client, "process_webhook", eventType="payment_intent.succeeded", eventId="evt_api", payload=event)
    second = act(client, "process_webhook", eventType="payment_intent.succeeded", eventId="evt_api", payload=event)

    assert first["result"] == "settled"
    assert second["result"] == "duplicate"
    db.expire_all()
    assert NeedRepository(db).get(need.id).raised_amount == Decimal("25.00")

    logs = act(client, "fetch_webhook_logs")["logs"]
    assert [log["eventId"] for log in logs] == ["evt_api"]
    assert logs[0]["processed"] is True


def test_webhook_for_unknown_intent_is_logged_unprocessed(client: TestClient):
    body = act(
        client,
        "process_webhook",
        eventType="payment_intent.succeeded",
        eventId="evt_orphan",
        payload={"data": {"object": {"id": "pi_orphan"}}},
    )

    assert body["success"] is False
    assert body["processed"] is False

    logs = act(client, "fetch_webhook_logs", processed=False)["logs"]
    assert [log["eventId"] for log in logs] == ["evt_orphan"]


def test_retry_cap_over_the_wire(client: TestClient, make_need, make_payment, fake_gateway):
    failed = make_payment(make_need(), status=PAYMENT_FAILED, intent_id="pi_api_failed")
    fake_gateway.create_error = GatewayRejectedError("Your card was declined.", "card_declined")

    for remaining in (2, 1, 0):
        body = act(client, "retry_payment", failedPaymentId=str(failed.id))
        assert body["success"] is False
        assert body["code"] == "gateway_rejected"
        assert body["retryConsumed"] is True
        assert body["retriesRemaining"] == remaining

    capped = act(client, "retry_payment", failedPaymentId=str(failed.id))
    assert capped["success"] is False
    assert capped["code"] == "retry_cap_exceeded"
    assert capped["retryable"] is False
    assert capped["retryConsumed"] is False
    assert capped["retriesRemaining"] == 0
    assert capped["error"] == "Maximum retry attempts reached. No further automatic retries will occur."

    listed = act(client, "fetch_failed_payments", userId="contributor-1")["failedPayments"]
    assert listed[0]["retryCount"] == 3
    assert listed[0]["canRetry"] is False
    assert [r["status"] for r in listed[0]["retries"]] == ["failed", "failed", "failed"]


def test_successful_retry(client: TestClient, make_need, make_payment):
    failed = make_payment(make_need(), status=PAYMENT_FAILED, intent_id="pi_api_failed_2")

    body = act(client, "retry_payment", failedPaymentId=str(failed.id))

    assert body["success"] is True
    assert body["retryNumber"] == 1
    assert body["retriesRemaining"] == 2
    assert body["originalPaymentId"] == str(failed.id)
    assert body["clientSecret"] == "pi_test_1_secret"


def test_payout_dashboard_shape(client: TestClient, make_need, make_payment, onboarded_owner):
    need = make_need(goal="100.00", title="Rent")
    make_payment(need, amount="25.00", intent_id="pi_dash")
    act(client, "process_webhook", eventType="payment_intent.succeeded", eventId="evt_dash", payload={"id": "pi_dash"})

    dashboard = act(client, "fetch_payout_dashboard", userId="owner-1")["dashboard"]

    assert dashboard["account"]["gatewayAccountId"] == "acct_owner1"
    assert dashboard["summary"]["totalReceived"] == 25.0
    assert dashboard["summary"]["totalPayments"] == 1
    assert dashboard["needs"][0]["title"] == "Rent"
    assert dashboard["needs"][0]["raisedAmount"] == 25.0
    assert len(dashboard["monthlyData"]) == 1
    assert dashboard["recentTransactions"][0]["contributorName"] == "Sam"


@pytest.mark.parametrize("action", ["get_payment", "verify_payment"])
def test_unknown_payment(client: TestClient, action):
    body = act(client, action, paymentId="00000000-0000-0000-0000-000000000000")
    assert body["success"] is False
    assert body["code"] == "payment_not_found"
