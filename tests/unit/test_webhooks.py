"""Unit tests for webhook reconciliation"""

from decimal import Decimal
from spotme_settlement.core.webhooks import WebhookReconciler, event_object, fetch_webhook_logs
from spotme_settlement.domain.models import PAYMENT_COMPLETED, PAYMENT_FAILED
from spotme_settlement.infrastructure.database.models import Contribution, WebhookEvent
from spotme_settlement.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    NeedRepository,
    PaymentRepository,
    WebhookEventRepository,
)


def intent_event(intent_id: str, **fields) -> dict:
    return {"data": {"object": {"id": intent_id, "object": "payment_intent", **fields}}}


def test_event_object_accepts_flat_payload():
    assert event_object({"id": "pi_1"}) == {"id": "pi_1"}
    assert event_object(intent_event("pi_2"))["id"] == "pi_2"
    assert event_object({}) == {}


def test_succeeded_event_settles_once(db, make_need, make_payment):
    need = make_need(goal="100.00")
    payment = make_payment(need, amount="25.00", intent_id="pi_hook_1")
    reconciler = WebhookReconciler(db)

    first = reconciler.process("payment_intent.succeeded", "evt_1", intent_event("pi_hook_1"))
    db.commit()
    second = reconciler.process("payment_intent.succeeded", "evt_1", intent_event("pi_hook_1"))
    db.commit()

    assert first.result == "settled"
    assert first.processed is True
    assert second.result == "duplicate"

    assert PaymentRepository(db).get_fresh(payment.id).status == PAYMENT_COMPLETED
    assert NeedRepository(db).get_fresh(need.id).raised_amount == Decimal("25.00")
    assert db.query(Contribution).count() == 1
    assert db.query(WebhookEvent).count() == 1


def test_distinct_events_for_same_intent_apply_once(db, make_need, make_payment):
    need = make_need(goal="100.00")
    make_payment(need, amount="25.00", intent_id="pi_hook_2")
    reconciler = WebhookReconciler(db)

    reconciler.process("payment_intent.succeeded", "evt_a", intent_event("pi_hook_2"))
    db.commit()
    result = reconciler.process("payment_intent.succeeded", "evt_b", intent_event("pi_hook_2"))
    db.commit()

    assert result.result == "already_completed"
    assert result.processed is True
    assert NeedRepository(db).get_fresh(need.id).raised_amount == Decimal("25.00")


def test_unknown_intent_stays_unprocessed_until_redelivery(db, make_need, make_payment):
    reconciler = WebhookReconciler(db)

    early = reconciler.process("payment_intent.succeeded", "evt_early", intent_event("pi_not_yet"))
    db.commit()

    assert early.processed is False
    assert early.result == "payment_not_found"
    event = WebhookEventRepository(db).get("evt_early")
    assert event.processed is False
    assert "pi_not_yet" in event.error

    need = make_need()
    make_payment(need, intent_id="pi_not_yet")
    redelivered = reconciler.process("payment_intent.succeeded", "evt_early", intent_event("pi_not_yet"))
    db.commit()

    assert redelivered.result == "settled"
    assert redelivered.processed is True
    assert db.query(WebhookEvent).count() == 1
    assert WebhookEventRepository(db).get("evt_early").error is None


def test_failed_event_records_decline(db, make_need, make_payment):
    payment = make_payment(make_need(), intent_id="pi_hook_3")
    event = intent_event(
        "pi_hook_3",
        last_payment_error={"message": "Your card has insufficient funds.", "code": "card_declined", "decline_code": "insufficient_funds"},
    )

    result = WebhookReconciler(db).process("payment_intent.payment_failed", "evt_fail", event)
    db.commit()

    payment = PaymentRepository(db).get_fresh(payment.id)
    assert result.result == "failed"
    assert payment.status == PAYMENT_FAILED
    assert payment.failure_reason == "Your card has insufficient funds."
    assert payment.failure_code == "insufficient_funds"


def test_failure_after_success_is_ignored(db, make_need, make_payment):
    need = make_need()
    payment = make_payment(need, intent_id="pi_hook_4")
    reconciler = WebhookReconciler(db)
    reconciler.process("payment_intent.succeeded", "evt_ok", intent_event("pi_hook_4"))
    db.commit()

    result = reconciler.process("payment_intent.payment_failed", "evt_late", intent_event("pi_hook_4"))
    db.commit()

    assert result.result == "already_completed"
    assert PaymentRepository(db).get_fresh(payment.id).status == PAYMENT_COMPLETED
    assert NeedRepository(db).get_fresh(need.id).raised_amount == Decimal("25.00")


def test_failed_event_without_details_uses_defaults(db, make_need, make_payment):
    payment = make_payment(make_need(), intent_id="pi_hook_5")

    WebhookReconciler(db).process("payment_intent.payment_failed", "evt_bare", intent_event("pi_hook_5"))
    db.commit()

    payment = PaymentRepository(db).get_fresh(payment.id)
    assert payment.failure_reason == "Payment failed"
    assert payment.failure_code == "unknown"


def test_account_updated_completes_onboarding(db):
    reconciler = WebhookReconciler(db)
    obj = {"id": "acct_new", "metadata": {"user_id": "owner-9"}, "details_submitted": True, "charges_enabled": False}

    reconciler.process("account.updated", "evt_acct_1", {"data": {"object": obj}})
    db.commit()
    account = ConnectedAccountRepository(db).get_by_user("owner-9")
    assert account.gateway_account_id == "acct_new"
    assert account.onboarding_complete is False

    reconciler.process("account.updated", "evt_acct_2", {"data": {"object": {"id": "acct_new", "charges_enabled": True}}})
    db.commit()
    account = ConnectedAccountRepository(db).get_by_user("owner-9")
    assert account.details_submitted is True
    assert account.charges_enabled is True
    assert account.onboarding_complete is True
    assert account.last_webhook_at is not None


def test_account_updated_for_unknown_account_without_user(db):
    result = WebhookReconciler(db).process("account.updated", "evt_acct_3", {"data": {"object": {"id": "acct_ghost"}}})
    assert result.result == "account_unknown"
    assert result.processed is True


def test_unhandled_event_type_is_logged_and_ignored(db):
    result = WebhookReconciler(db).process("charge.refunded", "evt_refund", {"data": {"object": {"id": "ch_1"}}})
    db.commit()

    assert result.result == "ignored"
    assert result.processed is True
    assert WebhookEventRepository(db).get("evt_refund").processed is True


def test_fetch_webhook_logs_filters_by_processed(db):
    reconciler = WebhookReconciler(db)
    reconciler.process("charge.refunded", "evt_x", {"id": "ch_x"})
    reconciler.process("payment_intent.succeeded", "evt_y", {"id": "pi_missing"})
    db.commit()

    assert len(fetch_webhook_logs(db)) == 2
    assert [e.event_id for e in fetch_webhook_logs(db, processed=False)] == ["evt_y"]
    assert len(fetch_webhook_logs(db, limit=1)) == 1
