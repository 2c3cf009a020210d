"""Unit tests for the payout dashboard rollup"""

from decimal import Decimal
from spotme_settlement.config import Settings
from spotme_settlement.core.payouts import fetch_payout_dashboard
from spotme_settlement.core.settlement import settle_payment
from spotme_settlement.utils.date_utils import month_key, utcnow


def settled(db, payment, destination_charge=False):
    payment.destination_charge = destination_charge
    db.commit()
    settle_payment(db, payment, source="test")
    db.commit()
    return payment


def test_empty_dashboard_for_new_recipient(db):
    dashboard = fetch_payout_dashboard(db, "nobody")

    assert dashboard.account is None
    assert dashboard.needs == []
    assert dashboard.summary.total_received == Decimal("0.00")
    assert dashboard.summary.total_payments == 0
    assert dashboard.monthly_data == []


def test_rollup_counts_completed_payments_only(db, make_need, make_payment, onboarded_owner):
    need = make_need(goal="200.00", title="Rent")
    settled(db, make_payment(need, amount="25.00", intent_id="pi_p1"), destination_charge=True)
    settled(db, make_payment(need, amount="10.00", intent_id="pi_p2"))
    make_payment(need, amount="99.00", intent_id="pi_pending")

    dashboard = fetch_payout_dashboard(db, "owner-1")

    assert dashboard.account.gateway_account_id == "acct_owner1"
    summary = dashboard.summary
    assert summary.total_received == Decimal("35.00")
    assert summary.net_received == Decimal("35.00")
    assert summary.direct_deposits == Decimal("25.00")
    assert summary.direct_deposit_count == 1
    assert summary.platform_collect_count == 1
    assert summary.total_payments == 2

    rollup = dashboard.needs[0]
    assert rollup.title == "Rent"
    assert rollup.raised_amount == Decimal("35.00")
    assert rollup.payment_count == 2

    assert len(dashboard.monthly_data) == 1
    assert dashboard.monthly_data[0].month == month_key(utcnow())
    assert dashboard.monthly_data[0].gross == Decimal("35.00")
    assert dashboard.monthly_data[0].count == 2
    assert len(dashboard.recent_transactions) == 2


def test_spread_payment_counts_only_recipients_share(db, make_need, make_payment):
    mine = make_need(goal="10.00", owner_id="owner-1")
    theirs = make_need(goal="10.00", owner_id="owner-b")
    settled(db, make_payment(mine, theirs, amount="15.00", shares=["5.00", "10.00"]))

    dashboard = fetch_payout_dashboard(db, "owner-1")

    assert dashboard.summary.total_received == Decimal("5.00")
    assert dashboard.summary.total_payments == 1
    assert [t.amount for t in dashboard.recent_transactions] == [Decimal("5.00")]
    assert dashboard.recent_transactions[0].need_id == str(mine.id)


def test_recent_transactions_are_capped(db, make_need, make_payment):
    need = make_need(goal="1000.00")
    for i in range(4):
        settled(db, make_payment(need, amount="5.00", intent_id=f"pi_cap_{i}"))

    dashboard = fetch_payout_dashboard(db, "owner-1", Settings(recent_transactions_limit=3))

    assert len(dashboard.recent_transactions) == 3
    assert dashboard.summary.total_payments == 4
    assert dashboard.summary.total_received == Decimal("20.00")
