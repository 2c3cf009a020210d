"""Payout aggregation - read-only rollups of what a recipient has received"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from spotme_settlement.config import Settings, settings
from spotme_settlement.infrastructure.database.models import ConnectedAccount
from spotme_settlement.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    NeedRepository,
    PaymentRepository,
)
from spotme_settlement.utils.date_utils import month_key
from spotme_settlement.utils.money import to_decimal

ZERO = Decimal("0.00")


@dataclass
class PayoutSummary:
    total_received: Decimal = ZERO
    total_fees: Decimal = ZERO
    net_received: Decimal = ZERO
    direct_deposits: Decimal = ZERO
    direct_deposit_count: int = 0
    platform_collect_count: int = 0
    total_payments: int = 0


@dataclass
class NeedRollup:
    need_id: str
    title: str
    status: str
    goal_amount: Decimal
    raised_amount: Decimal
    contributor_count: int
    total_received: Decimal = ZERO
    total_fees: Decimal = ZERO
    net_received: Decimal = ZERO
    payment_count: int = 0


@dataclass
class MonthBucket:
    month: str
    gross: Decimal = ZERO
    fees: Decimal = ZERO
    net: Decimal = ZERO
    count: int = 0


@dataclass
class PayoutTransaction:
    payment_id: str
    need_id: str
    need_title: str
    amount: Decimal
    fee: Decimal
    net: Decimal
    mode: str
    destination_charge: bool
    contributor_name: str
    completed_at: Optional[datetime]


@dataclass
class PayoutDashboard:
    account: Optional[ConnectedAccount]
    summary: PayoutSummary
    needs: List[NeedRollup] = field(default_factory=list)
    monthly_data: List[MonthBucket] = field(default_factory=list)
    recent_transactions: List[PayoutTransaction] = field(default_factory=list)


def fetch_payout_dashboard(db: Session, user_id: str, config: Settings = settings) -> PayoutDashboard:
    """
    Roll up completed payments landing on a recipient's needs.

    Amounts are per allocation, so a spread payment counts only the share
    that reached this recipient. Never writes; a settlement landing mid-read
    shows up on the next call.
    """
    account = ConnectedAccountRepository(db).get_by_user(user_id)
    needs = NeedRepository(db).list_by_owner(user_id)
    rollups: Dict[str, NeedRollup] = OrderedDict(
        (
            str(n.id),
            NeedRollup(
                need_id=str(n.id),
                title=n.title,
                status=n.status,
                goal_amount=to_decimal(n.goal_amount),
                raised_amount=to_decimal(n.raised_amount),
                contributor_count=n.contributor_count,
            ),
        )
        for n in needs
    )

    rows = PaymentRepository(db).list_completed_allocations([n.id for n in needs])

    summary = PayoutSummary()
    months: Dict[str, MonthBucket] = {}
    transactions: List[PayoutTransaction] = []
    seen_payments = set()

    for alloc, payment in rows:
        gross = to_decimal(alloc.amount)
        fee = to_decimal(alloc.fee)
        net = gross - fee

        summary.total_received += gross
        summary.total_fees += fee
        summary.net_received += net
        if payment.destination_charge:
            summary.direct_deposits += net

        if payment.id not in seen_payments:
            seen_payments.add(payment.id)
            summary.total_payments += 1
            if payment.destination_charge:
                summary.direct_deposit_count += 1
            else:
                summary.platform_collect_count += 1

        rollup = rollups[str(alloc.need_id)]
        rollup.total_received += gross
        rollup.total_fees += fee
        rollup.net_received += net
        rollup.payment_count += 1

        moment = payment.completed_at or payment.created_at
        if moment is not None:
            bucket = months.setdefault(month_key(moment), MonthBucket(month=month_key(moment)))
            bucket.gross += gross
            bucket.fees += fee
            bucket.net += net
            bucket.count += 1

        if len(transactions) < config.recent_transactions_limit:
            transactions.append(
                PayoutTransaction(
                    payment_id=str(payment.id),
                    need_id=str(alloc.need_id),
                    need_title=rollup.title,
                    amount=gross,
                    fee=fee,
                    net=net,
                    mode=payment.mode,
                    destination_charge=bool(payment.destination_charge),
                    contributor_name=payment.contributor_name,
                    completed_at=payment.completed_at,
                )
            )

    return PayoutDashboard(
        account=account,
        summary=summary,
        needs=list(rollups.values()),
        monthly_data=sorted(months.values(), key=lambda m: m.month, reverse=True),
        recent_transactions=transactions,
    )
