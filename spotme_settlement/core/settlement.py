"""
Settlement - the single money-moving operation.

Verification, webhooks, direct mode and retries all funnel through
settle_payment. The compare-and-set claim on the payment row makes it run at
most once per payment; everything it writes shares the caller's transaction.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from spotme_settlement.config import Settings, settings
from spotme_settlement.domain.exceptions import LedgerConflictError
from spotme_settlement.domain.models import RETRY_COMPLETED, RETRY_FAILED, TYPE_SPREAD
from spotme_settlement.infrastructure.database.models import Payment
from spotme_settlement.infrastructure.database.repositories import (
    ContributionRepository,
    NeedRepository,
    NotificationRepository,
    PaymentRepository,
    ProfileRepository,
    ReceiptRepository,
    RetryRepository,
)
from spotme_settlement.infrastructure.observability.logging import log_settlement
from spotme_settlement.infrastructure.observability.metrics import (
    ledger_clamp_counter,
    ledger_conflict_counter,
    record_settlement,
)
from spotme_settlement.utils.money import to_decimal

logger = logging.getLogger(__name__)


@dataclass
class SettlementOutcome:
    """What a settlement call did"""

    payment_id: str
    applied: bool
    credited: Dict[str, Decimal] = field(default_factory=dict)
    receipt_number: Optional[str] = None


def settle_payment(
    db: Session,
    payment: Payment,
    source: str,
    mode: Optional[str] = None,
    config: Settings = settings,
    request_id: Optional[str] = None,
) -> SettlementOutcome:
    """
    Settle a payment exactly once.

    Steps (inside the caller's transaction):
    1. Claim: status -> completed only if not already completed
    2. Per allocation: contribution row, need credit (clamped at goal), owner notification
    3. Contributor lifetime total
    4. Receipt
    5. Close the retry row that created this payment, if any

    A lost claim is a no-op and returns applied=False.
    """
    payments = PaymentRepository(db)
    if not payments.claim_for_settlement(payment.id, mode=mode):
        record_settlement(payment.mode, applied=False, amount=to_decimal(payment.amount))
        logger.info(
            "Settlement skipped, payment already completed",
            extra={"request_id": request_id, "payment_id": str(payment.id), "source": source},
        )
        return SettlementOutcome(payment_id=str(payment.id), applied=False)

    payment = payments.get_fresh(payment.id)
    needs = NeedRepository(db)
    contributions = ContributionRepository(db)
    notifications = NotificationRepository(db)

    credited: Dict[str, Decimal] = {}
    for alloc in payment.allocations:
        amount = to_decimal(alloc.amount)
        try:
            need, applied_amount = needs.apply_contribution(
                alloc.need_id, amount, max_attempts=config.ledger_max_conflict_retries
            )
        except LedgerConflictError:
            ledger_conflict_counter.inc()
            raise

        if need is None:
            logger.warning(
                "Allocation references a missing need",
                extra={"payment_id": str(payment.id), "need_id": str(alloc.need_id)},
            )
            continue

        if applied_amount < amount:
            # Money already moved; clamp at the goal and keep going
            ledger_clamp_counter.inc()
            logger.warning(
                "Contribution clamped at goal",
                extra={
                    "payment_id": str(payment.id),
                    "need_id": str(need.id),
                    "requested": str(amount),
                    "credited": str(applied_amount),
                },
            )

        note = "" if payment.type == TYPE_SPREAD else payment.note
        contributions.create(need.id, payment, applied_amount, note=note)
        credited[str(need.id)] = applied_amount

        if need.owner_id:
            notifications.create(
                need.owner_id,
                "New Spot!",
                f'{payment.contributor_name or "Someone"} spotted ${amount:.2f} on "{need.title}"',
                need_id=need.id,
            )

    if payment.contributor_id:
        ProfileRepository(db).increment_total_given(payment.contributor_id, to_decimal(payment.amount))

    receipt = ReceiptRepository(db).create_receipt(payment)
    RetryRepository(db).close_for_new_payment(payment.id, RETRY_COMPLETED, result="settled")
    db.flush()

    record_settlement(payment.mode, applied=True, amount=to_decimal(payment.amount))
    log_settlement(str(payment.id), payment.mode, to_decimal(payment.amount), len(credited), source, request_id)

    return SettlementOutcome(
        payment_id=str(payment.id),
        applied=True,
        credited=credited,
        receipt_number=receipt.receipt_number,
    )


def record_payment_failure(db: Session, payment: Payment, reason: str, code: str) -> bool:
    """Mark a payment failed unless it already completed; a late failure never overrides success"""
    changed = PaymentRepository(db).mark_failed(payment.id, reason, code)
    if changed:
        RetryRepository(db).close_for_new_payment(payment.id, RETRY_FAILED, error=reason)
        logger.info(
            "Payment failed",
            extra={"payment_id": str(payment.id), "failure_code": code, "failure_reason": reason},
        )
    return changed
