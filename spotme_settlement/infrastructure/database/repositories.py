"""Data access layer for ledger entities"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from spotme_settlement.config import settings
from spotme_settlement.domain.exceptions import InvalidContributionError, LedgerConflictError
from spotme_settlement.domain.models import (
    NEED_COLLECTING,
    NEED_GOAL_MET,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    Allocation,
    NeedSnapshot,
)
from spotme_settlement.infrastructure.database.models import (
    ConnectedAccount,
    Contribution,
    IdempotencyRecord,
    Need,
    Notification,
    Payment,
    PaymentAllocation,
    PaymentRetry,
    Profile,
    Receipt,
    WebhookEvent,
)
from spotme_settlement.utils.date_utils import utcnow
from spotme_settlement.utils.money import to_decimal


class NeedRepository:
    """Repository for needs; the only writer of raised_amount"""

    def __init__(self, db: Session):
        self.db = db

    def create_need(
        self,
        owner_id: str,
        goal_amount: Decimal,
        title: str = "",
        category: str = "",
        raised_amount: Decimal = Decimal("0"),
        status: str = NEED_COLLECTING,
        max_goal_amount: Optional[Decimal] = None,
    ) -> Need:
        """Persist a need (creation itself belongs to the need flow; used for seeding)"""
        cap = settings.max_goal_amount if max_goal_amount is None else to_decimal(max_goal_amount)
        goal = to_decimal(goal_amount)
        if goal <= 0:
            raise InvalidContributionError("Goal amount must be positive")
        if goal > cap:
            raise InvalidContributionError(f"Goal amount cannot exceed ${cap}")

        db_need = Need(
            owner_id=owner_id,
            title=title,
            category=category,
            goal_amount=goal,
            raised_amount=min(to_decimal(raised_amount), goal),
            contributor_count=0,
            status=status,
            version=0,
        )
        self.db.add(db_need)
        self.db.flush()
        return db_need

    def get(self, need_id: uuid.UUID) -> Optional[Need]:
        return self.db.get(Need, need_id)

    def get_fresh(self, need_id: uuid.UUID) -> Optional[Need]:
        """Reload from the database, discarding any identity-map copy"""
        return self.db.get(Need, need_id, populate_existing=True)

    def list_by_ids(self, need_ids: Sequence[uuid.UUID]) -> List[Need]:
        if not need_ids:
            return []
        return self.db.query(Need).filter(Need.id.in_(list(need_ids))).all()

    def list_by_owner(self, owner_id: str) -> List[Need]:
        return (
            self.db.query(Need)
            .filter(Need.owner_id == owner_id)
            .order_by(Need.created_at.desc())
            .all()
        )

    def list_collecting(self) -> List[Need]:
        """Spread pool: needs that can still take money"""
        return (
            self.db.query(Need)
            .filter(Need.status == NEED_COLLECTING, Need.raised_amount < Need.goal_amount)
            .all()
        )

    @staticmethod
    def snapshot(need: Need) -> NeedSnapshot:
        return NeedSnapshot(
            id=str(need.id),
            goal_amount=to_decimal(need.goal_amount),
            raised_amount=to_decimal(need.raised_amount),
            status=need.status,
            title=need.title,
            category=need.category,
        )

    def apply_contribution(
        self,
        need_id: uuid.UUID,
        amount: Decimal,
        max_attempts: int = 5,
    ) -> Tuple[Optional[Need], Decimal]:
        """
        Credit a need under optimistic concurrency.

        Reads (raised, goal, version), computes the credited amount clamped at
        the goal, and writes conditionally on the version being unchanged. A
        lost race re-reads and tries again.

        Returns:
            (refreshed Need or None if it does not exist, amount actually credited)

        Raises:
            LedgerConflictError: version kept moving for max_attempts reads
        """
        amount = to_decimal(amount)
        for _ in range(max_attempts):
            row = self._read_ledger_row(need_id)
            if row is None:
                return None, Decimal("0.00")

            raised, goal = to_decimal(row.raised_amount), to_decimal(row.goal_amount)
            credited = max(min(amount, goal - raised), Decimal("0.00"))
            new_raised = raised + credited
            new_status = NEED_GOAL_MET if new_raised >= goal and row.status == NEED_COLLECTING else row.status

            updated = (
                self.db.query(Need)
                .filter(Need.id == need_id, Need.version == row.version)
                .update(
                    {
                        Need.raised_amount: new_raised,
                        Need.contributor_count: Need.contributor_count + 1,
                        Need.status: new_status,
                        Need.version: row.version + 1,
                    },
                    synchronize_session=False,
                )
            )
            if updated == 1:
                return self.get_fresh(need_id), credited

        raise LedgerConflictError(f"Need {need_id} changed concurrently {max_attempts} times")

    def _read_ledger_row(self, need_id: uuid.UUID):
        return (
            self.db.query(Need.raised_amount, Need.goal_amount, Need.version, Need.status)
            .filter(Need.id == need_id)
            .first()
        )


class ContributionRepository:
    """Append-only contribution records"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        need_id: uuid.UUID,
        payment: Payment,
        amount: Decimal,
        note: str = "",
    ) -> Contribution:
        db_contribution = Contribution(
            need_id=need_id,
            payment_id=payment.id,
            contributor_id=payment.contributor_id,
            contributor_name=payment.contributor_name,
            amount=amount,
            note=note,
            is_anonymous=payment.is_anonymous,
        )
        self.db.add(db_contribution)
        return db_contribution

    def list_for_need(self, need_id: uuid.UUID) -> List[Contribution]:
        return self.db.query(Contribution).filter(Contribution.need_id == need_id).all()


class PaymentRepository:
    """Repository for payments and their allocations"""

    def __init__(self, db: Session):
        self.db = db

    def create_payment(
        self,
        allocations: Sequence[Allocation],
        amount: Decimal,
        recipient_receives: Decimal,
        **fields: Any,
    ) -> Payment:
        """Create payment with its allocation rows"""
        db_payment = Payment(amount=amount, recipient_receives=recipient_receives, **fields)
        self.db.add(db_payment)
        self.db.flush()

        for position, alloc in enumerate(allocations):
            self.db.add(
                PaymentAllocation(
                    payment_id=db_payment.id,
                    need_id=uuid.UUID(str(alloc.need_id)),
                    position=position,
                    amount=alloc.amount,
                    fee=alloc.fee,
                )
            )
        self.db.flush()
        self.db.refresh(db_payment)
        return db_payment

    def get(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def get_fresh(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return self.db.get(Payment, payment_id, populate_existing=True)

    def get_by_intent(self, intent_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.gateway_intent_id == intent_id).first()

    def claim_for_settlement(self, payment_id: uuid.UUID, mode: Optional[str] = None) -> bool:
        """
        Compare-and-set to completed. Exactly one caller wins for a payment;
        everyone else sees False and must not touch the ledger.
        """
        values: Dict[Any, Any] = {Payment.status: PAYMENT_COMPLETED, Payment.completed_at: utcnow()}
        if mode is not None:
            values[Payment.mode] = mode
        updated = (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status != PAYMENT_COMPLETED)
            .update(values, synchronize_session=False)
        )
        return updated == 1

    def mark_failed(self, payment_id: uuid.UUID, reason: str, code: str) -> bool:
        """Record a failure unless the payment already completed"""
        updated = (
            self.db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status != PAYMENT_COMPLETED)
            .update(
                {
                    Payment.status: PAYMENT_FAILED,
                    Payment.failure_reason: reason,
                    Payment.failure_code: code,
                    Payment.failed_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    def list_failed_for_contributor(self, contributor_id: str, limit: int = 20) -> List[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.contributor_id == contributor_id, Payment.status == PAYMENT_FAILED)
            .order_by(Payment.failed_at.desc())
            .limit(limit)
            .all()
        )

    def list_completed_allocations(self, need_ids: Sequence[uuid.UUID]) -> List[Tuple[PaymentAllocation, Payment]]:
        """Completed allocations landing on any of need_ids, newest settlement first"""
        if not need_ids:
            return []
        return (
            self.db.query(PaymentAllocation, Payment)
            .join(Payment, PaymentAllocation.payment_id == Payment.id)
            .filter(PaymentAllocation.need_id.in_(list(need_ids)), Payment.status == PAYMENT_COMPLETED)
            .order_by(Payment.completed_at.desc())
            .all()
        )


class RetryRepository:
    """Repository for payment retry attempts"""

    def __init__(self, db: Session):
        self.db = db

    def count_for_payment(self, payment_id: uuid.UUID) -> int:
        return self.db.query(PaymentRetry).filter(PaymentRetry.payment_id == payment_id).count()

    def list_for_payment(self, payment_id: uuid.UUID) -> List[PaymentRetry]:
        return (
            self.db.query(PaymentRetry)
            .filter(PaymentRetry.payment_id == payment_id)
            .order_by(PaymentRetry.retry_number.asc())
            .all()
        )

    def create_retry(
        self,
        payment_id: uuid.UUID,
        retry_number: int,
        status: str,
        new_payment_id: Optional[uuid.UUID] = None,
        result: Optional[str] = None,
        error: Optional[str] = None,
        completed: bool = False,
    ) -> PaymentRetry:
        now = utcnow()
        db_retry = PaymentRetry(
            payment_id=payment_id,
            new_payment_id=new_payment_id,
            retry_number=retry_number,
            status=status,
            scheduled_at=now,
            attempted_at=now,
            completed_at=now if completed else None,
            result=result,
            error=error,
        )
        self.db.add(db_retry)
        self.db.flush()
        return db_retry

    def close_for_new_payment(
        self,
        new_payment_id: uuid.UUID,
        status: str,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> int:
        """Record the outcome of the payment a retry created"""
        return (
            self.db.query(PaymentRetry)
            .filter(PaymentRetry.new_payment_id == new_payment_id, PaymentRetry.completed_at.is_(None))
            .update(
                {
                    PaymentRetry.status: status,
                    PaymentRetry.completed_at: utcnow(),
                    PaymentRetry.result: result,
                    PaymentRetry.error: error,
                },
                synchronize_session=False,
            )
        )


class ConnectedAccountRepository:
    """Repository for recipient payout accounts"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_user(self, user_id: str) -> Optional[ConnectedAccount]:
        return self.db.query(ConnectedAccount).filter(ConnectedAccount.user_id == user_id).first()

    def get_by_gateway_account(self, account_id: str) -> Optional[ConnectedAccount]:
        return (
            self.db.query(ConnectedAccount)
            .filter(ConnectedAccount.gateway_account_id == account_id)
            .first()
        )

    def upsert_status(
        self,
        account_id: str,
        user_id: Optional[str],
        payouts_enabled: Optional[bool],
        charges_enabled: Optional[bool],
        details_submitted: Optional[bool],
    ) -> Optional[ConnectedAccount]:
        """
        Apply account flags from the gateway. Missing flags keep their stored
        value; onboarding only becomes complete once details are submitted and
        charges are enabled.
        """
        account = self.get_by_gateway_account(account_id)
        if account is None:
            if not user_id:
                return None
            account = ConnectedAccount(user_id=user_id, gateway_account_id=account_id)
            self.db.add(account)

        if payouts_enabled is not None:
            account.payouts_enabled = payouts_enabled
        if charges_enabled is not None:
            account.charges_enabled = charges_enabled
        if details_submitted is not None:
            account.details_submitted = details_submitted
        if account.details_submitted and account.charges_enabled:
            account.onboarding_complete = True
        account.last_webhook_at = utcnow()

        self.db.flush()
        return account


class WebhookEventRepository:
    """Inbound event log"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, event_id: str) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()

    def record(self, event_type: str, event_id: str, payload: Dict[str, Any]) -> WebhookEvent:
        db_event = WebhookEvent(event_type=event_type, event_id=event_id, payload=payload, processed=False)
        self.db.add(db_event)
        self.db.flush()
        return db_event

    def list_recent(self, limit: int = 50, processed: Optional[bool] = None) -> List[WebhookEvent]:
        query = self.db.query(WebhookEvent)
        if processed is not None:
            query = query.filter(WebhookEvent.processed == processed)
        return query.order_by(WebhookEvent.created_at.desc()).limit(limit).all()


class ReceiptRepository:
    """Write-once receipts"""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def generate_number(now: Optional[datetime] = None) -> str:
        """SM-<epoch hex>-<random>, unique per receipt"""
        epoch = int((now or utcnow()).timestamp())
        return f"SM-{epoch:X}-{uuid.uuid4().hex[:6].upper()}"

    def create_receipt(self, payment: Payment) -> Receipt:
        db_receipt = Receipt(
            payment_id=payment.id,
            user_id=payment.contributor_id,
            receipt_number=self.generate_number(),
            amount=payment.amount,
            need_title=payment.need_title,
        )
        self.db.add(db_receipt)
        return db_receipt

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Receipt]:
        return (
            self.db.query(Receipt)
            .filter(Receipt.user_id == user_id)
            .order_by(Receipt.created_at.desc())
            .limit(limit)
            .all()
        )


class ProfileRepository:
    """Contributor lifetime totals"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[Profile]:
        return self.db.get(Profile, user_id)

    def increment_total_given(self, user_id: str, amount: Decimal) -> bool:
        """Single-statement increment; no-op when the profile does not exist"""
        updated = (
            self.db.query(Profile)
            .filter(Profile.id == user_id)
            .update({Profile.total_given: Profile.total_given + amount}, synchronize_session=False)
        )
        return updated == 1


class NotificationRepository:
    """Owner notifications emitted by settlement"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: str, title: str, message: str, need_id: Optional[uuid.UUID] = None) -> Notification:
        db_notification = Notification(
            user_id=user_id,
            type="contribution",
            title=title,
            message=message,
            need_id=need_id,
        )
        self.db.add(db_notification)
        return db_notification


class IdempotencyRepository:
    """Durable de-duplication keys for checkout"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self.db.get(IdempotencyRecord, key)

    def reserve(self, key: str) -> IdempotencyRecord:
        """Insert the key before any side effect; a concurrent duplicate fails the flush with IntegrityError"""
        record = IdempotencyRecord(key=key, payment_id=None)
        self.db.add(record)
        self.db.flush()
        return record

    def attach(self, key: str, payment_id: uuid.UUID) -> None:
        self.db.query(IdempotencyRecord).filter(IdempotencyRecord.key == key).update(
            {IdempotencyRecord.payment_id: payment_id}, synchronize_session=False
        )
