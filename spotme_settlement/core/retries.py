"""Retry scheduler for failed payments"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spotme_settlement.config import Settings, settings
from spotme_settlement.core.checkout import PaymentOrchestrator, intent_metadata
from spotme_settlement.core.settlement import settle_payment
from spotme_settlement.domain.exceptions import (
    GatewayNotConfiguredError,
    GatewayRejectedError,
    GatewayTransientError,
    InvalidContributionError,
    RetryCapExceededError,
    RetryInProgressError,
    SettlementError,
)
from spotme_settlement.domain.models import (
    MODE_DIRECT,
    MODE_GATEWAY,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    RETRY_COMPLETED,
    RETRY_FAILED,
    RETRY_PENDING,
    Allocation,
)
from spotme_settlement.infrastructure.clients.gateway import GatewayPort
from spotme_settlement.infrastructure.database.models import Payment, PaymentRetry
from spotme_settlement.infrastructure.database.repositories import PaymentRepository, RetryRepository
from spotme_settlement.infrastructure.observability.metrics import payment_retry_counter
from spotme_settlement.utils.date_utils import utcnow
from spotme_settlement.utils.money import to_decimal

logger = logging.getLogger(__name__)

CAP_REACHED_MESSAGE = "Maximum retry attempts reached. No further automatic retries will occur."


@dataclass
class RetryResult:
    original_payment_id: str
    retry_number: int
    retries_remaining: int
    status: str
    mode: str = MODE_GATEWAY
    payment_id: Optional[str] = None
    client_secret: Optional[str] = None
    gateway_not_configured: bool = False
    # Set when the gateway declined the new attempt; the slot is still consumed
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class FailedPaymentView:
    payment: Payment
    retries: List[PaymentRetry] = field(default_factory=list)
    max_retries: int = 3

    @property
    def retry_count(self) -> int:
        return len(self.retries)

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries


class RetryScheduler:
    """Re-attempts failed payments, at most max_payment_retries times per original"""

    def __init__(
        self,
        db: Session,
        gateway: GatewayPort,
        config: Settings = settings,
        request_id: Optional[str] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.request_id = request_id
        self.orchestrator = PaymentOrchestrator(db, gateway, config, request_id)

    async def retry_payment(self, failed_payment_id: str) -> RetryResult:
        """
        Retry a failed payment with a fresh intent.

        Retrying a payment that was itself created by a retry counts against the
        root payment of the chain, so the cap bounds the whole chain.

        Outcomes:
        - intent created: new pending Payment, retry row pending, superseded intent canceled
        - gateway not configured: failed payment settled in direct mode, retry row completed
        - gateway declined: retry row failed, slot consumed, result carries the reason
        - gateway unavailable: GatewayTransientError, nothing written

        Raises:
            PaymentNotFoundError: unknown payment id
            InvalidContributionError: payment is not in failed status
            RetryCapExceededError: all retry slots used
        """
        failed = self.orchestrator.get_payment(failed_payment_id)
        if failed.status != PAYMENT_FAILED:
            raise InvalidContributionError(f"Only failed payments can be retried (status: {failed.status})")

        root = self._root_of(failed)
        cap = self.config.max_payment_retries
        retries = RetryRepository(self.db)
        used = retries.count_for_payment(root.id)
        if used >= cap:
            payment_retry_counter.labels(outcome="cap_exceeded").inc()
            logger.info(
                "Retry cap reached",
                extra={"request_id": self.request_id, "payment_id": str(root.id), "retries": used},
            )
            raise RetryCapExceededError(CAP_REACHED_MESSAGE, details={"retry_consumed": False, "retries_remaining": 0})

        retry_number = used + 1
        root_id, failed_id = root.id, failed.id
        try:
            # Claim the slot before calling out; the unique (payment, number) pair serialises racing retries
            slot = retries.create_retry(root_id, retry_number, RETRY_PENDING)
        except IntegrityError:
            self.db.rollback()
            raise RetryInProgressError("Another retry of this payment is already in progress")

        payments = PaymentRepository(self.db)
        failed = payments.get(failed_id)
        tip = to_decimal(failed.tip_amount)
        fee = to_decimal(failed.platform_fee)
        destination = failed.connected_account_id if failed.destination_charge else None
        metadata = intent_metadata(
            failed.type,
            str(failed.need_id) if failed.need_id else ",".join(str(a.need_id) for a in failed.allocations),
            failed.need_title,
            failed.contributor_id,
            failed.contributor_name,
            tip,
            retry_of=str(root_id),
        )

        try:
            routed = await self.orchestrator.open_intent(to_decimal(failed.amount), tip, fee, destination, metadata)

        except GatewayNotConfiguredError:
            # Direct mode charges no card, so no tip or application fee is collected
            failed.tip_amount = Decimal("0.00")
            failed.application_fee = Decimal("0.00")
            self.db.flush()
            outcome = settle_payment(
                self.db, failed, source="retry", mode=MODE_DIRECT, config=self.config, request_id=self.request_id
            )
            self._close_slot(slot, RETRY_COMPLETED, result="direct")
            payment_retry_counter.labels(outcome="direct").inc()
            logger.warning(
                "Gateway not configured, failed payment settled in direct mode",
                extra={"request_id": self.request_id, "payment_id": str(failed_id), "applied": outcome.applied},
            )
            return RetryResult(
                original_payment_id=str(root_id),
                retry_number=retry_number,
                retries_remaining=cap - retry_number,
                status=PAYMENT_COMPLETED,
                mode=MODE_DIRECT,
                payment_id=str(failed_id),
                gateway_not_configured=True,
            )

        except GatewayRejectedError as e:
            self._close_slot(slot, RETRY_FAILED, result=e.decline_code, error=e.reason)
            payment_retry_counter.labels(outcome="rejected").inc()
            logger.info(
                "Retry declined by gateway",
                extra={
                    "request_id": self.request_id,
                    "payment_id": str(root_id),
                    "retry_number": retry_number,
                    "decline_code": e.decline_code,
                },
            )
            return RetryResult(
                original_payment_id=str(root_id),
                retry_number=retry_number,
                retries_remaining=cap - retry_number,
                status=PAYMENT_FAILED,
                error=e.reason,
                error_code=e.decline_code,
            )

        except GatewayTransientError as e:
            # Caller rolls back, which releases the slot
            payment_retry_counter.labels(outcome="transient").inc()
            e.details["retry_consumed"] = False
            raise

        allocations = [
            Allocation(need_id=str(a.need_id), amount=to_decimal(a.amount), fee=to_decimal(a.fee))
            for a in failed.allocations
        ]
        new_payment = payments.create_payment(
            allocations,
            to_decimal(failed.amount),
            to_decimal(failed.recipient_receives),
            contributor_id=failed.contributor_id,
            contributor_name=failed.contributor_name,
            need_id=failed.need_id,
            need_title=failed.need_title,
            type=failed.type,
            tip_amount=tip,
            platform_fee=fee,
            application_fee=fee + tip,
            note=failed.note,
            is_anonymous=failed.is_anonymous,
            gateway_intent_id=routed.intent.id,
            client_secret=routed.intent.client_secret,
            mode=MODE_GATEWAY,
            destination_charge=destination is not None,
            connected_account_id=destination,
            retry_of_payment_id=root_id,
        )
        slot.new_payment_id = new_payment.id
        self.db.flush()

        payment_retry_counter.labels(outcome="created").inc()
        logger.info(
            "Retry intent created",
            extra={
                "request_id": self.request_id,
                "payment_id": str(root_id),
                "new_payment_id": str(new_payment.id),
                "retry_number": retry_number,
            },
        )
        await self._cancel_superseded(failed)
        return RetryResult(
            original_payment_id=str(root_id),
            retry_number=retry_number,
            retries_remaining=cap - retry_number,
            status=PAYMENT_PENDING,
            payment_id=str(new_payment.id),
            client_secret=new_payment.client_secret,
        )

    def _root_of(self, payment: Payment) -> Payment:
        """First payment of a retry chain"""
        payments = PaymentRepository(self.db)
        seen = {payment.id}
        while payment.retry_of_payment_id is not None:
            parent = payments.get(payment.retry_of_payment_id)
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            payment = parent
        return payment

    async def _cancel_superseded(self, payment: Payment) -> None:
        """Cancel the intent a retry replaced so it can no longer be confirmed"""
        if not payment.gateway_intent_id:
            return
        try:
            await self.gateway.cancel_payment_intent(payment.gateway_intent_id)
        except SettlementError as e:
            logger.warning(
                "Could not cancel superseded intent",
                extra={
                    "request_id": self.request_id,
                    "payment_id": str(payment.id),
                    "intent_id": payment.gateway_intent_id,
                    "error": str(e),
                },
            )

    def _close_slot(self, slot: PaymentRetry, status: str, result: Optional[str] = None, error: Optional[str] = None) -> None:
        slot.status = status
        slot.result = result
        slot.error = error
        slot.completed_at = utcnow()
        self.db.flush()

    def fetch_failed_payments(self, user_id: str) -> List[FailedPaymentView]:
        """Newest failed payments for a contributor, each with its retry history"""
        payments = PaymentRepository(self.db).list_failed_for_contributor(user_id, limit=self.config.failed_payments_limit)
        retries = RetryRepository(self.db)
        return [
            FailedPaymentView(
                payment=p,
                retries=retries.list_for_payment(self._root_of(p).id),
                max_retries=self.config.max_payment_retries,
            )
            for p in payments
        ]