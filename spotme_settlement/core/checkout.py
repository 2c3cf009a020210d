"""
Payment intent orchestration: checkout, verification and direct-mode fallback.

The orchestrator resolves where the money goes, asks the gateway for an
intent, and persists a pending Payment. It never touches the ledger itself;
ledger writes happen only through settle_payment.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spotme_settlement.config import Settings, settings
from spotme_settlement.core.settlement import record_payment_failure, settle_payment
from spotme_settlement.domain.exceptions import (
    GatewayNotConfiguredError,
    GatewayRejectedError,
    GatewayTransientError,
    InvalidContributionError,
    PaymentNotFoundError,
)
from spotme_settlement.domain.fees import platform_fee, quote_contribution, validate_amount
from spotme_settlement.domain.models import (
    ANONYMOUS_NAME,
    MODE_DIRECT,
    MODE_GATEWAY,
    NEED_COLLECTING,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    TYPE_CONTRIBUTION,
    TYPE_SPREAD,
    Allocation,
    PaymentIntent,
    SpreadResult,
)
from spotme_settlement.domain.spread import spread_contribution
from spotme_settlement.infrastructure.clients.gateway import GatewayPort
from spotme_settlement.infrastructure.database.models import Need, Payment
from spotme_settlement.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    IdempotencyRepository,
    NeedRepository,
    PaymentRepository,
    ProfileRepository,
)
from spotme_settlement.infrastructure.observability.metrics import checkout_counter
from spotme_settlement.utils.date_utils import time_bucket, utcnow
from spotme_settlement.utils.ids import parse_uuid
from spotme_settlement.utils.money import to_cents, to_decimal

logger = logging.getLogger(__name__)

DIRECT_MODE_NOTICE = "Processed without card charge"

# Intent states that end the attempt without money moving
FAILED_INTENT_STATUSES = ("requires_payment_method", "canceled")

METADATA_VALUE_LIMIT = 500


@dataclass
class SpreadShare:
    """Client-computed share of a spread"""

    need_id: str
    amount: Decimal


@dataclass
class CheckoutRequest:
    amount: Decimal
    tip_amount: Decimal = Decimal("0")
    need_id: Optional[str] = None
    spread_allocations: Optional[List[SpreadShare]] = None
    spread_strategy: Optional[str] = None
    spread_category: Optional[str] = None
    contributor_id: Optional[str] = None
    contributor_name: Optional[str] = None
    note: str = ""
    is_anonymous: bool = False
    idempotency_key: Optional[str] = None


@dataclass
class ChargePlan:
    """Resolved target of a checkout: what is charged and where it lands"""

    type: str
    amount: Decimal
    tip_amount: Decimal
    fee: Decimal
    recipient_receives: Decimal
    allocations: List[Allocation]
    need_title: str
    need: Optional[Need] = None
    spread: Optional[SpreadResult] = None

    @property
    def target_key(self) -> str:
        if self.need is not None:
            return str(self.need.id)
        return "spread:" + ",".join(sorted(str(a.need_id) for a in self.allocations))


@dataclass
class CheckoutResult:
    payment_id: str
    mode: str
    amount: Decimal
    tip_amount: Decimal
    application_fee: Decimal
    recipient_receives: Decimal
    destination_charge: bool = False
    client_secret: Optional[str] = None
    gateway_not_configured: bool = False
    replayed: bool = False
    receipt_number: Optional[str] = None
    spread: Optional[SpreadResult] = None

    @property
    def notice(self) -> Optional[str]:
        return DIRECT_MODE_NOTICE if self.mode == MODE_DIRECT else None


@dataclass
class VerificationResult:
    payment_id: str
    status: str
    gateway_status: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    receipt_number: Optional[str] = None
    settled: bool = False


@dataclass
class RoutedIntent:
    intent: PaymentIntent
    destination: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def intent_metadata(
    payment_type: str,
    need_id: Optional[str],
    need_title: str,
    contributor_id: Optional[str],
    contributor_name: str,
    tip_amount: Decimal,
    retry_of: Optional[str] = None,
) -> Dict[str, str]:
    """Opaque metadata attached to every intent; values are capped at the gateway limit"""
    metadata = {
        "need_id": need_id or "",
        "need_title": need_title,
        "contributor_id": contributor_id or "anonymous",
        "contributor_name": contributor_name,
        "type": payment_type,
        "tip_amount": str(tip_amount),
    }
    if retry_of:
        metadata["retry_of"] = retry_of
    return {key: value[:METADATA_VALUE_LIMIT] for key, value in metadata.items()}


class PaymentOrchestrator:
    """Creates and verifies gateway payments for contributions"""

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

    # ------------------------------------------------------------------ checkout

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Start a contribution.

        Flow:
        1. Resolve target (single need or spread) and fee breakdown
        2. Reserve the idempotency key; a repeat returns the original payment
        3. Resolve routing (destination charge when the owner finished onboarding)
        4. Create the gateway intent for amount + tip
        5. Persist a pending Payment, or settle directly when no gateway is configured

        Raises:
            InvalidContributionError: bad amount or target
            GatewayRejectedError: gateway refused the intent
            GatewayTransientError: gateway unavailable, safe to retry
        """
        plan = self.resolve_plan(request)
        contributor_name = self.contributor_name(request.contributor_id, request.contributor_name, request.is_anonymous)

        key = self.idempotency_key(request, plan)
        if key:
            replay = self._replay(key)
            if replay is not None:
                return replay
            try:
                IdempotencyRepository(self.db).reserve(key)
            except IntegrityError:
                # A concurrent request with the same key committed first
                self.db.rollback()
                replay = self._replay(key)
                if replay is not None:
                    return replay
                raise InvalidContributionError("A checkout with this idempotency key is already in progress")

        account = self.destination_account(plan.need)
        metadata = intent_metadata(
            plan.type,
            str(plan.need.id) if plan.need is not None else ",".join(str(a.need_id) for a in plan.allocations),
            plan.need_title,
            request.contributor_id,
            contributor_name,
            plan.tip_amount,
        )
        payment_fields = dict(
            contributor_id=request.contributor_id,
            contributor_name=contributor_name,
            need_id=plan.need.id if plan.need is not None else None,
            need_title=plan.need_title,
            type=plan.type,
            platform_fee=plan.fee,
            note=(request.note or "").strip(),
            is_anonymous=request.is_anonymous,
        )

        try:
            routed = await self.open_intent(plan.amount, plan.tip_amount, plan.fee, account, metadata)
        except GatewayNotConfiguredError:
            result = self._checkout_direct(plan, payment_fields)
        except (GatewayRejectedError, GatewayTransientError):
            checkout_counter.labels(mode=MODE_GATEWAY, outcome="failed").inc()
            raise
        else:
            payment = PaymentRepository(self.db).create_payment(
                plan.allocations,
                plan.amount,
                plan.recipient_receives,
                tip_amount=plan.tip_amount,
                application_fee=plan.fee + plan.tip_amount,
                gateway_intent_id=routed.intent.id,
                client_secret=routed.intent.client_secret,
                mode=MODE_GATEWAY,
                destination_charge=routed.destination is not None,
                connected_account_id=routed.destination,
                **payment_fields,
            )
            checkout_counter.labels(mode=MODE_GATEWAY, outcome="created").inc()
            logger.info(
                "Checkout created",
                extra={
                    "request_id": self.request_id,
                    "payment_id": str(payment.id),
                    "intent_id": routed.intent.id,
                    "destination_charge": routed.destination is not None,
                    "amount": str(plan.amount),
                },
            )
            result = self._result_for(payment)

        result.spread = plan.spread
        if key:
            IdempotencyRepository(self.db).attach(key, parse_uuid(result.payment_id))
        return result

    def _checkout_direct(self, plan: ChargePlan, payment_fields: Dict) -> CheckoutResult:
        """No gateway: record a trust-based payment and settle it now"""
        payment = PaymentRepository(self.db).create_payment(
            plan.allocations,
            plan.amount,
            plan.recipient_receives,
            tip_amount=Decimal("0.00"),
            application_fee=Decimal("0.00"),
            mode=MODE_DIRECT,
            destination_charge=False,
            **payment_fields,
        )
        outcome = settle_payment(
            self.db, payment, source="direct", mode=MODE_DIRECT, config=self.config, request_id=self.request_id
        )
        checkout_counter.labels(mode=MODE_DIRECT, outcome="created").inc()
        logger.warning(
            "Gateway not configured, contribution settled in direct mode",
            extra={"request_id": self.request_id, "payment_id": str(payment.id), "amount": str(plan.amount)},
        )
        result = self._result_for(payment)
        result.receipt_number = outcome.receipt_number
        return result

    def resolve_plan(self, request: CheckoutRequest) -> ChargePlan:
        """Validate the request and compute what gets charged and allocated"""
        cap = self.config.max_contribution_amount
        fee_rate = self.config.platform_fee_rate
        needs = NeedRepository(self.db)

        if request.need_id:
            need_uid = parse_uuid(request.need_id)
            need = needs.get(need_uid) if need_uid else None
            if need is None:
                raise InvalidContributionError("Need not found")
            if need.status != NEED_COLLECTING or to_decimal(need.raised_amount) >= to_decimal(need.goal_amount):
                raise InvalidContributionError("This need is no longer accepting contributions")
            quote = quote_contribution(request.amount, request.tip_amount, fee_rate, cap)
            return ChargePlan(
                type=TYPE_CONTRIBUTION,
                amount=quote.amount,
                tip_amount=quote.tip_amount,
                fee=quote.fee,
                recipient_receives=quote.recipient_receives,
                allocations=[Allocation(need_id=str(need.id), amount=quote.amount, fee=quote.fee, need_title=need.title)],
                need_title=need.title,
                need=need,
            )

        total = validate_amount(request.amount, cap)
        tip = to_decimal(request.tip_amount or 0)
        if tip < 0:
            raise InvalidContributionError("Tip cannot be negative")

        if request.spread_allocations:
            allocations = self._precomputed_allocations(request.spread_allocations, total, fee_rate)
            spread = None
        elif request.spread_strategy:
            pool = [NeedRepository.snapshot(n) for n in needs.list_collecting()]
            spread = spread_contribution(
                total,
                pool,
                strategy=request.spread_strategy,
                fee_rate=fee_rate,
                category=request.spread_category,
                max_random_needs=self.config.random_spread_max_needs,
            )
            if not spread.allocations:
                raise InvalidContributionError("No eligible needs found for this spread.")
            allocations = spread.allocations
        else:
            raise InvalidContributionError("needId or spreadAllocations is required")

        # Money that found no need is not charged
        charged = sum((a.amount for a in allocations), Decimal("0.00"))
        fee = sum((a.fee for a in allocations), Decimal("0.00"))
        return ChargePlan(
            type=TYPE_SPREAD,
            amount=charged,
            tip_amount=tip,
            fee=fee,
            recipient_receives=charged - fee,
            allocations=allocations,
            need_title=f"Spread across {len(allocations)} {'need' if len(allocations) == 1 else 'needs'}",
            spread=spread,
        )

    def _precomputed_allocations(self, shares: List[SpreadShare], total: Decimal, fee_rate: Decimal) -> List[Allocation]:
        ids = [parse_uuid(s.need_id) for s in shares]
        if any(i is None for i in ids):
            raise InvalidContributionError("Spread allocation references an invalid need id")
        if len(set(ids)) != len(ids):
            raise InvalidContributionError("Spread allocations must target distinct needs")

        found = {n.id: n for n in NeedRepository(self.db).list_by_ids(ids)}
        allocations = []
        for need_id, share in zip(ids, shares):
            need = found.get(need_id)
            if need is None:
                raise InvalidContributionError(f"Need not found: {need_id}")
            amount = to_decimal(share.amount)
            if amount <= 0:
                raise InvalidContributionError("Spread allocation amounts must be positive")
            goal, raised = to_decimal(need.goal_amount), to_decimal(need.raised_amount)
            if need.status != NEED_COLLECTING or raised >= goal:
                raise InvalidContributionError(f"{need.title} is no longer accepting contributions")
            # Every charged cent must land on a ledger
            if amount > goal - raised:
                raise InvalidContributionError(
                    f"Spread allocation of ${amount} exceeds the ${goal - raised} still needed for {need.title}"
                )
            allocations.append(
                Allocation(
                    need_id=str(need.id),
                    amount=amount,
                    fee=platform_fee(amount, fee_rate),
                    need_title=need.title,
                    goal_amount=goal,
                    raised_before=raised,
                    raised_after=raised + amount,
                    will_complete=amount == goal - raised,
                )
            )

        allocated = sum((a.amount for a in allocations), Decimal("0.00"))
        if allocated != total:
            raise InvalidContributionError(f"Spread allocations sum to ${allocated}, expected ${total}")
        return allocations

    def destination_account(self, need: Optional[Need]) -> Optional[str]:
        """Recipient account id when the owner can take destination charges"""
        if need is None:
            return None
        account = ConnectedAccountRepository(self.db).get_by_user(need.owner_id)
        if account is not None and account.onboarding_complete:
            return account.gateway_account_id
        return None

    def contributor_name(self, contributor_id: Optional[str], name: Optional[str], is_anonymous: bool) -> str:
        if is_anonymous:
            return ANONYMOUS_NAME
        if name:
            return name
        if contributor_id:
            profile = ProfileRepository(self.db).get(contributor_id)
            if profile is not None and profile.display_name:
                return profile.display_name
        return "Someone"

    async def open_intent(
        self,
        amount: Decimal,
        tip_amount: Decimal,
        fee: Decimal,
        destination: Optional[str],
        metadata: Dict[str, str],
    ) -> RoutedIntent:
        """Create the gateway intent for amount + tip; destination charges carry fee + tip as the application fee"""
        intent = await self.gateway.create_payment_intent(
            amount_cents=to_cents(amount + tip_amount),
            currency=self.config.currency,
            metadata=metadata,
            destination=destination,
            application_fee_cents=to_cents(fee + tip_amount) if destination else None,
        )
        return RoutedIntent(intent=intent, destination=destination, metadata=metadata)

    # ------------------------------------------------------------- idempotency

    def idempotency_key(self, request: CheckoutRequest, plan: ChargePlan) -> Optional[str]:
        """Client key when given; otherwise derived for identified contributors within a short window"""
        if request.idempotency_key:
            return f"client:{request.idempotency_key}"
        if not request.contributor_id:
            return None

        bucket = time_bucket(utcnow(), self.config.idempotency_window_seconds)
        raw = f"{request.contributor_id}|{plan.target_key}|{plan.amount}|{plan.tip_amount}|{bucket}"
        return "auto:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _replay(self, key: str) -> Optional[CheckoutResult]:
        record = IdempotencyRepository(self.db).get(key)
        if record is None or record.payment_id is None:
            return None
        payment = PaymentRepository(self.db).get(record.payment_id)
        if payment is None:
            return None

        checkout_counter.labels(mode=payment.mode, outcome="replayed").inc()
        logger.info(
            "Duplicate checkout, returning original payment",
            extra={"request_id": self.request_id, "payment_id": str(payment.id)},
        )
        result = self._result_for(payment)
        result.replayed = True
        return result

    @staticmethod
    def _result_for(payment: Payment) -> CheckoutResult:
        return CheckoutResult(
            payment_id=str(payment.id),
            mode=payment.mode,
            amount=to_decimal(payment.amount),
            tip_amount=to_decimal(payment.tip_amount),
            application_fee=to_decimal(payment.application_fee),
            recipient_receives=to_decimal(payment.recipient_receives),
            destination_charge=bool(payment.destination_charge),
            client_secret=payment.client_secret,
            gateway_not_configured=payment.mode == MODE_DIRECT,
        )

    # ------------------------------------------------------------ verification

    def get_payment(self, payment_id: str) -> Payment:
        uid = parse_uuid(payment_id)
        payment = PaymentRepository(self.db).get(uid) if uid else None
        if payment is None:
            raise PaymentNotFoundError(f"Payment not found: {payment_id}")
        return payment

    async def verify_payment(self, payment_id: str) -> VerificationResult:
        """
        Reconcile a payment with its gateway intent.

        Completed payments return immediately. Pending ones are checked against
        the gateway: succeeded settles, requires_payment_method/canceled fails,
        anything else is still pending.
        """
        payment = self.get_payment(payment_id)

        if payment.status == PAYMENT_COMPLETED:
            return VerificationResult(payment_id=str(payment.id), status=PAYMENT_COMPLETED)
        if payment.status == PAYMENT_FAILED:
            return VerificationResult(
                payment_id=str(payment.id),
                status=PAYMENT_FAILED,
                failure_reason=payment.failure_reason,
                failure_code=payment.failure_code,
            )
        if not payment.gateway_intent_id:
            return VerificationResult(payment_id=str(payment.id), status=payment.status)

        intent = await self.gateway.retrieve_payment_intent(payment.gateway_intent_id)

        if intent.status == "succeeded":
            outcome = settle_payment(self.db, payment, source="verify", config=self.config, request_id=self.request_id)
            return VerificationResult(
                payment_id=str(payment.id),
                status=PAYMENT_COMPLETED,
                gateway_status=intent.status,
                receipt_number=outcome.receipt_number,
                settled=outcome.applied,
            )

        if intent.status in FAILED_INTENT_STATUSES:
            reason = intent.last_payment_error_message or "Payment was not completed"
            code = intent.last_payment_error_code or "unknown"
            record_payment_failure(self.db, payment, reason, code)
            payment = PaymentRepository(self.db).get_fresh(payment.id)
            return VerificationResult(
                payment_id=str(payment.id),
                status=payment.status,
                gateway_status=intent.status,
                failure_reason=payment.failure_reason,
                failure_code=payment.failure_code,
            )

        return VerificationResult(payment_id=str(payment.id), status=payment.status, gateway_status=intent.status)
