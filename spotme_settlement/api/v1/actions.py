"""POST /v1/actions - single action endpoint for the settlement engine"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from spotme_settlement.api.dependencies import get_gateway, get_request_id, get_settings
from spotme_settlement.api.registry import ActionContext, registry
from spotme_settlement.api.v1.schemas import (
    AccountSchema,
    AllocationSchema,
    CheckoutResponse,
    CreateCheckoutAction,
    DashboardSchema,
    ErrorResponse,
    FailedPaymentSchema,
    FailedPaymentsResponse,
    FetchFailedPaymentsAction,
    FetchPayoutDashboardAction,
    FetchReceiptsAction,
    FetchWebhookLogsAction,
    GetPaymentAction,
    MonthBucketSchema,
    NeedRollupSchema,
    PaymentResponse,
    PaymentSchema,
    PayoutDashboardResponse,
    PayoutSummarySchema,
    ProcessWebhookAction,
    ReceiptSchema,
    ReceiptsResponse,
    RetryPaymentAction,
    RetryPaymentResponse,
    RetrySchema,
    SpreadSchema,
    TransactionSchema,
    VerifyPaymentAction,
    VerifyPaymentResponse,
    WebhookLogSchema,
    WebhookLogsResponse,
    WebhookResponse,
    action_adapter,
)
from spotme_settlement.config import Settings
from spotme_settlement.core.checkout import DIRECT_MODE_NOTICE, CheckoutRequest, PaymentOrchestrator, SpreadShare
from spotme_settlement.core.payouts import fetch_payout_dashboard
from spotme_settlement.core.retries import RetryScheduler
from spotme_settlement.core.webhooks import WebhookReconciler, fetch_webhook_logs
from spotme_settlement.domain.exceptions import SettlementError
from spotme_settlement.domain.spread import split_summary
from spotme_settlement.infrastructure.clients.gateway import GatewayPort
from spotme_settlement.infrastructure.database.models import Payment
from spotme_settlement.infrastructure.database.repositories import ReceiptRepository
from spotme_settlement.infrastructure.database.session import get_db

router = APIRouter()


def dump(response) -> Dict[str, Any]:
    return response.model_dump(by_alias=True, exclude_none=True, mode="json")


def error_response(message: str, error: SettlementError | None = None) -> Dict[str, Any]:
    if error is None:
        return dump(ErrorResponse(error=message))
    return dump(ErrorResponse(error=message, code=error.code, retryable=error.retryable, **error.details))


def payment_schema(payment: Payment, schema=PaymentSchema, **extra) -> PaymentSchema:
    return schema(
        id=str(payment.id),
        type=payment.type,
        status=payment.status,
        mode=payment.mode,
        amount=payment.amount,
        tip_amount=payment.tip_amount,
        platform_fee=payment.platform_fee,
        recipient_receives=payment.recipient_receives,
        destination_charge=payment.destination_charge,
        need_id=str(payment.need_id) if payment.need_id else None,
        need_title=payment.need_title,
        contributor_id=payment.contributor_id,
        contributor_name=payment.contributor_name,
        is_anonymous=payment.is_anonymous,
        failure_reason=payment.failure_reason,
        failure_code=payment.failure_code,
        retry_of_payment_id=str(payment.retry_of_payment_id) if payment.retry_of_payment_id else None,
        created_at=payment.created_at,
        completed_at=payment.completed_at,
        failed_at=payment.failed_at,
        allocations=[AllocationSchema(need_id=str(a.need_id), amount=a.amount, fee=a.fee) for a in payment.allocations],
        **extra,
    )


@router.post("/actions")
async def dispatch_action(
    request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayPort = Depends(get_gateway),
    config: Settings = Depends(get_settings),
):
    """
    Validate {action, ...fields}, run the registered handler, commit.

    Protocol errors (bad JSON, unknown action, invalid fields) and domain
    errors come back as {success: false, error} with HTTP 200.
    """
    request_id = get_request_id(request)

    try:
        body = await request.json()
    except ValueError:
        return error_response("Request body must be JSON")

    action = body.get("action") if isinstance(body, dict) else None
    if not isinstance(action, str) or action not in registry:
        return error_response(f"Unknown action: {action}")

    try:
        command = action_adapter.validate_python(body)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"][1:])
        message = first["msg"] if not field else f"{field}: {first['msg']}"
        logging.info(f"Invalid {action} request: {message}", extra={"request_id": request_id})
        return error_response(message)

    ctx = ActionContext(db=db, gateway=gateway, config=config, request_id=request_id)

    try:
        response = await registry.dispatch(command, ctx)
        db.commit()
        return dump(response)

    except SettlementError as e:
        db.rollback()
        logging.warning(
            f"{action} failed: {e}",
            extra={"request_id": request_id, "error_code": e.code, "retryable": e.retryable},
        )
        return error_response(str(e), e)

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error in {action}: {e}", extra={"request_id": request_id})
        return error_response("Internal server error")


@registry.register("create_checkout")
async def create_checkout(command: CreateCheckoutAction, ctx: ActionContext) -> CheckoutResponse:
    orchestrator = PaymentOrchestrator(ctx.db, ctx.gateway, ctx.config, ctx.request_id)
    result = await orchestrator.create_checkout(
        CheckoutRequest(
            amount=command.amount,
            tip_amount=command.tip_amount,
            need_id=command.need_id,
            spread_allocations=[SpreadShare(need_id=s.need_id, amount=s.amount) for s in command.spread_allocations]
            if command.spread_allocations
            else None,
            spread_strategy=command.spread_strategy,
            spread_category=command.spread_category,
            contributor_id=command.contributor_id,
            contributor_name=command.contributor_name,
            note=command.note,
            is_anonymous=command.is_anonymous,
            idempotency_key=command.idempotency_key,
        )
    )

    spread = None
    if result.spread is not None:
        spread = SpreadSchema(
            total_amount=result.spread.total_amount,
            total_people=result.spread.total_people,
            goals_completed=result.spread.goals_completed,
            fee=result.spread.fee,
            net_amount=result.spread.net_amount,
            unallocated=result.spread.unallocated,
            summary=split_summary(result.spread),
            allocations=[
                AllocationSchema(
                    need_id=str(a.need_id),
                    amount=a.amount,
                    fee=a.fee,
                    need_title=a.need_title,
                    will_complete=a.will_complete,
                )
                for a in result.spread.allocations
            ],
        )

    return CheckoutResponse(
        payment_id=result.payment_id,
        mode=result.mode,
        destination_charge=result.destination_charge,
        recipient_receives=result.recipient_receives,
        amount=result.amount,
        tip_amount=result.tip_amount,
        application_fee=result.application_fee,
        client_secret=result.client_secret,
        stripe_not_configured=True if result.gateway_not_configured else None,
        notice=result.notice,
        replayed=True if result.replayed else None,
        receipt_number=result.receipt_number,
        spread=spread,
    )


@registry.register("verify_payment")
async def verify_payment(command: VerifyPaymentAction, ctx: ActionContext) -> VerifyPaymentResponse:
    orchestrator = PaymentOrchestrator(ctx.db, ctx.gateway, ctx.config, ctx.request_id)
    result = await orchestrator.verify_payment(command.payment_id)
    return VerifyPaymentResponse(
        payment_id=result.payment_id,
        status=result.status,
        gateway_status=result.gateway_status,
        failure_reason=result.failure_reason,
        failure_code=result.failure_code,
        receipt_number=result.receipt_number,
    )


@registry.register("retry_payment")
async def retry_payment(command: RetryPaymentAction, ctx: ActionContext):
    scheduler = RetryScheduler(ctx.db, ctx.gateway, ctx.config, ctx.request_id)
    result = await scheduler.retry_payment(command.failed_payment_id)

    if not result.succeeded:
        # Declined: the slot is consumed and recorded, so this response still commits
        return ErrorResponse(
            error=result.error,
            code="gateway_rejected",
            retryable=result.retries_remaining > 0,
            decline_code=result.error_code,
            retry_consumed=True,
            retries_remaining=result.retries_remaining,
        )

    return RetryPaymentResponse(
        payment_id=result.payment_id,
        original_payment_id=result.original_payment_id,
        status=result.status,
        mode=result.mode,
        retry_number=result.retry_number,
        retries_remaining=result.retries_remaining,
        client_secret=result.client_secret,
        stripe_not_configured=True if result.gateway_not_configured else None,
        notice=DIRECT_MODE_NOTICE if result.gateway_not_configured else None,
    )


@registry.register("fetch_failed_payments")
async def fetch_failed_payments(command: FetchFailedPaymentsAction, ctx: ActionContext) -> FailedPaymentsResponse:
    scheduler = RetryScheduler(ctx.db, ctx.gateway, ctx.config, ctx.request_id)
    views = scheduler.fetch_failed_payments(command.user_id)
    return FailedPaymentsResponse(
        failed_payments=[
            payment_schema(
                view.payment,
                schema=FailedPaymentSchema,
                retries=[
                    RetrySchema(
                        id=str(r.id),
                        retry_number=r.retry_number,
                        status=r.status,
                        new_payment_id=str(r.new_payment_id) if r.new_payment_id else None,
                        scheduled_at=r.scheduled_at,
                        attempted_at=r.attempted_at,
                        completed_at=r.completed_at,
                        result=r.result,
                        error=r.error,
                    )
                    for r in view.retries
                ],
                retry_count=view.retry_count,
                max_retries=view.max_retries,
                can_retry=view.can_retry,
            )
            for view in views
        ]
    )


@registry.register("process_webhook")
async def process_webhook(command: ProcessWebhookAction, ctx: ActionContext) -> WebhookResponse:
    result = WebhookReconciler(ctx.db, ctx.config, ctx.request_id).process(
        command.event_type, command.event_id, command.payload
    )
    # An unapplied event is still committed so a redelivery can pick it up
    return WebhookResponse(
        success=result.error is None,
        event_id=result.event_id,
        event_type=result.event_type,
        result=result.result,
        processed=result.processed,
        error=result.error,
    )


@registry.register("fetch_payout_dashboard")
async def payout_dashboard(command: FetchPayoutDashboardAction, ctx: ActionContext) -> PayoutDashboardResponse:
    dashboard = fetch_payout_dashboard(ctx.db, command.user_id, ctx.config)
    account = dashboard.account
    summary = dashboard.summary

    return PayoutDashboardResponse(
        dashboard=DashboardSchema(
            account=AccountSchema(
                gateway_account_id=account.gateway_account_id,
                onboarding_complete=account.onboarding_complete,
                payouts_enabled=account.payouts_enabled,
                charges_enabled=account.charges_enabled,
                details_submitted=account.details_submitted,
            )
            if account is not None
            else None,
            summary=PayoutSummarySchema(
                total_received=summary.total_received,
                total_fees=summary.total_fees,
                net_received=summary.net_received,
                direct_deposits=summary.direct_deposits,
                direct_deposit_count=summary.direct_deposit_count,
                platform_collect_count=summary.platform_collect_count,
                total_payments=summary.total_payments,
            ),
            needs=[
                NeedRollupSchema(
                    id=n.need_id,
                    title=n.title,
                    status=n.status,
                    goal_amount=n.goal_amount,
                    raised_amount=n.raised_amount,
                    contributor_count=n.contributor_count,
                    total_received=n.total_received,
                    total_fees=n.total_fees,
                    net_received=n.net_received,
                    payment_count=n.payment_count,
                )
                for n in dashboard.needs
            ],
            monthly_data=[
                MonthBucketSchema(month=m.month, gross=m.gross, fees=m.fees, net=m.net, count=m.count)
                for m in dashboard.monthly_data
            ],
            recent_transactions=[
                TransactionSchema(
                    payment_id=t.payment_id,
                    need_id=t.need_id,
                    need_title=t.need_title,
                    amount=t.amount,
                    fee=t.fee,
                    net=t.net,
                    mode=t.mode,
                    destination_charge=t.destination_charge,
                    contributor_name=t.contributor_name,
                    completed_at=t.completed_at,
                )
                for t in dashboard.recent_transactions
            ],
        )
    )


@registry.register("get_payment")
async def get_payment(command: GetPaymentAction, ctx: ActionContext) -> PaymentResponse:
    payment = PaymentOrchestrator(ctx.db, ctx.gateway, ctx.config, ctx.request_id).get_payment(command.payment_id)
    return PaymentResponse(payment=payment_schema(payment))


@registry.register("fetch_receipts")
async def fetch_receipts(command: FetchReceiptsAction, ctx: ActionContext) -> ReceiptsResponse:
    receipts = ReceiptRepository(ctx.db).list_for_user(command.user_id)
    return ReceiptsResponse(
        receipts=[
            ReceiptSchema(
                id=str(r.id),
                payment_id=str(r.payment_id),
                receipt_number=r.receipt_number,
                amount=r.amount,
                need_title=r.need_title,
                created_at=r.created_at,
            )
            for r in receipts
        ]
    )


@registry.register("fetch_webhook_logs")
async def webhook_logs(command: FetchWebhookLogsAction, ctx: ActionContext) -> WebhookLogsResponse:
    events = fetch_webhook_logs(ctx.db, limit=command.limit, processed=command.processed)
    return WebhookLogsResponse(
        logs=[
            WebhookLogSchema(
                id=str(e.id),
                event_id=e.event_id,
                event_type=e.event_type,
                processed=e.processed,
                error=e.error,
                created_at=e.created_at,
            )
            for e in events
        ]
    )
