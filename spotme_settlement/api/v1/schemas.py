"""Pydantic schemas for the action protocol (camelCase on the wire)"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

# Decimal internally, JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------- requests


class SpreadAllocationIn(CamelModel):
    need_id: str = Field(..., min_length=1)
    amount: Decimal


class CreateCheckoutAction(CamelModel):
    """create_checkout: single need (needId) or spread (spreadAllocations | spreadStrategy)"""

    action: Literal["create_checkout"]
    amount: Decimal
    need_id: Optional[str] = None
    spread_allocations: Optional[List[SpreadAllocationIn]] = None
    spread_strategy: Optional[Literal["closest", "category", "random"]] = None
    spread_category: Optional[str] = None
    contributor_id: Optional[str] = None
    contributor_name: Optional[str] = None
    tip_amount: Decimal = Decimal("0")
    note: str = Field("", max_length=500)
    is_anonymous: bool = False
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=100)

    @model_validator(mode="after")
    def require_target(self):
        if not self.need_id and not self.spread_allocations and not self.spread_strategy:
            raise ValueError("needId or spreadAllocations is required")
        return self


class VerifyPaymentAction(CamelModel):
    action: Literal["verify_payment"]
    payment_id: str = Field(..., min_length=1)


class RetryPaymentAction(CamelModel):
    action: Literal["retry_payment"]
    failed_payment_id: str = Field(..., min_length=1)


class FetchFailedPaymentsAction(CamelModel):
    action: Literal["fetch_failed_payments"]
    user_id: str = Field(..., min_length=1)


class ProcessWebhookAction(CamelModel):
    action: Literal["process_webhook"]
    event_type: str = Field(..., min_length=1)
    event_id: str = Field(..., min_length=1)
    payload: Dict[str, Any]


class FetchPayoutDashboardAction(CamelModel):
    action: Literal["fetch_payout_dashboard"]
    user_id: str = Field(..., min_length=1)


class GetPaymentAction(CamelModel):
    action: Literal["get_payment"]
    payment_id: str = Field(..., min_length=1)


class FetchReceiptsAction(CamelModel):
    action: Literal["fetch_receipts"]
    user_id: str = Field(..., min_length=1)


class FetchWebhookLogsAction(CamelModel):
    action: Literal["fetch_webhook_logs"]
    limit: int = Field(50, ge=1, le=200)
    processed: Optional[bool] = None


ActionRequest = Annotated[
    Union[
        CreateCheckoutAction,
        VerifyPaymentAction,
        RetryPaymentAction,
        FetchFailedPaymentsAction,
        ProcessWebhookAction,
        FetchPayoutDashboardAction,
        GetPaymentAction,
        FetchReceiptsAction,
        FetchWebhookLogsAction,
    ],
    Field(discriminator="action"),
]

action_adapter = TypeAdapter(ActionRequest)


# --------------------------------------------------------------- responses


class ActionResponse(CamelModel):
    success: bool = True


class ErrorResponse(ActionResponse):
    success: bool = False
    error: str
    code: Optional[str] = None
    retryable: Optional[bool] = None
    decline_code: Optional[str] = None
    retry_consumed: Optional[bool] = None
    retries_remaining: Optional[int] = None


class AllocationSchema(CamelModel):
    need_id: str
    amount: Money
    fee: Money = Decimal("0.00")
    need_title: Optional[str] = None
    will_complete: Optional[bool] = None


class SpreadSchema(CamelModel):
    total_amount: Money
    total_people: int
    goals_completed: int
    fee: Money
    net_amount: Money
    unallocated: Money
    summary: str
    allocations: List[AllocationSchema]


class CheckoutResponse(ActionResponse):
    payment_id: str
    mode: str
    destination_charge: bool
    recipient_receives: Money
    amount: Money
    tip_amount: Money
    application_fee: Money
    client_secret: Optional[str] = None
    stripe_not_configured: Optional[bool] = None
    notice: Optional[str] = None
    replayed: Optional[bool] = None
    receipt_number: Optional[str] = None
    spread: Optional[SpreadSchema] = None


class VerifyPaymentResponse(ActionResponse):
    payment_id: str
    status: str
    gateway_status: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    receipt_number: Optional[str] = None


class RetryPaymentResponse(ActionResponse):
    payment_id: Optional[str] = None
    original_payment_id: str
    status: str
    mode: str
    retry_number: int
    retries_remaining: int
    retry_consumed: bool = True
    client_secret: Optional[str] = None
    stripe_not_configured: Optional[bool] = None
    notice: Optional[str] = None


class RetrySchema(CamelModel):
    id: str
    retry_number: int
    status: str
    new_payment_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    attempted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[str] = None
    error: Optional[str] = None


class PaymentSchema(CamelModel):
    id: str
    type: str
    status: str
    mode: str
    amount: Money
    tip_amount: Money
    platform_fee: Money
    recipient_receives: Money
    destination_charge: bool
    need_id: Optional[str] = None
    need_title: str = ""
    contributor_id: Optional[str] = None
    contributor_name: str = ""
    is_anonymous: bool = False
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    retry_of_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    allocations: List[AllocationSchema] = Field(default_factory=list)


class FailedPaymentSchema(PaymentSchema):
    retries: List[RetrySchema] = Field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    can_retry: bool = True


class FailedPaymentsResponse(ActionResponse):
    failed_payments: List[FailedPaymentSchema]


class PaymentResponse(ActionResponse):
    payment: PaymentSchema


class WebhookResponse(ActionResponse):
    event_id: str
    event_type: str
    result: str
    processed: bool
    error: Optional[str] = None


class AccountSchema(CamelModel):
    gateway_account_id: str
    onboarding_complete: bool
    payouts_enabled: bool
    charges_enabled: bool
    details_submitted: bool


class PayoutSummarySchema(CamelModel):
    total_received: Money
    total_fees: Money
    net_received: Money
    direct_deposits: Money
    direct_deposit_count: int
    platform_collect_count: int
    total_payments: int


class NeedRollupSchema(CamelModel):
    id: str
    title: str
    status: str
    goal_amount: Money
    raised_amount: Money
    contributor_count: int
    total_received: Money
    total_fees: Money
    net_received: Money
    payment_count: int


class MonthBucketSchema(CamelModel):
    month: str
    gross: Money
    fees: Money
    net: Money
    count: int


class TransactionSchema(CamelModel):
    payment_id: str
    need_id: str
    need_title: str
    amount: Money
    fee: Money
    net: Money
    mode: str
    destination_charge: bool
    contributor_name: str
    completed_at: Optional[datetime] = None


class DashboardSchema(CamelModel):
    account: Optional[AccountSchema] = None
    summary: PayoutSummarySchema
    needs: List[NeedRollupSchema]
    monthly_data: List[MonthBucketSchema]
    recent_transactions: List[TransactionSchema]


class PayoutDashboardResponse(ActionResponse):
    dashboard: DashboardSchema


class ReceiptSchema(CamelModel):
    id: str
    payment_id: str
    receipt_number: str
    amount: Money
    need_title: str
    created_at: Optional[datetime] = None


class ReceiptsResponse(ActionResponse):
    receipts: List[ReceiptSchema]


class WebhookLogSchema(CamelModel):
    id: str
    event_id: str
    event_type: str
    processed: bool
    error: Optional[str] = None
    created_at: Optional[datetime] = None


class WebhookLogsResponse(ActionResponse):
    logs: List[WebhookLogSchema]
