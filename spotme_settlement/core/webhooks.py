"""Webhook reconciliation: apply gateway events at most once"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spotme_settlement.config import Settings, settings
from spotme_settlement.core.settlement import record_payment_failure, settle_payment
from spotme_settlement.domain.models import PAYMENT_COMPLETED
from spotme_settlement.infrastructure.database.models import WebhookEvent
from spotme_settlement.infrastructure.database.repositories import (
    ConnectedAccountRepository,
    PaymentRepository,
    WebhookEventRepository,
)
from spotme_settlement.infrastructure.observability.metrics import webhook_event_counter

logger = logging.getLogger(__name__)

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_ACCOUNT_UPDATED = "account.updated"

# (result, error) - a non-empty error leaves the event unprocessed for redelivery
HandlerOutcome = Tuple[str, Optional[str]]


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    result: str
    processed: bool
    error: Optional[str] = None


def event_object(payload: Dict[str, Any]) -> Dict[str, Any]:
    """The event's subject: payload.data.object, or the payload when it already is the object"""
    data = payload.get("data") if isinstance(payload, dict) else None
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"]
    return payload or {}


class WebhookReconciler:
    """
    State machine per event: received -> duplicate? -> applied -> logged.

    The raw event and its processed flag are always persisted, so a
    redelivery is recognised whichever path handled the first delivery.
    """

    def __init__(self, db: Session, config: Settings = settings, request_id: Optional[str] = None):
        self.db = db
        self.config = config
        self.request_id = request_id
        self.handlers: Dict[str, Callable[[Dict[str, Any]], HandlerOutcome]] = {
            EVENT_PAYMENT_SUCCEEDED: self._payment_succeeded,
            EVENT_PAYMENT_FAILED: self._payment_failed,
            EVENT_ACCOUNT_UPDATED: self._account_updated,
        }

    def process(self, event_type: str, event_id: str, payload: Dict[str, Any]) -> WebhookResult:
        events = WebhookEventRepository(self.db)
        event = events.get(event_id)

        if event is not None and event.processed:
            return self._duplicate(event_type, event_id)

        if event is None:
            try:
                event = events.record(event_type, event_id, payload)
            except IntegrityError:
                # Concurrent delivery of the same event recorded it first
                self.db.rollback()
                return self._duplicate(event_type, event_id)

        handler = self.handlers.get(event_type)
        if handler is None:
            result, error = "ignored", None
            logger.info(
                "Unhandled webhook event type",
                extra={"request_id": self.request_id, "event_id": event_id, "event_type": event_type},
            )
        else:
            result, error = handler(event_object(payload))

        event.processed = error is None
        event.error = error
        self.db.flush()

        webhook_event_counter.labels(event_type=event_type, outcome=result).inc()
        log = logger.warning if error else logger.info
        log(
            "Webhook event handled",
            extra={
                "request_id": self.request_id,
                "event_id": event_id,
                "event_type": event_type,
                "result": result,
                "processed": event.processed,
                "error": error,
            },
        )
        return WebhookResult(event_id=event_id, event_type=event_type, result=result, processed=event.processed, error=error)

    def _duplicate(self, event_type: str, event_id: str) -> WebhookResult:
        webhook_event_counter.labels(event_type=event_type, outcome="duplicate").inc()
        logger.info(
            "Duplicate webhook delivery skipped",
            extra={"request_id": self.request_id, "event_id": event_id, "event_type": event_type},
        )
        return WebhookResult(event_id=event_id, event_type=event_type, result="duplicate", processed=True)

    def _payment_succeeded(self, obj: Dict[str, Any]) -> HandlerOutcome:
        intent_id = obj.get("id")
        payment = PaymentRepository(self.db).get_by_intent(intent_id) if intent_id else None
        if payment is None:
            return "payment_not_found", f"Payment not found for intent {intent_id}"

        outcome = settle_payment(self.db, payment, source="webhook", config=self.config, request_id=self.request_id)
        return ("settled" if outcome.applied else "already_completed"), None

    def _payment_failed(self, obj: Dict[str, Any]) -> HandlerOutcome:
        intent_id = obj.get("id")
        payment = PaymentRepository(self.db).get_by_intent(intent_id) if intent_id else None
        if payment is None:
            return "payment_not_found", f"Payment not found for intent {intent_id}"
        if payment.status == PAYMENT_COMPLETED:
            return "already_completed", None

        error = obj.get("last_payment_error") or {}
        reason = error.get("message") or "Payment failed"
        code = error.get("decline_code") or error.get("code") or "unknown"
        changed = record_payment_failure(self.db, payment, reason, code)
        return ("failed" if changed else "already_completed"), None

    def _account_updated(self, obj: Dict[str, Any]) -> HandlerOutcome:
        account_id = obj.get("id")
        if not account_id:
            return "invalid_account", "account.updated event without an account id"

        metadata = obj.get("metadata") or {}
        account = ConnectedAccountRepository(self.db).upsert_status(
            account_id,
            metadata.get("user_id"),
            payouts_enabled=obj.get("payouts_enabled"),
            charges_enabled=obj.get("charges_enabled"),
            details_submitted=obj.get("details_submitted"),
        )
        if account is None:
            return "account_unknown", None
        return "account_updated", None


def fetch_webhook_logs(db: Session, limit: int = 50, processed: Optional[bool] = None) -> List[WebhookEvent]:
    """Recent inbound events, newest first"""
    return WebhookEventRepository(db).list_recent(limit=limit, processed=processed)
