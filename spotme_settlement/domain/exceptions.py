"""Domain-specific exceptions"""

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for the settlement engine"""

    code = "settlement_error"
    retryable = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class GatewayNotConfiguredError(SettlementError):
    """Gateway integration is not set up; callers fall back to direct mode"""

    code = "gateway_not_configured"


class GatewayRejectedError(SettlementError):
    """Gateway declined the request (card declined, invalid payment method)"""

    code = "gateway_rejected"
    retryable = True

    def __init__(self, reason: str, decline_code: Optional[str] = None):
        self.reason = reason
        self.decline_code = decline_code or "unknown"
        super().__init__(reason, details={"decline_code": self.decline_code})


class GatewayTransientError(SettlementError):
    """Gateway timed out or answered 5xx/429; safe to try again"""

    code = "gateway_unavailable"
    retryable = True


class RetryCapExceededError(SettlementError):
    """No retry slots left for a failed payment"""

    code = "retry_cap_exceeded"


class PaymentNotFoundError(SettlementError):
    """Referenced payment does not exist"""

    code = "payment_not_found"


class InvalidContributionError(SettlementError):
    """Contribution request violates amount or target rules"""

    code = "invalid_contribution"


class LedgerConflictError(SettlementError):
    """Need row kept changing under optimistic concurrency; settlement must be re-run"""

    code = "ledger_conflict"
    retryable = True


class RetryInProgressError(SettlementError):
    """Another retry of the same payment claimed the next slot first"""

    code = "retry_in_progress"
    retryable = True
