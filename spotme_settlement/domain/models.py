"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

# Need status values as stored by the product
NEED_COLLECTING = "Collecting"
NEED_GOAL_MET = "Goal Met"
NEED_PAYOUT_REQUESTED = "Payout Requested"
NEED_PAID = "Paid"
NEED_EXPIRED = "Expired"

# Payment lifecycle
PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"

MODE_GATEWAY = "gateway"
MODE_DIRECT = "direct"

TYPE_CONTRIBUTION = "contribution"
TYPE_SPREAD = "spread"

# Retry lifecycle
RETRY_PENDING = "pending"
RETRY_ATTEMPTED = "attempted"
RETRY_COMPLETED = "completed"
RETRY_FAILED = "failed"

ANONYMOUS_NAME = "A kind stranger"


@dataclass
class NeedSnapshot:
    """Read-only view of a need used by the split calculator"""

    id: str
    goal_amount: Decimal
    raised_amount: Decimal
    status: str = NEED_COLLECTING
    title: str = ""
    category: str = ""

    @property
    def gap(self) -> Decimal:
        return max(self.goal_amount - self.raised_amount, Decimal("0"))


@dataclass
class ContributionQuote:
    """Fee breakdown for a single-recipient contribution"""

    amount: Decimal
    tip_amount: Decimal
    fee: Decimal
    net_amount: Decimal
    recipient_receives: Decimal
    total_charge: Decimal
    application_fee: Decimal


@dataclass
class Allocation:
    """One need's share of a spread contribution"""

    need_id: str
    amount: Decimal
    fee: Decimal = Decimal("0.00")
    need_title: str = ""
    goal_amount: Decimal = Decimal("0.00")
    raised_before: Decimal = Decimal("0.00")
    raised_after: Decimal = Decimal("0.00")
    will_complete: bool = False


@dataclass
class SpreadResult:
    """Output of the spread calculator"""

    total_amount: Decimal
    allocations: List[Allocation] = field(default_factory=list)
    goals_completed: int = 0
    fee: Decimal = Decimal("0.00")
    net_amount: Decimal = Decimal("0.00")
    unallocated: Decimal = Decimal("0.00")

    @property
    def total_people(self) -> int:
        return len(self.allocations)


@dataclass
class PaymentIntent:
    """Gateway payment intent, field names follow the Stripe wire contract"""

    id: str
    client_secret: Optional[str]
    status: str
    amount: int = 0
    last_payment_error_message: Optional[str] = None
    last_payment_error_code: Optional[str] = None
