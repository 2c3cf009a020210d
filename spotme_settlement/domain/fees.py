"""Fee calculation for single-recipient contributions"""

from decimal import Decimal, ROUND_HALF_UP

from spotme_settlement.domain.exceptions import InvalidContributionError
from spotme_settlement.domain.models import ContributionQuote
from spotme_settlement.utils.money import CENT, Number, to_decimal

MIN_CONTRIBUTION = Decimal("0.01")


def platform_fee(amount: Decimal, fee_rate: Decimal) -> Decimal:
    """Platform fee on an amount, rounded half-up to the cent"""
    if fee_rate <= 0:
        return Decimal("0.00")
    return (amount * fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_amount(amount: Number, cap: Decimal) -> Decimal:
    """Bound a requested contribution to [0.01, cap]"""
    value = to_decimal(amount)
    if value < MIN_CONTRIBUTION:
        raise InvalidContributionError(f"Amount must be at least ${MIN_CONTRIBUTION}")
    if value > cap:
        raise InvalidContributionError(f"Amount cannot exceed ${cap}")
    return value


def quote_contribution(
    amount: Number,
    tip: Number = 0,
    fee_rate: Decimal = Decimal("0"),
    cap: Decimal = Decimal("10000"),
) -> ContributionQuote:
    """
    Turn a requested amount plus optional support tip into a fee breakdown.

    The contributor is charged amount + tip. The platform fee is taken out of
    the amount, so the recipient receives amount - fee. On destination charges
    the platform collects fee + tip as the application fee.

    Example (fee_rate=0.05):
        amount $20.00, tip $1.00 -> fee $1.00, recipient $19.00,
        charge $21.00, application fee $2.00
    """
    value = validate_amount(amount, cap)
    tip_amount = to_decimal(tip)
    if tip_amount < 0:
        raise InvalidContributionError("Tip cannot be negative")

    fee = platform_fee(value, fee_rate)
    recipient_receives = value - fee

    return ContributionQuote(
        amount=value,
        tip_amount=tip_amount,
        fee=fee,
        net_amount=recipient_receives,
        recipient_receives=recipient_receives,
        total_charge=value + tip_amount,
        application_fee=fee + tip_amount,
    )
