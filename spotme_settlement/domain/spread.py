"""Spread allocation - split one contribution across many needs"""

import random
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from spotme_settlement.domain.exceptions import InvalidContributionError
from spotme_settlement.domain.fees import platform_fee
from spotme_settlement.domain.models import NEED_COLLECTING, Allocation, NeedSnapshot, SpreadResult
from spotme_settlement.utils.money import Number, from_cents, to_cents, to_decimal

STRATEGY_CLOSEST = "closest"
STRATEGY_CATEGORY = "category"
STRATEGY_RANDOM = "random"
STRATEGIES = (STRATEGY_CLOSEST, STRATEGY_CATEGORY, STRATEGY_RANDOM)


def eligible_needs(needs: Iterable[NeedSnapshot]) -> List[NeedSnapshot]:
    """Needs still collecting with a non-zero gap"""
    return [n for n in needs if n.status == NEED_COLLECTING and n.raised_amount < n.goal_amount]


def order_needs(
    needs: Sequence[NeedSnapshot],
    strategy: str,
    category: Optional[str] = None,
    need_ids: Optional[Sequence[str]] = None,
    rng: Optional[random.Random] = None,
    max_random_needs: int = 6,
) -> List[NeedSnapshot]:
    """Filter and order the pool according to the selection strategy"""
    if strategy not in STRATEGIES:
        raise InvalidContributionError(f"Unknown spread strategy: {strategy}")

    pool = eligible_needs(needs)
    if need_ids:
        wanted = set(need_ids)
        pool = [n for n in pool if n.id in wanted]

    if strategy == STRATEGY_CATEGORY and category:
        pool = [n for n in pool if n.category == category]

    if strategy == STRATEGY_RANDOM:
        shuffled = list(pool)
        (rng or random.Random()).shuffle(shuffled)
        return shuffled[:max_random_needs]

    # closest and category: smallest gap first, stable on ties
    return sorted(pool, key=lambda n: n.gap)


def water_fill(total_cents: int, gaps: Sequence[int]) -> Tuple[List[int], int]:
    """
    Greedy equal-share fill capped at each gap.

    Each round gives every unsatisfied need min(remaining // unsatisfied, gap).
    Whatever capped needs could not absorb is shared out again in the next
    round. When fewer cents remain than open needs, the whole leftover goes to
    the first open need and spills to the next only past that need's gap.

    Returns:
        (shares in input order, cents left unallocated)

    Example:
        3000 cents over gaps [500, 1000, 4000] -> [500, 1000, 1500], 0
    """
    shares = [0] * len(gaps)
    remaining = total_cents
    open_idx = [i for i, gap in enumerate(gaps) if gap > 0]

    while remaining > 0 and open_idx:
        share = remaining // len(open_idx)
        if share == 0:
            break
        still_open = []
        for i in open_idx:
            give = min(share, gaps[i] - shares[i])
            shares[i] += give
            remaining -= give
            if shares[i] < gaps[i]:
                still_open.append(i)
        open_idx = still_open

    # Rounding remainder lands on the first allocation
    for i in open_idx:
        if remaining == 0:
            break
        give = min(remaining, gaps[i] - shares[i])
        shares[i] += give
        remaining -= give

    return shares, remaining


def spread_contribution(
    total: Number,
    needs: Sequence[NeedSnapshot],
    strategy: str = STRATEGY_CLOSEST,
    fee_rate: Decimal = Decimal("0"),
    category: Optional[str] = None,
    need_ids: Optional[Sequence[str]] = None,
    rng: Optional[random.Random] = None,
    max_random_needs: int = 6,
) -> SpreadResult:
    """
    Allocate a pooled amount across eligible needs.

    Invariant: sum(allocations) + unallocated == total, and unallocated is
    zero whenever total does not exceed the combined gaps.
    """
    total_amount = to_decimal(total)
    ordered = order_needs(needs, strategy, category, need_ids, rng, max_random_needs)

    if not ordered:
        return SpreadResult(
            total_amount=total_amount,
            net_amount=total_amount,
            unallocated=total_amount,
        )

    gaps = [to_cents(n.gap) for n in ordered]
    shares, left_cents = water_fill(to_cents(total_amount), gaps)

    allocations: List[Allocation] = []
    goals_completed = 0
    for need, gap, share in zip(ordered, gaps, shares):
        if share <= 0:
            continue
        amount = from_cents(share)
        completes = share == gap
        goals_completed += 1 if completes else 0
        allocations.append(
            Allocation(
                need_id=need.id,
                amount=amount,
                fee=platform_fee(amount, fee_rate),
                need_title=need.title,
                goal_amount=need.goal_amount,
                raised_before=need.raised_amount,
                raised_after=need.raised_amount + amount,
                will_complete=completes,
            )
        )

    fee = sum((a.fee for a in allocations), Decimal("0.00"))
    return SpreadResult(
        total_amount=total_amount,
        allocations=allocations,
        goals_completed=goals_completed,
        fee=fee,
        net_amount=total_amount - fee,
        unallocated=from_cents(left_cents),
    )


def split_summary(result: SpreadResult) -> str:
    """One-line human summary of a spread"""
    if not result.allocations:
        return "No eligible needs found for this spread."

    people = result.total_people
    parts = [f"${result.total_amount} spread across {people} {'person' if people == 1 else 'people'}"]
    if result.goals_completed > 0:
        goals = result.goals_completed
        parts.append(f"completing {goals} {'goal' if goals == 1 else 'goals'}")
    return ", ".join(parts)
