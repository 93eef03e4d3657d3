"""
PayoutAllocator - Proportional share of a campaign's hourly budget

score         = impressions + clicks * CLICK_WEIGHT
hourly_budget = min(remaining_budget / max(1, remaining_hours), MAX_HOURLY)
fee           = hourly_budget * PLATFORM_FEE_PERCENT / 100
share         = (hourly_budget - fee) * score / total_score

Shares are computed in integer smallest units. Each host gets the floor of
its exact share; the leftover units go one each to the largest remainders
(ties by address), so fee and shares sum exactly to the hourly budget.

Hosts below MIN_PAYOUT are dropped from the payout set. Survivors are sorted
by address (case-insensitive) and indexed 0..n-1: that order defines the
Merkle leaves.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List

from models.domain.campaign import Campaign
from services.fraud_filter import HostActivity
from utils.datetime_utils import epoch_bounds, EPOCH_SECONDS
from utils.money import ZERO, quantize, to_units, from_units

logger = logging.getLogger(__name__)

CLICK_WEIGHT = 10
MIN_PAYOUT = Decimal("0.01")
MAX_HOURLY_BUDGET = Decimal("1000")
PLATFORM_FEE_PERCENT = Decimal("0")


@dataclass
class HostAllocation:
    host_address: str
    impressions: int
    clicks: int
    score: int
    amount: Decimal
    index: int = -1


@dataclass
class AllocationResult:
    hourly_budget: Decimal
    total_score: int
    payouts: List[HostAllocation] = field(default_factory=list)
    dropped: List[HostAllocation] = field(default_factory=list)
    platform_fee: Decimal = ZERO

    @property
    def allocated_amount(self) -> Decimal:
        """Sum of the payouts that made it into the tree"""
        return sum((p.amount for p in self.payouts), ZERO)

    @property
    def distributable(self) -> Decimal:
        return self.hourly_budget - self.platform_fee


class PayoutAllocator:

    def __init__(
        self,
        click_weight: int = CLICK_WEIGHT,
        min_payout: Decimal = MIN_PAYOUT,
        max_hourly_budget: Decimal = MAX_HOURLY_BUDGET,
        platform_fee_percent: Decimal = PLATFORM_FEE_PERCENT
    ):
        self.click_weight = click_weight
        self.min_payout = Decimal(min_payout)
        self.max_hourly_budget = Decimal(max_hourly_budget)
        self.platform_fee_percent = Decimal(platform_fee_percent)

    @classmethod
    def from_settings(cls, settings) -> 'PayoutAllocator':
        return cls(
            click_weight=settings.click_weight,
            min_payout=settings.min_payout,
            max_hourly_budget=settings.max_hourly_budget,
            platform_fee_percent=settings.platform_fee_percent,
        )

    def score(self, activity: HostActivity) -> int:
        return activity.impressions + activity.clicks * self.click_weight

    def remaining_hours(self, campaign: Campaign, epoch: int) -> int:
        """
        Whole hours from the epoch start to the campaign end, at least 1.

        Anchored on the epoch (not the wall clock) so re-running an epoch
        later yields the same budget.
        """
        if campaign.end_date is None:
            return 1
        start, _ = epoch_bounds(epoch)
        seconds = (campaign.end_date - start).total_seconds()
        return max(1, int(seconds // EPOCH_SECONDS))

    def hourly_budget(self, campaign: Campaign, epoch: int) -> Decimal:
        """Budget available to this epoch; ZERO when the campaign is exhausted"""
        remaining = campaign.remaining_budget
        if remaining <= 0:
            return ZERO
        hours = self.remaining_hours(campaign, epoch)
        return quantize(min(remaining / hours, self.max_hourly_budget))

    def platform_fee(self, hourly_budget: Decimal) -> Decimal:
        """Share of the hourly budget withheld before hosts are paid"""
        return quantize(hourly_budget * self.platform_fee_percent / 100)

    def allocate(self, hosts: Dict[str, HostActivity], hourly_budget: Decimal) -> AllocationResult:
        scored = []
        for host, activity in hosts.items():
            score = self.score(activity)
            if score == 0:
                continue
            scored.append((host.lower(), activity, score))

        total_score = sum(score for _, _, score in scored)
        result = AllocationResult(hourly_budget=quantize(hourly_budget), total_score=total_score)
        if total_score == 0 or hourly_budget <= 0:
            return result

        result.platform_fee = self.platform_fee(result.hourly_budget)
        budget_units = to_units(result.distributable)
        shares = {}
        remainders = []
        for host, activity, score in scored:
            units, remainder = divmod(budget_units * score, total_score)
            shares[host] = units
            remainders.append((remainder, host))

        leftover = budget_units - sum(shares.values())
        remainders.sort(key=lambda r: (-r[0], r[1]))
        for _, host in remainders[:leftover]:
            shares[host] += 1

        for host, activity, score in scored:
            allocation = HostAllocation(
                host_address=host,
                impressions=activity.impressions,
                clicks=activity.clicks,
                score=score,
                amount=from_units(shares[host]),
            )
            if allocation.amount < self.min_payout:
                result.dropped.append(allocation)
            else:
                result.payouts.append(allocation)

        result.payouts.sort(key=lambda p: p.host_address.lower())
        for index, payout in enumerate(result.payouts):
            payout.index = index
        result.dropped.sort(key=lambda p: p.host_address.lower())

        if result.dropped:
            logger.debug(
                f"Dropped {len(result.dropped)} hosts below minimum payout {self.min_payout}"
            )
        return result
