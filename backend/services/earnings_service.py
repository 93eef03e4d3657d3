"""
EarningsService - What a host has earned, is earning, and can claim

Three views:
- current_hour_earnings: live estimate from unprocessed receipts of the
  hour in progress (filtered, not settled, can still change)
- lifetime_earnings: totals over settled payouts
- unclaimed_payouts: paginated payouts with proofs, newest epoch first
"""
import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List

from models.api.earnings import (
    CampaignEstimate,
    CurrentHourEarnings,
    LifetimeEarnings,
    UnclaimedPayout,
    UnclaimedPayoutPage,
)
from models.domain.receipt import Receipt
from services.epoch_aggregator import aggregate_receipts
from services.fraud_filter import FraudFilter, FraudFilterConfig
from services.payout_allocator import PayoutAllocator
from utils.address import normalize_address
from utils.datetime_utils import utcnow, current_epoch, epoch_bounds
from utils.money import ZERO, quantize, format_amount

logger = logging.getLogger(__name__)


class EarningsService:

    def __init__(self, repos, settings):
        self.repos = repos
        self.fraud_filter = FraudFilter(FraudFilterConfig.from_settings(settings))
        self.allocator = PayoutAllocator.from_settings(settings)

    async def current_hour_earnings(
        self,
        host_address: str,
        now: Optional[datetime] = None
    ) -> CurrentHourEarnings:
        """
        Estimate for the hour in progress.

        Per campaign the host's filtered score is compared against the whole
        campaign's filtered score so far, and that share of the campaign's
        hourly budget is reported. Not a promise: the final epoch may differ.
        """
        host = normalize_address(host_address)
        epoch = current_epoch(now or utcnow())
        start, end = epoch_bounds(epoch)

        own = await self.repos.receipts.find_unprocessed_for_host(host, start, end)
        by_campaign: Dict[int, List[Receipt]] = defaultdict(list)
        for receipt in own:
            by_campaign[receipt.campaign_id].append(receipt)

        estimates = []
        for campaign_id in sorted(by_campaign):
            estimates.append(await self._estimate(campaign_id, epoch, host, start, end))

        total = sum((Decimal(e.estimated_earnings) for e in estimates), ZERO)
        return CurrentHourEarnings(
            host_address=host,
            epoch=epoch,
            hour_start=start,
            hour_end=end,
            impressions=sum(e.impressions for e in estimates),
            clicks=sum(e.clicks for e in estimates),
            receipts_count=len(own),
            estimated_earnings=format_amount(total),
            campaigns=estimates,
        )

    async def _estimate(self, campaign_id: int, epoch: int, host: str, start, end) -> CampaignEstimate:
        receipts = await self.repos.receipts.find_unprocessed(campaign_id, start, end)
        aggregate = aggregate_receipts(receipts, self.fraud_filter, campaign_id, epoch)
        activity = aggregate.hosts.get(host)
        if activity is None:
            return CampaignEstimate(
                campaign_id=campaign_id, impressions=0, clicks=0, estimated_earnings=format_amount(ZERO)
            )

        estimate = ZERO
        campaign = await self.repos.campaigns.get(campaign_id)
        total_score = sum(self.allocator.score(a) for a in aggregate.hosts.values())
        if campaign is not None and campaign.is_active and total_score > 0:
            budget = self.allocator.hourly_budget(campaign, epoch)
            budget -= self.allocator.platform_fee(budget)
            estimate = quantize(budget * self.allocator.score(activity) / total_score)

        return CampaignEstimate(
            campaign_id=campaign_id,
            impressions=activity.impressions,
            clicks=activity.clicks,
            estimated_earnings=format_amount(estimate),
        )

    async def lifetime_earnings(self, host_address: str) -> LifetimeEarnings:
        host = normalize_address(host_address)
        totals = await self.repos.payouts.host_totals(host)
        return LifetimeEarnings(
            host_address=host,
            total_earnings=format_amount(totals['total']),
            claimed_earnings=format_amount(totals['claimed']),
            pending_earnings=format_amount(totals['total'] - totals['claimed']),
            total_payouts=totals['payouts'],
            claimed_payouts=totals['claimed_payouts'],
        )

    async def unclaimed_payouts(
        self,
        host_address: str,
        limit: int = 50,
        offset: int = 0
    ) -> UnclaimedPayoutPage:
        if limit < 1 or offset < 0:
            raise ValueError(f"Invalid page: limit={limit}, offset={offset}")

        host = normalize_address(host_address)
        total, rows = await self.repos.payouts.list_unclaimed_by_host(host, limit, offset)
        items = [
            UnclaimedPayout(
                epoch_id=payout.epoch_id,
                campaign_id=payout.campaign_id,
                epoch=payout.epoch,
                index=payout.index,
                amount=format_amount(payout.amount),
                merkle_root=merkle_root,
                proof=list(payout.proof),
                epoch_status=status,
            )
            for payout, merkle_root, status in rows
        ]
        return UnclaimedPayoutPage(
            host_address=host, total=total, limit=limit, offset=offset, items=items
        )
