"""
EpochAggregator - Bucket receipts into hourly windows and sum per host

Reads unprocessed receipts for (campaign, epoch) in timestamp order, runs
each through the FraudFilter, sums per host, then applies the per-host caps.
Read-only: nothing is marked processed here.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Iterable, Optional

from models.domain.receipt import Receipt
from services.fraud_filter import FraudFilter, FilterStats, HostActivity
from utils.address import normalize_address
from utils.datetime_utils import epoch_bounds

logger = logging.getLogger(__name__)


@dataclass
class EpochAggregate:
    """Filtered per-host activity for one campaign window"""
    campaign_id: int
    epoch: int
    hosts: Dict[str, HostActivity] = field(default_factory=dict)
    receipt_ids: List[int] = field(default_factory=list)
    # clicks as read; a receipt changed since then must not be consumed
    receipt_clicks: List[int] = field(default_factory=list)
    stats: FilterStats = field(default_factory=FilterStats)

    @property
    def total_receipts(self) -> int:
        return len(self.receipt_ids)

    @property
    def total_impressions(self) -> int:
        return sum(a.impressions for a in self.hosts.values())

    @property
    def total_clicks(self) -> int:
        return sum(a.clicks for a in self.hosts.values())

    @property
    def is_empty(self) -> bool:
        return not self.receipt_ids


def aggregate_receipts(
    receipts: Iterable[Receipt],
    fraud_filter: FraudFilter,
    campaign_id: Optional[int] = None,
    epoch: Optional[int] = None
) -> EpochAggregate:
    """
    Pure aggregation over already-ordered receipts.

    Every receipt read is listed in receipt_ids, including ones the filter
    dropped: the epoch consumes them all, so they are never reconsidered.
    Receipts whose host address is not a valid wallet are consumed too,
    but earn nothing.
    """
    result = EpochAggregate(campaign_id=campaign_id, epoch=epoch)
    sums: Dict[str, HostActivity] = {}
    filter_pass = fraud_filter.start()

    for receipt in receipts:
        result.receipt_ids.append(receipt.id)
        result.receipt_clicks.append(receipt.clicks)

        try:
            host = normalize_address(receipt.host_address)
        except ValueError as e:
            filter_pass.stats.invalid_address += 1
            logger.warning(
                f"[{campaign_id}_{epoch}] Receipt {receipt.id} excluded: {e}"
            )
            continue

        admitted = filter_pass.admit(receipt)
        if admitted is None:
            continue

        impressions, clicks = admitted
        activity = sums.setdefault(host, HostActivity())
        activity.impressions += impressions
        activity.clicks += clicks
        activity.receipts += 1

    result.hosts = {host: filter_pass.cap(activity) for host, activity in sums.items()}
    result.stats = filter_pass.stats
    return result


class EpochAggregator:
    """Aggregates one campaign's receipts for one hourly epoch"""

    def __init__(self, receipt_repo, fraud_filter: Optional[FraudFilter] = None):
        self.receipts = receipt_repo
        self.fraud_filter = fraud_filter or FraudFilter()

    async def aggregate(self, campaign_id: int, epoch: int) -> EpochAggregate:
        start, end = epoch_bounds(epoch)
        receipts = await self.receipts.find_unprocessed(campaign_id, start, end)

        result = aggregate_receipts(receipts, self.fraud_filter, campaign_id, epoch)

        logger.debug(
            f"Aggregated campaign {campaign_id} epoch {epoch}: "
            f"{result.total_receipts} receipts, {len(result.hosts)} hosts, "
            f"filtered={result.stats.to_dict()}"
        )
        return result
