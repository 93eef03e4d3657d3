"""
FraudFilter - Discard or cap suspicious engagement before it earns

Rules (applied per receipt, in timestamp order, during aggregation):
1. Dwell floor: dwell_ms below MIN_DWELL_MS drops the whole receipt
   (bot / drive-by view). Receipts without a dwell measurement pass.
2. Fingerprint dedup: per host, a viewer fingerprint seen again within
   DEDUP_WINDOW of its previous sighting loses its impressions. Clicks
   still count. Every sighting refreshes the window.
3. Per-host caps after summation: impressions and clicks are clamped.

Pure and synchronous: the same ordered receipts always yield the same output.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Tuple, Optional

from models.domain.receipt import Receipt

logger = logging.getLogger(__name__)

MIN_DWELL_MS = 1000
DEDUP_WINDOW_SECONDS = 30
MAX_IMPRESSIONS = 1000
MAX_CLICKS = 100


@dataclass(frozen=True)
class FraudFilterConfig:
    min_dwell_ms: int = MIN_DWELL_MS
    dedup_window_seconds: int = DEDUP_WINDOW_SECONDS
    max_impressions: int = MAX_IMPRESSIONS
    max_clicks: int = MAX_CLICKS

    @classmethod
    def from_settings(cls, settings) -> 'FraudFilterConfig':
        return cls(
            min_dwell_ms=settings.min_dwell_ms,
            dedup_window_seconds=settings.dedup_window_seconds,
            max_impressions=settings.max_impressions_per_epoch,
            max_clicks=settings.max_clicks_per_epoch,
        )


@dataclass
class HostActivity:
    """Filtered activity of one host within one window"""
    impressions: int = 0
    clicks: int = 0
    receipts: int = 0


@dataclass
class FilterStats:
    """What the filter removed, for logging and epoch reporting"""
    invalid_address: int = 0
    dwell_rejected: int = 0
    deduped_impressions: int = 0
    capped_impressions: int = 0
    capped_clicks: int = 0

    def to_dict(self) -> dict:
        return {
            'invalid_address': self.invalid_address,
            'dwell_rejected': self.dwell_rejected,
            'deduped_impressions': self.deduped_impressions,
            'capped_impressions': self.capped_impressions,
            'capped_clicks': self.capped_clicks,
        }


@dataclass
class FilterPass:
    """
    One aggregation pass through the filter.

    Holds the dedup memory for a single window; create a new pass per
    (campaign, epoch) via FraudFilter.start().
    """
    config: FraudFilterConfig
    stats: FilterStats = field(default_factory=FilterStats)
    _last_seen: Dict[Tuple[str, str], datetime] = field(default_factory=dict)

    def admit(self, receipt: Receipt) -> Optional[Tuple[int, int]]:
        """
        Decide what a receipt contributes.

        Returns:
            (impressions, clicks) counted, or None if the receipt is dropped
        """
        if receipt.dwell_ms is not None and receipt.dwell_ms < self.config.min_dwell_ms:
            self.stats.dwell_rejected += 1
            return None

        impressions = receipt.impressions
        if receipt.viewer_fingerprint:
            key = (receipt.host_address.lower(), receipt.viewer_fingerprint)
            previous = self._last_seen.get(key)
            window = timedelta(seconds=self.config.dedup_window_seconds)
            if previous is not None and receipt.timestamp - previous < window:
                self.stats.deduped_impressions += impressions
                impressions = 0
            self._last_seen[key] = receipt.timestamp

        return impressions, receipt.clicks

    def cap(self, activity: HostActivity) -> HostActivity:
        """Clamp one host's summed activity to the per-epoch ceilings"""
        impressions = min(activity.impressions, self.config.max_impressions)
        clicks = min(activity.clicks, self.config.max_clicks)
        self.stats.capped_impressions += activity.impressions - impressions
        self.stats.capped_clicks += activity.clicks - clicks
        return HostActivity(impressions=impressions, clicks=clicks, receipts=activity.receipts)


class FraudFilter:
    """Factory for filter passes sharing one configuration"""

    def __init__(self, config: Optional[FraudFilterConfig] = None):
        self.config = config or FraudFilterConfig()

    def start(self) -> FilterPass:
        return FilterPass(config=self.config)
