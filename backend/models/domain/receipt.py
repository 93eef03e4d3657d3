"""
Receipt domain model

One engagement fact: host X produced N impressions/clicks for campaign Y at
time T. Owned by the tracking side until an epoch consumes it.

Storage: PostgreSQL (settlement.receipts)
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from utils.datetime_utils import ensure_utc, epoch_number


@dataclass
class Receipt:
    """
    Engagement receipt.

    Once processed=True the receipt is immutable and belongs to exactly
    one epoch (epoch_id).
    """
    campaign_id: int
    host_address: str
    timestamp: datetime
    impressions: int = 0
    clicks: int = 0
    dwell_ms: Optional[int] = None
    viewer_fingerprint: Optional[str] = None
    signature: Optional[str] = None      # e.g. IMP_<event id>, unique if set
    processed: bool = False
    epoch_id: Optional[str] = None

    # Assigned by the store; monotonic, used as ordering tie-break
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)

    @property
    def epoch(self) -> int:
        """Epoch number the receipt's timestamp falls in"""
        return epoch_number(self.timestamp)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'campaign_id': self.campaign_id,
            'host_address': self.host_address,
            'timestamp': self.timestamp.isoformat(),
            'impressions': self.impressions,
            'clicks': self.clicks,
            'dwell_ms': self.dwell_ms,
            'viewer_fingerprint': self.viewer_fingerprint,
            'signature': self.signature,
            'processed': self.processed,
            'epoch_id': self.epoch_id,
        }
