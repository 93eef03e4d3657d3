"""
Epoch and EpochPayout domain models

An Epoch is one hour-aligned settlement window for one campaign, committed
by a Merkle root over its EpochPayout rows.

Storage: PostgreSQL (settlement.epochs, settlement.epoch_payouts)
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from utils.datetime_utils import epoch_id as make_epoch_id, epoch_bounds
from utils.money import ZERO, format_amount


class EpochStatus(Enum):
    """
    Lifecycle of a settlement epoch.

    pending -> ready -> submitted -> distributed
    ready/submitted -> failed (permanent ledger rejection)
    """
    PENDING = "pending"
    READY = "ready"
    SUBMITTED = "submitted"
    DISTRIBUTED = "distributed"
    FAILED = "failed"

    @property
    def coarse(self) -> str:
        """pending / finalized / settled view used by reporting"""
        if self in (EpochStatus.READY, EpochStatus.SUBMITTED):
            return "finalized"
        if self == EpochStatus.DISTRIBUTED:
            return "settled"
        return self.value


@dataclass
class EpochPayout:
    """One host's entitlement within an epoch (one Merkle leaf)"""
    epoch_id: str
    campaign_id: int
    epoch: int
    index: int
    host_address: str
    amount: Decimal
    impressions: int = 0
    clicks: int = 0
    proof: List[str] = field(default_factory=list)
    leaf: Optional[str] = None
    claimed: bool = False
    claimed_tx_hash: Optional[str] = None
    claimed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'epoch_id': self.epoch_id,
            'campaign_id': self.campaign_id,
            'epoch': self.epoch,
            'index': self.index,
            'host_address': self.host_address,
            'amount': format_amount(self.amount),
            'impressions': self.impressions,
            'clicks': self.clicks,
            'proof': list(self.proof),
            'leaf': self.leaf,
            'claimed': self.claimed,
            'claimed_tx_hash': self.claimed_tx_hash,
            'claimed_at': self.claimed_at.isoformat() if self.claimed_at else None,
        }


@dataclass
class Epoch:
    """
    Settlement window for one campaign.

    The merkle_root never changes once the epoch leaves PENDING.
    """
    campaign_id: int
    epoch: int
    merkle_root: Optional[str] = None
    allocated_amount: Decimal = ZERO
    claimed_amount: Decimal = ZERO
    # withheld from the hourly budget before the host split
    platform_fee: Decimal = ZERO
    status: EpochStatus = EpochStatus.PENDING

    # Reporting totals (include hosts dropped by the minimum payout filter)
    total_receipts: int = 0
    total_impressions: int = 0
    total_clicks: int = 0
    host_count: int = 0

    # Ledger bookkeeping
    submitted_at: Optional[datetime] = None
    submit_tx_hash: Optional[str] = None
    distributed_at: Optional[datetime] = None
    distribute_tx_hash: Optional[str] = None
    last_error: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return make_epoch_id(self.campaign_id, self.epoch)

    @property
    def start(self) -> datetime:
        return epoch_bounds(self.epoch)[0]

    @property
    def end(self) -> datetime:
        return epoch_bounds(self.epoch)[1]

    @property
    def is_finalized(self) -> bool:
        """Root committed; regeneration is no longer allowed"""
        return self.status != EpochStatus.PENDING

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'campaign_id': self.campaign_id,
            'epoch': self.epoch,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'merkle_root': self.merkle_root,
            'allocated_amount': format_amount(self.allocated_amount),
            'claimed_amount': format_amount(self.claimed_amount),
            'platform_fee': format_amount(self.platform_fee),
            'status': self.status.value,
            'total_receipts': self.total_receipts,
            'total_impressions': self.total_impressions,
            'total_clicks': self.total_clicks,
            'host_count': self.host_count,
            'submitted_at': self.submitted_at.isoformat() if self.submitted_at else None,
            'submit_tx_hash': self.submit_tx_hash,
            'distributed_at': self.distributed_at.isoformat() if self.distributed_at else None,
            'distribute_tx_hash': self.distribute_tx_hash,
            'last_error': self.last_error,
        }
