"""
Pydantic models for the host earnings query surface
"""

from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime


class CampaignEstimate(BaseModel):
    """Unsettled estimate for one campaign in the current hour"""
    campaign_id: int
    impressions: int
    clicks: int
    estimated_earnings: str


class CurrentHourEarnings(BaseModel):
    """Approximate, unsettled earnings for the hour in progress"""
    host_address: str
    epoch: int
    hour_start: datetime
    hour_end: datetime
    impressions: int
    clicks: int
    receipts_count: int
    estimated_earnings: str
    campaigns: List[CampaignEstimate]


class LifetimeEarnings(BaseModel):
    host_address: str
    total_earnings: str
    claimed_earnings: str
    pending_earnings: str
    total_payouts: int
    claimed_payouts: int


class UnclaimedPayout(BaseModel):
    epoch_id: str
    campaign_id: int
    epoch: int
    index: int
    amount: str
    merkle_root: Optional[str]
    proof: List[str]
    epoch_status: str


class UnclaimedPayoutPage(BaseModel):
    host_address: str
    total: int
    limit: int
    offset: int
    items: List[UnclaimedPayout]
