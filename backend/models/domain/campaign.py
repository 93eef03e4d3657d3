"""
Campaign and HostProfile domain models

Views of the campaign and host collaborators: the settlement engine reads
budgets and wallets, and writes only spent_to_date and status.

Storage: PostgreSQL (settlement.campaigns, settlement.host_profiles)
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from utils.datetime_utils import ensure_utc
from utils.money import ZERO


class CampaignStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass
class Campaign:
    id: int
    total_budget: Decimal
    spent_to_date: Decimal = ZERO
    end_date: Optional[datetime] = None
    status: CampaignStatus = CampaignStatus.ACTIVE

    def __post_init__(self):
        self.end_date = ensure_utc(self.end_date)

    @property
    def remaining_budget(self) -> Decimal:
        return self.total_budget - self.spent_to_date

    @property
    def is_active(self) -> bool:
        return self.status == CampaignStatus.ACTIVE


@dataclass
class HostProfile:
    """Host as known to the matching side; wallet may not be set yet"""
    host_id: str
    wallet_address: Optional[str] = None
    is_opted_in: bool = True
