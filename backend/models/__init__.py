"""
Models package

- models.domain: storage-agnostic dataclasses (Receipt, Epoch, EpochPayout, ...)
- models.api: pydantic wire models (ledger relayer payloads, earnings views)
"""

from .domain import (
    Receipt,
    Epoch,
    EpochPayout,
    EpochStatus,
    Campaign,
    CampaignStatus,
    HostProfile,
)

__all__ = [
    'Receipt',
    'Epoch',
    'EpochPayout',
    'EpochStatus',
    'Campaign',
    'CampaignStatus',
    'HostProfile',
]
