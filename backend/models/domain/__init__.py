"""
Domain Models - Storage-agnostic data structures

These models represent the settlement entities independent of storage layer.
Services operate on these models, not raw database rows.

Architecture:
- Domain models are pure Python objects (dataclasses)
- Storage details (PostgreSQL, in-memory) are abstracted via repositories
- Money is Decimal end to end; integer units only at the hash/ledger boundary
"""

from .receipt import Receipt
from .epoch import Epoch, EpochPayout, EpochStatus
from .campaign import Campaign, CampaignStatus, HostProfile

__all__ = [
    # Tracking input
    'Receipt',

    # Settlement output
    'Epoch',
    'EpochPayout',
    'EpochStatus',

    # Collaborator views
    'Campaign',
    'CampaignStatus',
    'HostProfile',
]
