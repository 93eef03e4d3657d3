"""
Repository Pattern - Storage abstraction layer

Repositories hide storage details from the settlement engine.
Services work with domain models, not storage-specific rows.

Storage:
- ReceiptRepository: engagement receipts (find-unprocessed, release)
- EpochRepository: epochs, atomic generation commit, status transitions
- PayoutRepository: per-host leaves, mark-claimed, host queries
- CampaignRepository / HostRepository: collaborator views

Two backends share one surface:
- PostgreSQL (asyncpg) for production
- repositories.memory for local runs and tests
"""
from dataclasses import dataclass
from typing import Any

import asyncpg

from .receipt_repository import ReceiptRepository
from .epoch_repository import EpochRepository
from .payout_repository import PayoutRepository
from .campaign_repository import CampaignRepository, HostRepository
from .schema import ensure_schema
from .memory import (
    MemoryStore,
    MemoryReceiptRepository,
    MemoryEpochRepository,
    MemoryPayoutRepository,
    MemoryCampaignRepository,
    MemoryHostRepository,
)


@dataclass
class Repositories:
    """The store as the settlement engine sees it"""
    receipts: Any
    epochs: Any
    payouts: Any
    campaigns: Any
    hosts: Any

    @classmethod
    def postgres(cls, pool: asyncpg.Pool) -> 'Repositories':
        return cls(
            receipts=ReceiptRepository(pool),
            epochs=EpochRepository(pool),
            payouts=PayoutRepository(pool),
            campaigns=CampaignRepository(pool),
            hosts=HostRepository(pool),
        )

    @classmethod
    def memory(cls, store: MemoryStore = None) -> 'Repositories':
        store = store or MemoryStore()
        return cls(
            receipts=MemoryReceiptRepository(store),
            epochs=MemoryEpochRepository(store),
            payouts=MemoryPayoutRepository(store),
            campaigns=MemoryCampaignRepository(store),
            hosts=MemoryHostRepository(store),
        )


__all__ = [
    'ReceiptRepository',
    'EpochRepository',
    'PayoutRepository',
    'CampaignRepository',
    'HostRepository',
    'MemoryStore',
    'Repositories',
    'ensure_schema',
]
