"""
Pytest configuration for settlement engine tests.

Everything runs against the in-memory repositories and a scripted ledger;
no PostgreSQL, Redis or relayer is needed.
"""

import asyncio

import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from config.settings import Settings
from models.api.ledger import LedgerReceipt
from models.domain.campaign import Campaign
from models.domain.receipt import Receipt
from repositories import Repositories, MemoryStore
from services.ledger_client import LedgerClient
from utils.datetime_utils import epoch_bounds

# Configure pytest-asyncio to auto mode
pytest_plugins = ('pytest_asyncio',)


def pytest_configure(config):
    """Configure pytest with asyncio marker."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test."
    )


HOST_A = "0x" + "a" * 40
HOST_B = "0x" + "b" * 40
HOST_C = "0x" + "c" * 40

# 2025-01-15 10:00:00 UTC
EPOCH = 482482


def at(epoch: int = EPOCH, minutes: int = 0, seconds: int = 0) -> datetime:
    """A moment inside an epoch"""
    start, _ = epoch_bounds(epoch)
    return start + timedelta(minutes=minutes, seconds=seconds)


def make_receipt(
    host: str = HOST_A,
    campaign_id: int = 1,
    when: Optional[datetime] = None,
    impressions: int = 1,
    clicks: int = 0,
    dwell_ms: Optional[int] = 1500,
    fingerprint: Optional[str] = None,
    signature: Optional[str] = None,
    id: Optional[int] = None,
) -> Receipt:
    return Receipt(
        campaign_id=campaign_id,
        host_address=host,
        timestamp=when or at(),
        impressions=impressions,
        clicks=clicks,
        dwell_ms=dwell_ms,
        viewer_fingerprint=fingerprint,
        signature=signature,
        id=id,
    )


class ScriptedLedger(LedgerClient):
    """
    Ledger double: records calls, and fails when told to.

    `fail_with` is raised on the next call(s); `hang` makes calls sleep
    past any timeout.
    """

    def __init__(self):
        self.roots = []
        self.distributions = []
        self.fail_with: Optional[Exception] = None
        self.fail_times = 0
        self.hang = False
        self._tx = 0

    def _next_tx(self) -> str:
        self._tx += 1
        return "0x" + f"{self._tx:064x}"

    async def _maybe_fail(self):
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail_with is not None and self.fail_times > 0:
            self.fail_times -= 1
            raise self.fail_with

    async def submit_root(self, epoch_id, merkle_root, total_amount, options=None):
        await self._maybe_fail()
        self.roots.append((epoch_id, merkle_root, total_amount, dict(options or {})))
        return LedgerReceipt(tx_hash=self._next_tx(), merkle_root=merkle_root)

    async def batch_distribute(self, epoch_id, merkle_root, payouts, options=None):
        await self._maybe_fail()
        self.distributions.append((epoch_id, [p.index for p in payouts]))
        return LedgerReceipt(tx_hash=self._next_tx())


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ledger_timeout_seconds=0.2,
        distribution_chunk_size=100,
        keeper_auto_submit=True,
        keeper_auto_distribute=True,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def repos(store) -> Repositories:
    return Repositories.memory(store)


@pytest.fixture
def ledger() -> ScriptedLedger:
    return ScriptedLedger()


@pytest_asyncio.fixture
async def campaign(repos) -> Campaign:
    """$100 campaign ending 10 hours after EPOCH starts"""
    start, _ = epoch_bounds(EPOCH)
    return await repos.campaigns.upsert(Campaign(
        id=1,
        total_budget=Decimal("100"),
        end_date=start + timedelta(hours=10),
    ))


async def add_receipts(repos, receipts: List[Receipt]) -> List[Receipt]:
    return [await repos.receipts.create(r) for r in receipts]
