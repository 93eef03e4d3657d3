"""
In-memory settlement store

Same async surface as the PostgreSQL repositories, backed by dicts in one
MemoryStore. Used for local runs without a database and by the test suite.

Every method completes without awaiting mid-mutation, so each call is atomic
with respect to other coroutines (the asyncio equivalent of a transaction).
Objects are copied on the way in and out; callers never hold live rows.
"""
import copy
import itertools
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Sequence, Tuple, Set, Dict, Any

from models.domain.receipt import Receipt
from models.domain.epoch import Epoch, EpochPayout, EpochStatus
from models.domain.campaign import Campaign, CampaignStatus, HostProfile
from services.errors import EpochAlreadyFinalizedError, ReceiptConflictError
from utils.datetime_utils import utcnow, epoch_number, epoch_id as make_epoch_id
from utils.money import ZERO


class MemoryStore:
    """Shared tables for the in-memory repositories"""

    def __init__(self):
        self.receipts: Dict[int, Receipt] = {}
        self.epochs: Dict[str, Epoch] = {}
        self.payouts: Dict[Tuple[str, int], EpochPayout] = {}
        self.campaigns: Dict[int, Campaign] = {}
        self.hosts: Dict[str, HostProfile] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)


def _sort_key(receipt: Receipt):
    return (receipt.timestamp, receipt.id)


class MemoryReceiptRepository:

    def __init__(self, store: MemoryStore):
        self.store = store

    async def get_by_signature(self, signature: str) -> Optional[Receipt]:
        for receipt in self.store.receipts.values():
            if receipt.signature == signature:
                return copy.deepcopy(receipt)
        return None

    async def find_unprocessed(self, campaign_id: int, start: datetime, end: datetime) -> List[Receipt]:
        found = [
            r for r in self.store.receipts.values()
            if r.campaign_id == campaign_id and not r.processed and start <= r.timestamp < end
        ]
        return [copy.deepcopy(r) for r in sorted(found, key=_sort_key)]

    async def find_unprocessed_for_host(self, host_address: str, start: datetime, end: datetime) -> List[Receipt]:
        found = [
            r for r in self.store.receipts.values()
            if r.host_address == host_address and not r.processed and start <= r.timestamp < end
        ]
        return [copy.deepcopy(r) for r in sorted(found, key=_sort_key)]

    async def find_latest_unprocessed(self, campaign_id: int, host_address: str) -> Optional[Receipt]:
        found = [
            r for r in self.store.receipts.values()
            if r.campaign_id == campaign_id and r.host_address == host_address and not r.processed
        ]
        if not found:
            return None
        return copy.deepcopy(max(found, key=_sort_key))

    async def pending_windows(
        self,
        before: datetime,
        limit: int = 100,
        since: Optional[datetime] = None
    ) -> List[Tuple[int, int]]:
        windows = {
            (r.campaign_id, epoch_number(r.timestamp))
            for r in self.store.receipts.values()
            if not r.processed and r.timestamp < before
            and (since is None or r.timestamp >= since)
        }
        open_windows = []
        for campaign_id, epoch in windows:
            existing = self.store.epochs.get(make_epoch_id(campaign_id, epoch))
            if existing is None or existing.status == EpochStatus.PENDING:
                open_windows.append((campaign_id, epoch))
        newest = sorted(open_windows, key=lambda w: (w[1], w[0]), reverse=True)[:limit]
        return sorted(newest, key=lambda w: (w[1], w[0]))

    async def find_orphaned_epoch_ids(self) -> List[str]:
        orphaned = {
            r.epoch_id for r in self.store.receipts.values()
            if r.processed and r.epoch_id and r.epoch_id not in self.store.epochs
        }
        return sorted(orphaned)

    async def campaigns_with_receipts_since(self, since: datetime) -> Set[int]:
        return {r.campaign_id for r in self.store.receipts.values() if r.timestamp >= since}

    async def create(self, receipt: Receipt) -> Receipt:
        if receipt.signature:
            existing = await self.get_by_signature(receipt.signature)
            if existing:
                return existing
        stored = copy.deepcopy(receipt)
        stored.id = self.store.next_id()
        stored.processed = False
        stored.epoch_id = None
        stored.created_at = utcnow()
        self.store.receipts[stored.id] = stored
        return copy.deepcopy(stored)

    async def add_click(self, receipt_id: int) -> bool:
        receipt = self.store.receipts.get(receipt_id)
        if receipt is None or receipt.processed:
            return False
        receipt.clicks += 1
        return True

    async def release(self, epoch_id: str) -> int:
        released = 0
        for receipt in self.store.receipts.values():
            if receipt.epoch_id == epoch_id:
                receipt.processed = False
                receipt.epoch_id = None
                released += 1
        return released


class MemoryEpochRepository:

    def __init__(self, store: MemoryStore):
        self.store = store

    async def get(self, epoch_id: str) -> Optional[Epoch]:
        epoch = self.store.epochs.get(epoch_id)
        return copy.deepcopy(epoch) if epoch else None

    async def list_by_status(self, status: EpochStatus, limit: int = 10) -> List[Epoch]:
        found = [e for e in self.store.epochs.values() if e.status == status]
        found.sort(key=lambda e: (e.epoch, e.campaign_id))
        return [copy.deepcopy(e) for e in found[:limit]]

    async def list_by_campaign(self, campaign_id: int) -> List[Epoch]:
        found = [e for e in self.store.epochs.values() if e.campaign_id == campaign_id]
        found.sort(key=lambda e: e.epoch)
        return [copy.deepcopy(e) for e in found]

    def _drop(self, epoch_id: str):
        self.store.epochs.pop(epoch_id, None)
        for key in [k for k in self.store.payouts if k[0] == epoch_id]:
            del self.store.payouts[key]
        for receipt in self.store.receipts.values():
            if receipt.epoch_id == epoch_id:
                receipt.processed = False
                receipt.epoch_id = None

    async def commit_generation(
        self,
        epoch: Epoch,
        payouts: Sequence[EpochPayout],
        receipt_ids: Sequence[int],
        spend: Decimal,
        receipt_clicks: Optional[Sequence[int]] = None
    ) -> Epoch:
        existing = self.store.epochs.get(epoch.id)
        if existing and existing.status != EpochStatus.PENDING:
            raise EpochAlreadyFinalizedError(epoch.id, existing.status.value)

        # Validate everything before the first mutation
        for receipt_id in receipt_ids:
            receipt = self.store.receipts.get(receipt_id)
            if receipt is None or (receipt.processed and receipt.epoch_id != epoch.id):
                raise ReceiptConflictError(f"Epoch {epoch.id}: receipt {receipt_id} unavailable")

        if receipt_clicks is not None:
            for receipt_id, clicks in zip(receipt_ids, receipt_clicks):
                if self.store.receipts[receipt_id].clicks != clicks:
                    raise ReceiptConflictError(
                        f"Epoch {epoch.id}: receipt {receipt_id} changed since it was read"
                    )

        if existing:
            self._drop(epoch.id)

        now = utcnow()
        stored = copy.deepcopy(epoch)
        stored.created_at = now
        stored.updated_at = now
        self.store.epochs[stored.id] = stored

        for payout in payouts:
            self.store.payouts[(payout.epoch_id, payout.index)] = copy.deepcopy(payout)

        for receipt_id in receipt_ids:
            receipt = self.store.receipts[receipt_id]
            receipt.processed = True
            receipt.epoch_id = epoch.id

        campaign = self.store.campaigns.get(epoch.campaign_id)
        if campaign is not None and spend > 0:
            campaign.spent_to_date += spend
            if campaign.spent_to_date >= campaign.total_budget:
                campaign.status = CampaignStatus.COMPLETED

        return copy.deepcopy(stored)

    async def discard_pending(self, epoch_id: str) -> bool:
        epoch = self.store.epochs.get(epoch_id)
        if epoch is None or epoch.status != EpochStatus.PENDING:
            return False
        self._drop(epoch_id)
        return True

    def _transition(self, epoch_id: str, expected: EpochStatus) -> Optional[Epoch]:
        epoch = self.store.epochs.get(epoch_id)
        if epoch is None or epoch.status != expected:
            return None
        epoch.updated_at = utcnow()
        return epoch

    async def mark_submitted(self, epoch_id: str, tx_hash: str, at: datetime) -> bool:
        epoch = self._transition(epoch_id, EpochStatus.READY)
        if epoch is None:
            return False
        epoch.status = EpochStatus.SUBMITTED
        epoch.submitted_at = at
        epoch.submit_tx_hash = tx_hash
        epoch.last_error = None
        return True

    async def mark_distributed(self, epoch_id: str, tx_hash: Optional[str], at: datetime) -> bool:
        epoch = self._transition(epoch_id, EpochStatus.SUBMITTED)
        if epoch is None:
            return False
        epoch.status = EpochStatus.DISTRIBUTED
        epoch.distributed_at = at
        epoch.distribute_tx_hash = tx_hash or epoch.distribute_tx_hash
        epoch.last_error = None
        return True

    async def mark_failed(self, epoch_id: str, expected: EpochStatus, error: str) -> bool:
        epoch = self._transition(epoch_id, expected)
        if epoch is None:
            return False
        epoch.status = EpochStatus.FAILED
        epoch.last_error = error
        return True

    async def record_error(self, epoch_id: str, error: str):
        epoch = self.store.epochs.get(epoch_id)
        if epoch is not None:
            epoch.last_error = error
            epoch.updated_at = utcnow()


class MemoryPayoutRepository:

    def __init__(self, store: MemoryStore):
        self.store = store

    def _for_epoch(self, epoch_id: str) -> List[EpochPayout]:
        found = [p for (eid, _), p in self.store.payouts.items() if eid == epoch_id]
        return sorted(found, key=lambda p: p.index)

    async def list_by_epoch(self, epoch_id: str) -> List[EpochPayout]:
        return [copy.deepcopy(p) for p in self._for_epoch(epoch_id)]

    async def list_unclaimed(self, epoch_id: str, limit: int = 100) -> List[EpochPayout]:
        found = [p for p in self._for_epoch(epoch_id) if not p.claimed]
        return [copy.deepcopy(p) for p in found[:limit]]

    async def mark_claimed(self, epoch_id: str, indices: Sequence[int], tx_hash: str, at: datetime) -> Decimal:
        claimed = ZERO
        for index in indices:
            payout = self.store.payouts.get((epoch_id, index))
            if payout is None or payout.claimed:
                continue
            payout.claimed = True
            payout.claimed_tx_hash = tx_hash
            payout.claimed_at = at
            claimed += payout.amount

        epoch = self.store.epochs.get(epoch_id)
        if epoch is not None and claimed > 0:
            epoch.claimed_amount += claimed
            epoch.updated_at = utcnow()
        return claimed

    async def host_totals(self, host_address: str) -> Dict[str, Any]:
        payouts = [p for p in self.store.payouts.values() if p.host_address == host_address]
        return {
            'total': sum((p.amount for p in payouts), ZERO),
            'claimed': sum((p.amount for p in payouts if p.claimed), ZERO),
            'payouts': len(payouts),
            'claimed_payouts': sum(1 for p in payouts if p.claimed),
        }

    async def list_unclaimed_by_host(
        self,
        host_address: str,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[int, List[Tuple[EpochPayout, str, str]]]:
        found = [
            p for p in self.store.payouts.values()
            if p.host_address == host_address and not p.claimed
        ]
        found.sort(key=lambda p: (-p.epoch, p.campaign_id))
        page = []
        for payout in found[offset:offset + limit]:
            epoch = self.store.epochs[payout.epoch_id]
            page.append((copy.deepcopy(payout), epoch.merkle_root, epoch.status.value))
        return len(found), page


class MemoryCampaignRepository:

    def __init__(self, store: MemoryStore):
        self.store = store

    async def get(self, campaign_id: int) -> Optional[Campaign]:
        campaign = self.store.campaigns.get(campaign_id)
        return copy.deepcopy(campaign) if campaign else None

    async def list_active(self) -> List[Campaign]:
        found = [c for c in self.store.campaigns.values() if c.is_active]
        return [copy.deepcopy(c) for c in sorted(found, key=lambda c: c.id)]

    async def upsert(self, campaign: Campaign) -> Campaign:
        self.store.campaigns[campaign.id] = copy.deepcopy(campaign)
        return campaign

    async def mark_completed(self, campaign_id: int) -> bool:
        campaign = self.store.campaigns.get(campaign_id)
        if campaign is None or campaign.status == CampaignStatus.COMPLETED:
            return False
        campaign.status = CampaignStatus.COMPLETED
        return True


class MemoryHostRepository:

    def __init__(self, store: MemoryStore):
        self.store = store

    async def get(self, host_id: str) -> Optional[HostProfile]:
        host = self.store.hosts.get(host_id)
        return copy.deepcopy(host) if host else None

    async def upsert(self, host: HostProfile) -> HostProfile:
        self.store.hosts[host.host_id] = copy.deepcopy(host)
        return host

    async def count_missing_wallets(self) -> int:
        return sum(
            1 for h in self.store.hosts.values()
            if h.is_opted_in and not h.wallet_address
        )
