"""
SettlementService - Drives one (campaign, epoch) from receipts to ledger

Pipeline per epoch:
    1. Campaign lookup + status check
    2. Hourly budget (campaign marked completed when exhausted)
    3. EpochAggregator (+ FraudFilter)
    4. PayoutAllocator
    5. Merkle commitment
    6. EpochRepository.commit_generation (one transaction)

Ledger stages:
    submit_root(epoch_id)   READY -> SUBMITTED
    distribute(epoch_id)    SUBMITTED -> DISTRIBUTED, in chunks

reconcile() repairs what a crash can leave behind.

Usage:
    service = SettlementService(repos, ledger, settings)
    epoch = await service.generate_epoch(campaign_id=7, epoch=493812)
    await service.submit_root(epoch.id)
    await service.distribute(epoch.id)
"""
import asyncio
import logging
from typing import Optional, List, Tuple

from models.domain.epoch import Epoch, EpochPayout, EpochStatus
from services.epoch_aggregator import EpochAggregator
from services.errors import (
    CampaignNotFoundError,
    EpochAlreadyFinalizedError,
    EpochNotFoundError,
    InvalidEpochStateError,
    LedgerUnavailableError,
    LedgerRejectedError,
)
from services.fraud_filter import FraudFilter, FraudFilterConfig
from services.ledger_client import LedgerClient
from services.merkle_builder import build_commitment
from services.payout_allocator import PayoutAllocator
from utils.datetime_utils import utcnow, current_epoch, epoch_bounds, epoch_id as make_epoch_id

logger = logging.getLogger(__name__)


class SettlementService:
    """Generation, ledger submission and repair of settlement epochs"""

    def __init__(self, repos, ledger: LedgerClient, settings):
        self.repos = repos
        self.ledger = ledger
        self.settings = settings
        self.aggregator = EpochAggregator(
            repos.receipts,
            FraudFilter(FraudFilterConfig.from_settings(settings))
        )
        self.allocator = PayoutAllocator.from_settings(settings)

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def generate_epoch(self, campaign_id: int, epoch: int) -> Optional[Epoch]:
        """
        Build and commit the payout set for one campaign hour.

        Returns:
            The committed READY epoch, or None when there is nothing to pay
            (no activity, zero score, every host below the minimum payout,
            or an exhausted / inactive campaign).

        Raises:
            CampaignNotFoundError: unknown campaign
            EpochAlreadyFinalizedError: the epoch already left PENDING
        """
        eid = make_epoch_id(campaign_id, epoch)

        existing = await self.repos.epochs.get(eid)
        if existing is not None:
            if existing.is_finalized:
                raise EpochAlreadyFinalizedError(eid, existing.status.value)
            # Leftover from an interrupted run: release its receipts before re-reading
            await self.repos.epochs.discard_pending(eid)
            logger.warning(f"[{eid}] Discarded pending epoch before regeneration")

        campaign = await self.repos.campaigns.get(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")

        if not campaign.is_active:
            logger.info(f"[{eid}] Campaign is {campaign.status.value}, skipping")
            return None

        budget = self.allocator.hourly_budget(campaign, epoch)
        if budget <= 0:
            if await self.repos.campaigns.mark_completed(campaign_id):
                logger.info(f"[{eid}] Campaign {campaign_id} budget exhausted, marked completed")
            return None

        aggregate = await self.aggregator.aggregate(campaign_id, epoch)
        if aggregate.is_empty:
            logger.debug(f"[{eid}] No unprocessed receipts")
            return None

        allocation = self.allocator.allocate(aggregate.hosts, budget)
        if allocation.total_score == 0:
            logger.info(f"[{eid}] Zero total score over {aggregate.total_receipts} receipts, no epoch")
            return None
        if not allocation.payouts:
            logger.info(
                f"[{eid}] All {len(allocation.dropped)} hosts below minimum payout, no epoch"
            )
            return None

        commitment = build_commitment(allocation.payouts)

        record = Epoch(
            campaign_id=campaign_id,
            epoch=epoch,
            merkle_root=commitment.root,
            allocated_amount=allocation.allocated_amount,
            platform_fee=allocation.platform_fee,
            status=EpochStatus.READY,
            total_receipts=aggregate.total_receipts,
            total_impressions=aggregate.total_impressions,
            total_clicks=aggregate.total_clicks,
            host_count=len(aggregate.hosts),
        )
        payouts = [
            EpochPayout(
                epoch_id=eid,
                campaign_id=campaign_id,
                epoch=epoch,
                index=p.index,
                host_address=p.host_address,
                amount=p.amount,
                impressions=p.impressions,
                clicks=p.clicks,
                proof=commitment.proofs[p.index],
                leaf=commitment.leaves[p.index],
            )
            for p in allocation.payouts
        ]

        committed = await self.repos.epochs.commit_generation(
            record,
            payouts,
            aggregate.receipt_ids,
            record.allocated_amount + record.platform_fee,
            receipt_clicks=aggregate.receipt_clicks,
        )
        logger.info(
            f"✅ [{eid}] Epoch ready: {len(payouts)} payouts, "
            f"allocated={record.allocated_amount} fee={record.platform_fee} "
            f"of budget={budget}, root={commitment.root}"
        )
        return committed

    async def generate_campaign(self, campaign_id: int, epochs: List[int]) -> List[Epoch]:
        """Generate a campaign's epochs oldest first (each one consumes budget)"""
        generated = []
        for epoch in sorted(epochs):
            result = await self.generate_epoch(campaign_id, epoch)
            if result is not None:
                generated.append(result)
        return generated

    async def pending_windows(
        self,
        before_epoch: Optional[int] = None,
        limit: int = 100,
        lookback_hours: Optional[int] = None
    ) -> List[Tuple[int, int]]:
        """
        Closed (campaign, epoch) windows that still hold unprocessed receipts.

        Defaults to every hour before the one in progress, so ticks missed
        while the keeper was down are caught up. Windows with zero score keep
        their receipts unprocessed; lookback_hours bounds how far back they
        are retried.
        """
        if before_epoch is None:
            before_epoch = current_epoch()
        before, _ = epoch_bounds(before_epoch)
        since = None
        if lookback_hours is not None:
            since, _ = epoch_bounds(before_epoch - lookback_hours)
        return await self.repos.receipts.pending_windows(before, limit, since)

    # =========================================================================
    # LEDGER STAGES
    # =========================================================================

    async def _get_epoch(self, epoch_id: str, expected: EpochStatus) -> Epoch:
        epoch = await self.repos.epochs.get(epoch_id)
        if epoch is None:
            raise EpochNotFoundError(f"Epoch {epoch_id} not found")
        if epoch.status != expected:
            raise InvalidEpochStateError(epoch_id, expected.value, epoch.status.value)
        return epoch

    async def _call_ledger(self, epoch: Epoch, stage: EpochStatus, call):
        """
        Run one ledger call under the configured timeout.

        Transient failures leave the epoch as is (with last_error noted);
        permanent rejections move it to FAILED.
        """
        try:
            return await asyncio.wait_for(call, timeout=self.settings.ledger_timeout_seconds)
        except asyncio.TimeoutError as e:
            message = f"Ledger call timed out after {self.settings.ledger_timeout_seconds}s"
            await self.repos.epochs.record_error(epoch.id, message)
            raise LedgerUnavailableError(f"{epoch.id}: {message}") from e
        except LedgerUnavailableError as e:
            await self.repos.epochs.record_error(epoch.id, str(e))
            raise
        except LedgerRejectedError as e:
            await self.repos.epochs.mark_failed(epoch.id, stage, str(e))
            logger.error(f"❌ [{epoch.id}] Ledger rejected, epoch failed: {e}")
            raise

    async def submit_root(self, epoch_id: str) -> Epoch:
        """
        Publish a READY epoch's root.

        Raises:
            EpochNotFoundError, InvalidEpochStateError
            LedgerUnavailableError: epoch stays READY
            LedgerRejectedError: epoch is now FAILED
        """
        epoch = await self._get_epoch(epoch_id, EpochStatus.READY)

        receipt = await self._call_ledger(
            epoch,
            EpochStatus.READY,
            self.ledger.submit_root(
                epoch.id,
                epoch.merkle_root,
                epoch.allocated_amount,
                self.settings.ledger_call_options(),
            )
        )

        if not await self.repos.epochs.mark_submitted(epoch.id, receipt.tx_hash, utcnow()):
            current = await self.repos.epochs.get(epoch.id)
            raise InvalidEpochStateError(
                epoch.id, EpochStatus.READY.value, current.status.value if current else 'missing'
            )

        logger.info(f"📤 [{epoch.id}] Root submitted: tx={receipt.tx_hash}")
        return await self.repos.epochs.get(epoch.id)

    async def distribute(self, epoch_id: str) -> Epoch:
        """
        Disburse a SUBMITTED epoch's unclaimed payouts in chunks.

        Each confirmed chunk is marked claimed before the next is sent, so
        a failure midway resumes with only the remaining payouts.
        """
        epoch = await self._get_epoch(epoch_id, EpochStatus.SUBMITTED)
        chunk_size = self.settings.distribution_chunk_size
        options = self.settings.ledger_call_options()
        last_tx: Optional[str] = None

        while True:
            chunk = await self.repos.payouts.list_unclaimed(epoch.id, chunk_size)
            if not chunk:
                break

            receipt = await self._call_ledger(
                epoch,
                EpochStatus.SUBMITTED,
                self.ledger.batch_distribute(epoch.id, epoch.merkle_root, chunk, options)
            )
            claimed = await self.repos.payouts.mark_claimed(
                epoch.id, [p.index for p in chunk], receipt.tx_hash, utcnow()
            )
            last_tx = receipt.tx_hash
            logger.info(f"[{epoch.id}] Distributed {len(chunk)} payouts ({claimed}): tx={receipt.tx_hash}")

        if not await self.repos.epochs.mark_distributed(epoch.id, last_tx, utcnow()):
            current = await self.repos.epochs.get(epoch.id)
            raise InvalidEpochStateError(
                epoch.id, EpochStatus.SUBMITTED.value, current.status.value if current else 'missing'
            )

        logger.info(f"💸 [{epoch.id}] Epoch distributed")
        return await self.repos.epochs.get(epoch.id)

    # =========================================================================
    # REPAIR
    # =========================================================================

    async def reconcile(self) -> dict:
        """
        Repair partial state left by a crash.

        - receipts marked processed for an epoch id with no epoch row are
          released
        - PENDING epochs are discarded (payouts removed, receipts released)
        """
        released = 0
        for orphan_id in await self.repos.receipts.find_orphaned_epoch_ids():
            count = await self.repos.receipts.release(orphan_id)
            released += count
            logger.warning(f"[reconcile] Released {count} receipts of missing epoch {orphan_id}")

        discarded = 0
        while True:
            pending = await self.repos.epochs.list_by_status(EpochStatus.PENDING, limit=100)
            progress = 0
            for epoch in pending:
                if await self.repos.epochs.discard_pending(epoch.id):
                    progress += 1
                    logger.warning(f"[reconcile] Discarded pending epoch {epoch.id}")
            discarded += progress
            if progress == 0:
                break

        return {'released_receipts': released, 'discarded_epochs': discarded}

