"""
Keeper - Hourly driver of the settlement pipeline

Each run:
    1. reconcile() partial state left by a crash
    2. generate epochs for every closed hour that still has unprocessed
       receipts (campaigns in parallel, each campaign's hours in order)
    3. auto-submit READY roots          (if keeper_auto_submit)
    4. auto-distribute SUBMITTED epochs (if keeper_auto_distribute)

Single-flight: a trigger that arrives while a run is in progress is logged
and dropped, never queued. Failures are isolated per epoch and per campaign.

Schedule: every keeper_interval_seconds, keeper_offset_seconds past the
interval boundary (defaults: hourly, one minute past the hour).
"""
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Dict

from models.domain.epoch import EpochStatus
from services.errors import EpochAlreadyFinalizedError, SettlementError
from services.settlement import SettlementService
from utils.datetime_utils import utcnow, current_epoch

logger = logging.getLogger(__name__)

WINDOW_SCAN_LIMIT = 1000


@dataclass
class KeeperRun:
    """Outcome of one keeper run"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    reconciled: Dict[str, int] = field(default_factory=dict)
    generated: List[str] = field(default_factory=list)
    submitted: List[str] = field(default_factory=list)
    distributed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'reconciled': dict(self.reconciled),
            'generated': list(self.generated),
            'submitted': list(self.submitted),
            'distributed': list(self.distributed),
            'errors': list(self.errors),
        }


class Keeper:
    """
    Periodic, single-flight settlement driver.

    Owns its own lock; there is no module-level instance. Construct one per
    process and hand it to whatever needs status (e.g. the integration check).
    """

    def __init__(self, settlement: SettlementService, settings):
        self.settlement = settlement
        self.settings = settings
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.running = False
        self.next_run: Optional[datetime] = None
        self.last_run: Optional[KeeperRun] = None

    @property
    def processing(self) -> bool:
        return self._lock.locked()

    # =========================================================================
    # ONE RUN
    # =========================================================================

    async def run_once(self, now: Optional[datetime] = None) -> Optional[KeeperRun]:
        """
        Execute one full keeper pass.

        Returns:
            The run outcome, or None if another run was already in flight
        """
        if self._lock.locked():
            logger.warning("⚠️  [keeper] Already processing, skipping trigger")
            return None

        async with self._lock:
            now = now or utcnow()
            run = KeeperRun(started_at=now)
            started = time.monotonic()
            logger.info(f"🕐 [keeper] Run started at {now.isoformat()}")

            try:
                run.reconciled = await self.settlement.reconcile()
            except Exception as e:
                run.errors.append(f"reconcile: {e}")
                logger.error(f"[keeper] Reconcile failed: {e}", exc_info=True)

            await self._generate(run, current_epoch(now))

            if self.settings.keeper_auto_submit:
                await self._advance(run, EpochStatus.READY, self.settlement.submit_root, run.submitted)

            if self.settings.keeper_auto_distribute:
                await self._advance(run, EpochStatus.SUBMITTED, self.settlement.distribute, run.distributed)

            run.finished_at = utcnow()
            self.last_run = run
            logger.info(
                f"✅ [keeper] Run completed in {time.monotonic() - started:.2f}s: "
                f"generated={len(run.generated)} submitted={len(run.submitted)} "
                f"distributed={len(run.distributed)} errors={len(run.errors)}"
            )
            return run

    async def _generate(self, run: KeeperRun, before_epoch: int):
        try:
            windows = await self.settlement.pending_windows(
                before_epoch=before_epoch,
                limit=WINDOW_SCAN_LIMIT,
                lookback_hours=self.settings.keeper_catchup_hours,
            )
        except Exception as e:
            run.errors.append(f"pending_windows: {e}")
            logger.error(f"[keeper] Could not list pending windows: {e}", exc_info=True)
            return

        by_campaign: Dict[int, List[int]] = defaultdict(list)
        for campaign_id, epoch in windows:
            by_campaign[campaign_id].append(epoch)

        if not by_campaign:
            logger.info("[keeper] No closed windows with unprocessed receipts")
            return

        semaphore = asyncio.Semaphore(self.settings.keeper_max_concurrency)
        await asyncio.gather(*[
            self._generate_campaign(run, semaphore, campaign_id, epochs)
            for campaign_id, epochs in sorted(by_campaign.items())
        ])

    async def _generate_campaign(
        self,
        run: KeeperRun,
        semaphore: asyncio.Semaphore,
        campaign_id: int,
        epochs: List[int]
    ):
        async with semaphore:
            for epoch in sorted(epochs):
                try:
                    generated = await self.settlement.generate_epoch(campaign_id, epoch)
                    if generated is not None:
                        run.generated.append(generated.id)
                except EpochAlreadyFinalizedError as e:
                    logger.warning(f"[keeper] Late receipts for finalized window: {e}")
                except SettlementError as e:
                    run.errors.append(f"{campaign_id}_{epoch}: {e}")
                    logger.error(f"❌ [keeper] Campaign {campaign_id} epoch {epoch}: {e}")
                except Exception as e:
                    run.errors.append(f"{campaign_id}_{epoch}: {e}")
                    logger.error(
                        f"❌ [keeper] Campaign {campaign_id} epoch {epoch} failed: {e}",
                        exc_info=True
                    )

    async def _advance(self, run: KeeperRun, status: EpochStatus, stage, done: List[str]):
        """Push up to keeper_batch_size epochs in `status` through one ledger stage"""
        try:
            epochs = await self.settlement.repos.epochs.list_by_status(
                status, limit=self.settings.keeper_batch_size
            )
        except Exception as e:
            run.errors.append(f"list {status.value}: {e}")
            logger.error(f"[keeper] Could not list {status.value} epochs: {e}", exc_info=True)
            return

        if not epochs:
            logger.info(f"[keeper] No {status.value} epochs")
            return

        for epoch in epochs:
            try:
                await stage(epoch.id)
                done.append(epoch.id)
            except SettlementError as e:
                run.errors.append(f"{epoch.id}: {e}")
                logger.error(f"❌ [keeper] {stage.__name__} failed for {epoch.id}: {e}")
            except Exception as e:
                run.errors.append(f"{epoch.id}: {e}")
                logger.error(f"❌ [keeper] {stage.__name__} failed for {epoch.id}: {e}", exc_info=True)

    async def run_manual(
        self,
        epoch: Optional[int] = None,
        campaign_id: Optional[int] = None
    ) -> Optional[KeeperRun]:
        """
        Operator trigger.

        Without arguments this is a normal run. With an epoch (and optionally
        a campaign) only that window is generated, still under the
        single-flight lock.
        """
        logger.info(f"🔧 [keeper] Manual run triggered (epoch={epoch}, campaign={campaign_id})")
        if epoch is None:
            return await self.run_once()

        if self._lock.locked():
            logger.warning("⚠️  [keeper] Already processing, skipping manual trigger")
            return None

        async with self._lock:
            run = KeeperRun(started_at=utcnow())
            if campaign_id is not None:
                campaign_ids = [campaign_id]
            else:
                campaign_ids = [c.id for c in await self.settlement.repos.campaigns.list_active()]

            semaphore = asyncio.Semaphore(self.settings.keeper_max_concurrency)
            await asyncio.gather(*[
                self._generate_campaign(run, semaphore, cid, [epoch]) for cid in campaign_ids
            ])
            run.finished_at = utcnow()
            self.last_run = run
            return run

    # =========================================================================
    # SCHEDULE
    # =========================================================================

    def next_trigger(self, now: Optional[datetime] = None) -> datetime:
        """Next interval boundary plus offset, strictly after now"""
        now = now or utcnow()
        interval = self.settings.keeper_interval_seconds
        offset = self.settings.keeper_offset_seconds % interval
        ts = now.timestamp()
        boundary = ts - (ts % interval) + offset
        if boundary <= ts:
            boundary += interval
        return now + timedelta(seconds=boundary - ts)

    async def _loop(self):
        while self.running:
            self.next_run = self.next_trigger()
            delay = (self.next_run - utcnow()).total_seconds()
            logger.info(f"[keeper] Next run at {self.next_run.isoformat()}")
            await asyncio.sleep(max(0.0, delay))
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"❌ [keeper] Run failed: {e}", exc_info=True)

    def start(self) -> Optional[asyncio.Task]:
        """Schedule the periodic loop on the running event loop"""
        if not self.settings.keeper_enabled:
            logger.info("[keeper] Disabled by configuration")
            return None
        if self._task and not self._task.done():
            return self._task

        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            f"🚀 [keeper] Started: every {self.settings.keeper_interval_seconds}s "
            f"+{self.settings.keeper_offset_seconds}s, auto_submit={self.settings.keeper_auto_submit}, "
            f"auto_distribute={self.settings.keeper_auto_distribute}"
        )
        return self._task

    async def stop(self):
        self.running = False
        self.next_run = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("⚠️  [keeper] Stopped")

    def status(self) -> dict:
        return {
            'enabled': self.settings.keeper_enabled,
            'running': self.running,
            'processing': self.processing,
            'interval_seconds': self.settings.keeper_interval_seconds,
            'offset_seconds': self.settings.keeper_offset_seconds,
            'auto_submit': self.settings.keeper_auto_submit,
            'auto_distribute': self.settings.keeper_auto_distribute,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'last_run': self.last_run.to_dict() if self.last_run else None,
        }
