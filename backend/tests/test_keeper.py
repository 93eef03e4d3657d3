"""
Keeper Tests
============

Full runs over the in-memory store: catch-up generation, auto submit and
distribute, single-flight, per-epoch isolation and the schedule.
"""

import asyncio

import pytest
from datetime import timedelta
from decimal import Decimal

from models.domain.campaign import Campaign
from models.domain.epoch import EpochStatus
from services.errors import LedgerUnavailableError
from services.keeper import Keeper
from services.settlement import SettlementService
from utils.datetime_utils import epoch_bounds

from conftest import HOST_A, HOST_B, EPOCH, at, make_receipt, add_receipts


@pytest.fixture
def service(repos, ledger, settings) -> SettlementService:
    return SettlementService(repos, ledger, settings)


@pytest.fixture
def keeper(service, settings) -> Keeper:
    return Keeper(service, settings)


async def second_campaign(repos):
    start, _ = epoch_bounds(EPOCH)
    await repos.campaigns.upsert(Campaign(
        id=2, total_budget=Decimal("50"), end_date=start + timedelta(hours=10)
    ))


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_generates_submits_and_distributes(self, keeper, repos, ledger, campaign):
        await add_receipts(repos, [
            make_receipt(host=HOST_A, impressions=500, when=at(minutes=10)),
            make_receipt(host=HOST_B, impressions=100, when=at(minutes=20)),
        ])

        run = await keeper.run_once(now=at(EPOCH + 1, minutes=1))

        eid = f"1_{EPOCH}"
        assert run.generated == [eid]
        assert run.submitted == [eid]
        assert run.distributed == [eid]
        assert run.errors == []
        assert (await repos.epochs.get(eid)).status == EpochStatus.DISTRIBUTED
        assert ledger.distributions == [(eid, [0, 1])]

    @pytest.mark.asyncio
    async def test_hour_in_progress_left_alone(self, keeper, repos, campaign):
        await add_receipts(repos, [make_receipt(when=at(EPOCH + 1, minutes=5))])

        run = await keeper.run_once(now=at(EPOCH + 1, minutes=30))

        assert run.generated == []
        assert await repos.epochs.list_by_campaign(1) == []

    @pytest.mark.asyncio
    async def test_catches_up_missed_hours_in_order(self, keeper, repos, campaign):
        await add_receipts(repos, [
            make_receipt(when=at(EPOCH + 1)),
            make_receipt(when=at(EPOCH)),
        ])

        run = await keeper.run_once(now=at(EPOCH + 3, minutes=1))

        assert run.generated == [f"1_{EPOCH}", f"1_{EPOCH + 1}"]

    @pytest.mark.asyncio
    async def test_auto_stages_respect_flags(self, keeper, repos, ledger, settings, campaign):
        settings.keeper_auto_submit = False
        settings.keeper_auto_distribute = False
        await add_receipts(repos, [make_receipt()])

        run = await keeper.run_once(now=at(EPOCH + 1, minutes=1))

        assert run.generated == [f"1_{EPOCH}"]
        assert run.submitted == []
        assert ledger.roots == []
        assert (await repos.epochs.get(f"1_{EPOCH}")).status == EpochStatus.READY

    @pytest.mark.asyncio
    async def test_late_receipts_for_finalized_window_not_an_error(self, keeper, repos, campaign):
        await add_receipts(repos, [make_receipt(when=at(minutes=1))])
        await keeper.run_once(now=at(EPOCH + 1, minutes=1))
        await add_receipts(repos, [make_receipt(when=at(minutes=59))])

        run = await keeper.run_once(now=at(EPOCH + 1, minutes=2))

        assert run.generated == []
        assert run.errors == []

    @pytest.mark.asyncio
    async def test_stale_windows_do_not_crowd_out_recent_hours(self, keeper, repos, campaign, monkeypatch):
        monkeypatch.setattr("services.keeper.WINDOW_SCAN_LIMIT", 2)
        await add_receipts(repos, [
            make_receipt(when=at(EPOCH - 3), dwell_ms=10),
            make_receipt(when=at(EPOCH - 2), dwell_ms=10),
            make_receipt(when=at(EPOCH - 1), dwell_ms=10),
            make_receipt(when=at(EPOCH)),
        ])

        run = await keeper.run_once(now=at(EPOCH + 1, minutes=1))

        assert run.generated == [f"1_{EPOCH}"]
        assert run.errors == []


class TestIsolation:

    @pytest.mark.asyncio
    async def test_unknown_campaign_does_not_block_others(self, keeper, repos, campaign):
        await add_receipts(repos, [
            make_receipt(campaign_id=1),
            make_receipt(campaign_id=7),
        ])

        run = await keeper.run_once(now=at(EPOCH + 1, minutes=1))

        assert run.generated == [f"1_{EPOCH}"]
        assert len(run.errors) == 1
        assert run.errors[0].startswith(f"7_{EPOCH}")

    @pytest.mark.asyncio
    async def test_ledger_failure_isolated_per_epoch(self, keeper, repos, ledger, campaign):
        await second_campaign(repos)
        await add_receipts(repos, [
            make_receipt(campaign_id=1),
            make_receipt(campaign_id=2),
        ])
        ledger.fail_with = LedgerUnavailableError("relayer 503")
        ledger.fail_times = 1

        run = await keeper.run_once(now=at(EPOCH + 1, minutes=1))

        assert sorted(run.generated) == [f"1_{EPOCH}", f"2_{EPOCH}"]
        assert run.submitted == [f"2_{EPOCH}"]
        assert run.distributed == [f"2_{EPOCH}"]
        assert run.errors == [f"1_{EPOCH}: relayer 503"]
        assert (await repos.epochs.get(f"1_{EPOCH}")).status == EpochStatus.READY

    @pytest.mark.asyncio
    async def test_failed_submission_retried_next_run(self, keeper, repos, ledger, campaign):
        await add_receipts(repos, [make_receipt()])
        ledger.fail_with = LedgerUnavailableError("relayer 503")
        ledger.fail_times = 1
        await keeper.run_once(now=at(EPOCH + 1, minutes=1))

        run = await keeper.run_once(now=at(EPOCH + 2, minutes=1))

        assert run.submitted == [f"1_{EPOCH}"]
        assert run.distributed == [f"1_{EPOCH}"]


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_trigger_during_run_is_dropped(self, keeper, service, repos, campaign):
        await add_receipts(repos, [make_receipt()])
        gate = asyncio.Event()
        reconcile = service.reconcile

        async def slow_reconcile():
            await gate.wait()
            return await reconcile()

        service.reconcile = slow_reconcile

        first = asyncio.create_task(keeper.run_once(now=at(EPOCH + 1, minutes=1)))
        await asyncio.sleep(0)
        assert keeper.processing

        assert await keeper.run_once(now=at(EPOCH + 1, minutes=1)) is None
        assert await keeper.run_manual(epoch=EPOCH) is None

        gate.set()
        run = await first
        assert run.generated == [f"1_{EPOCH}"]
        assert not keeper.processing
        assert len(await repos.epochs.list_by_campaign(1)) == 1


class TestManualRun:

    @pytest.mark.asyncio
    async def test_single_window(self, keeper, repos, ledger, campaign):
        await second_campaign(repos)
        await add_receipts(repos, [
            make_receipt(campaign_id=1),
            make_receipt(campaign_id=2),
        ])

        run = await keeper.run_manual(epoch=EPOCH, campaign_id=2)

        assert run.generated == [f"2_{EPOCH}"]
        assert ledger.roots == []
        assert await repos.epochs.get(f"1_{EPOCH}") is None

    @pytest.mark.asyncio
    async def test_all_active_campaigns(self, keeper, repos, campaign):
        await second_campaign(repos)
        await add_receipts(repos, [
            make_receipt(campaign_id=1),
            make_receipt(campaign_id=2),
        ])

        run = await keeper.run_manual(epoch=EPOCH)

        assert sorted(run.generated) == [f"1_{EPOCH}", f"2_{EPOCH}"]


class TestSchedule:

    def test_next_trigger_is_offset_past_boundary(self, keeper, settings):
        settings.keeper_interval_seconds = 3600
        settings.keeper_offset_seconds = 60

        assert keeper.next_trigger(at(EPOCH, seconds=30)) == at(EPOCH, minutes=1)
        assert keeper.next_trigger(at(EPOCH, minutes=1)) == at(EPOCH + 1, minutes=1)
        assert keeper.next_trigger(at(EPOCH, minutes=45)) == at(EPOCH + 1, minutes=1)

    def test_shorter_interval(self, keeper, settings):
        settings.keeper_interval_seconds = 900
        settings.keeper_offset_seconds = 0

        assert keeper.next_trigger(at(EPOCH, minutes=20)) == at(EPOCH, minutes=30)

    @pytest.mark.asyncio
    async def test_disabled_keeper_does_not_start(self, keeper, settings):
        settings.keeper_enabled = False
        assert keeper.start() is None
        assert keeper.status()['running'] is False

    @pytest.mark.asyncio
    async def test_start_and_stop(self, keeper):
        task = keeper.start()
        assert task is not None
        assert keeper.start() is task
        await asyncio.sleep(0)

        status = keeper.status()
        assert status['running'] is True
        assert status['next_run'] is not None

        await keeper.stop()
        assert keeper.status()['running'] is False
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_status_reports_last_run(self, keeper, repos, campaign):
        await add_receipts(repos, [make_receipt()])
        await keeper.run_once(now=at(EPOCH + 1, minutes=1))

        status = keeper.status()
        assert status['processing'] is False
        assert status['last_run']['generated'] == [f"1_{EPOCH}"]
        assert status['auto_submit'] is True
