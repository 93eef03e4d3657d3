"""
Bridge Worker Tests
===================

Job routing and per-job error isolation; the queue itself is mocked.
"""

import pytest
from unittest.mock import AsyncMock

from models.domain.campaign import HostProfile
from services.integration_bridge import IntegrationBridge
from workers.bridge_worker import BridgeWorker

from conftest import EPOCH, at
from utils.datetime_utils import epoch_bounds


@pytest.fixture
def worker(repos) -> BridgeWorker:
    return BridgeWorker(IntegrationBridge(repos), AsyncMock(), "queue:tracking:events")


def job(kind, event_id="e-1", host_id="host-1"):
    return {
        'type': kind,
        'event': {
            'id': event_id,
            'campaign_id': 1,
            'host_id': host_id,
            'timestamp': at(minutes=3).isoformat(),
        },
    }


class TestHandleJob:

    @pytest.mark.asyncio
    async def test_impression_then_click(self, worker, repos, campaign):
        await repos.hosts.upsert(HostProfile(host_id="host-1", wallet_address="0x" + "a" * 40))

        await worker.handle_job(job('impression'))
        await worker.handle_job(job('click', event_id="e-2"))

        start, end = epoch_bounds(EPOCH)
        receipts = await repos.receipts.find_unprocessed(1, start, end)
        assert [(r.impressions, r.clicks) for r in receipts] == [(1, 1)]
        assert worker.jobs_processed == 2

    @pytest.mark.asyncio
    async def test_unknown_type_skipped(self, worker):
        await worker.handle_job({'type': 'conversion', 'event': {'id': 'x'}})
        await worker.handle_job({'type': 'impression', 'event': {}})
        assert worker.jobs_skipped == 2
        assert worker.jobs_processed == 0

    @pytest.mark.asyncio
    async def test_unknown_campaign_counted_as_failure(self, worker, repos, campaign):
        await repos.hosts.upsert(HostProfile(host_id="host-1", wallet_address="0x" + "a" * 40))
        unknown = job('impression')
        unknown['event']['campaign_id'] = 7

        await worker.handle_job(unknown)

        assert worker.jobs_failed == 1
        start, end = epoch_bounds(EPOCH)
        assert await repos.receipts.find_unprocessed(7, start, end) == []

    @pytest.mark.asyncio
    async def test_missing_wallet_counted_as_failure(self, worker, repos, campaign):
        await repos.hosts.upsert(HostProfile(host_id="host-2"))

        await worker.handle_job(job('impression', host_id="host-2"))
        await worker.handle_job(job('impression', host_id="ghost"))

        assert worker.jobs_failed == 2
        start, end = epoch_bounds(EPOCH)
        assert await repos.receipts.find_unprocessed(1, start, end) == []
