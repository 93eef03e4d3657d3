"""
Integration Bridge Tests
========================

Tracking events to receipts: wallet lookup, idempotent redelivery, click
attachment, and the integration health check.
"""

import pytest
import pytest_asyncio
from unittest.mock import MagicMock

from models.domain.campaign import HostProfile
from services.errors import InvalidReceiptError, MissingWalletError
from services.integration_bridge import IntegrationBridge
from utils.datetime_utils import epoch_bounds, utcnow

from conftest import HOST_A, EPOCH, at, make_receipt, add_receipts

UPPER_CASE_WALLET = "0x" + "A" * 40


@pytest_asyncio.fixture
async def bridge(repos, campaign) -> IntegrationBridge:
    await repos.hosts.upsert(HostProfile(host_id="host-1", wallet_address=UPPER_CASE_WALLET))
    await repos.hosts.upsert(HostProfile(host_id="host-2"))
    return IntegrationBridge(repos)


def impression(event_id="imp-1", **extra):
    event = {
        'id': event_id,
        'campaign_id': 1,
        'host_id': 'host-1',
        'timestamp': at(minutes=5).isoformat(),
    }
    event.update(extra)
    return event


class TestRecordReceipt:

    @pytest.mark.asyncio
    async def test_normalizes_address(self, repos, campaign):
        bridge = IntegrationBridge(repos)
        stored = await bridge.record_receipt(1, UPPER_CASE_WALLET, at(), impressions=1)
        assert stored.host_address == HOST_A
        assert stored.id is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {'host_address': "not-an-address", 'impressions': 1},
        {'host_address': HOST_A, 'impressions': -1},
        {'host_address': HOST_A, 'impressions': 0, 'clicks': 0},
        {'host_address': HOST_A, 'impressions': 1, 'dwell_ms': -5},
    ])
    async def test_rejects_bad_input(self, repos, campaign, kwargs):
        bridge = IntegrationBridge(repos)
        with pytest.raises(InvalidReceiptError):
            await bridge.record_receipt(campaign_id=1, timestamp=at(), **kwargs)

    @pytest.mark.asyncio
    async def test_unknown_campaign_rejected(self, repos, store, campaign):
        bridge = IntegrationBridge(repos)
        with pytest.raises(InvalidReceiptError, match="Campaign 7 not found"):
            await bridge.record_receipt(7, HOST_A, at(), impressions=1)
        assert store.receipts == {}


class TestImpressions:

    @pytest.mark.asyncio
    async def test_creates_receipt(self, bridge):
        receipt = await bridge.receipt_from_impression(impression(dwell_ms=2500, fingerprint="fp"))

        assert receipt.host_address == HOST_A
        assert receipt.impressions == 1
        assert receipt.clicks == 0
        assert receipt.dwell_ms == 2500
        assert receipt.viewer_fingerprint == "fp"
        assert receipt.signature == "IMP_imp-1"
        assert receipt.timestamp == at(minutes=5)

    @pytest.mark.asyncio
    async def test_defaults(self, bridge):
        receipt = await bridge.receipt_from_impression(impression(ip_address="10.0.0.1"))
        assert receipt.dwell_ms == 1500
        assert receipt.viewer_fingerprint == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, bridge, repos):
        first = await bridge.receipt_from_impression(impression())
        second = await bridge.receipt_from_impression(impression())

        assert first.id == second.id
        start, end = epoch_bounds(EPOCH)
        assert len(await repos.receipts.find_unprocessed(1, start, end)) == 1

    @pytest.mark.asyncio
    async def test_host_without_wallet(self, bridge):
        with pytest.raises(MissingWalletError):
            await bridge.receipt_from_impression(impression(host_id="host-2"))

    @pytest.mark.asyncio
    async def test_unknown_host(self, bridge):
        with pytest.raises(MissingWalletError):
            await bridge.receipt_from_impression(impression(host_id="nobody"))

    @pytest.mark.asyncio
    async def test_event_for_unknown_campaign(self, bridge, repos):
        with pytest.raises(InvalidReceiptError):
            await bridge.receipt_from_impression(impression(campaign_id=7))
        with pytest.raises(InvalidReceiptError):
            await bridge.receipt_from_click(impression(event_id="clk-1", campaign_id=7))

        start, end = epoch_bounds(EPOCH)
        assert await repos.receipts.find_unprocessed(7, start, end) == []

    @pytest.mark.asyncio
    async def test_missing_field(self, bridge):
        event = impression()
        del event['campaign_id']
        with pytest.raises(InvalidReceiptError):
            await bridge.receipt_from_impression(event)

    @pytest.mark.asyncio
    async def test_bad_timestamp(self, bridge):
        with pytest.raises(InvalidReceiptError):
            await bridge.receipt_from_impression(impression(timestamp="yesterday"))


class TestClicks:

    @pytest.mark.asyncio
    async def test_attaches_to_latest_unprocessed(self, bridge, store):
        shown = await bridge.receipt_from_impression(impression())

        clicked = await bridge.receipt_from_click(impression(event_id="clk-1"))

        assert clicked.id == shown.id
        assert clicked.clicks == 1
        assert store.receipts[shown.id].clicks == 1

    @pytest.mark.asyncio
    async def test_click_only_receipt(self, bridge):
        receipt = await bridge.receipt_from_click(impression(event_id="clk-1"))

        assert receipt.impressions == 0
        assert receipt.clicks == 1
        assert receipt.dwell_ms == 2000
        assert receipt.signature == "CLK_clk-1"

    @pytest.mark.asyncio
    async def test_processed_receipt_not_touched(self, bridge, store):
        shown = await bridge.receipt_from_impression(impression())
        store.receipts[shown.id].processed = True
        store.receipts[shown.id].epoch_id = f"1_{EPOCH}"

        receipt = await bridge.receipt_from_click(impression(event_id="clk-1"))

        assert receipt.id != shown.id
        assert store.receipts[shown.id].clicks == 0

    @pytest.mark.asyncio
    async def test_click_only_redelivery_is_noop(self, bridge):
        first = await bridge.receipt_from_click(impression(event_id="clk-1"))
        second = await bridge.receipt_from_click(impression(event_id="clk-1"))
        assert first.id == second.id
        assert second.clicks == 1


class TestValidateIntegration:

    @pytest.mark.asyncio
    async def test_reports_every_issue(self, bridge, repos, campaign):
        result = await bridge.validate_integration()

        assert result['is_valid'] is False
        assert "1 hosts missing wallet addresses" in result['issues']
        assert any("no receipts in the last hour" in issue for issue in result['issues'])
        assert "Keeper service not initialized" in result['issues']

    @pytest.mark.asyncio
    async def test_healthy(self, repos, campaign):
        await repos.hosts.upsert(HostProfile(host_id="host-1", wallet_address=HOST_A))
        await add_receipts(repos, [make_receipt(when=utcnow())])
        keeper = MagicMock()
        keeper.status.return_value = {'running': True}

        result = await IntegrationBridge(repos, keeper=keeper).validate_integration()

        assert result == {'is_valid': True, 'issues': []}

    @pytest.mark.asyncio
    async def test_stopped_keeper(self, repos):
        keeper = MagicMock()
        keeper.status.return_value = {'running': False}

        result = await IntegrationBridge(repos, keeper=keeper).validate_integration()

        assert result['issues'] == ["Keeper service not running"]
