"""
Epoch Aggregator Tests
======================

Window boundaries, ordering, per-host sums, and that aggregation is a pure
read of the store.
"""

import pytest

from services.epoch_aggregator import EpochAggregator
from utils.datetime_utils import (
    epoch_number, epoch_bounds, epoch_id, parse_epoch_id, current_epoch,
)

from conftest import HOST_A, HOST_B, EPOCH, at, make_receipt, add_receipts


class TestEpochHelpers:

    def test_epoch_number_is_floor_of_hours(self):
        assert epoch_number(at(minutes=59, seconds=59)) == EPOCH
        assert epoch_number(at(EPOCH + 1)) == EPOCH + 1

    def test_bounds_are_half_open(self):
        start, end = epoch_bounds(EPOCH)
        assert epoch_number(start) == EPOCH
        assert epoch_number(end) == EPOCH + 1
        assert (end - start).total_seconds() == 3600

    def test_epoch_id_round_trip(self):
        assert epoch_id(7, EPOCH) == f"7_{EPOCH}"
        assert parse_epoch_id(f"7_{EPOCH}") == (7, EPOCH)

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_epoch_id("nope")

    def test_current_epoch(self):
        assert current_epoch(at(minutes=30)) == EPOCH


class TestAggregate:

    @pytest.mark.asyncio
    async def test_sums_per_host_within_window(self, repos):
        await add_receipts(repos, [
            make_receipt(host=HOST_A, impressions=3, clicks=1, when=at(minutes=1)),
            make_receipt(host=HOST_A, impressions=2, when=at(minutes=2)),
            make_receipt(host=HOST_B, impressions=4, when=at(minutes=3)),
            make_receipt(host=HOST_B, impressions=9, when=at(EPOCH + 1)),
            make_receipt(host=HOST_B, impressions=9, when=at(EPOCH - 1, minutes=59)),
        ])
        aggregator = EpochAggregator(repos.receipts)

        result = await aggregator.aggregate(1, EPOCH)

        assert result.hosts[HOST_A].impressions == 5
        assert result.hosts[HOST_A].clicks == 1
        assert result.hosts[HOST_B].impressions == 4
        assert result.total_receipts == 3
        assert result.total_impressions == 9

    @pytest.mark.asyncio
    async def test_filtered_receipts_still_consumed(self, repos):
        """A dwell-rejected receipt contributes nothing but is listed for consumption."""
        stored = await add_receipts(repos, [
            make_receipt(host=HOST_A, dwell_ms=100),
            make_receipt(host=HOST_B, impressions=1),
        ])
        result = await EpochAggregator(repos.receipts).aggregate(1, EPOCH)

        assert sorted(result.receipt_ids) == sorted(r.id for r in stored)
        assert HOST_A not in result.hosts

    @pytest.mark.asyncio
    async def test_invalid_address_counted_and_consumed(self, repos):
        stored = await add_receipts(repos, [
            make_receipt(host="", impressions=5),
            make_receipt(host="not-a-wallet", impressions=5),
            make_receipt(host="0x" + "A" * 40, impressions=2, clicks=1),
        ])
        result = await EpochAggregator(repos.receipts).aggregate(1, EPOCH)

        assert list(result.hosts) == [HOST_A]
        assert result.stats.invalid_address == 2
        assert result.stats.to_dict()['invalid_address'] == 2
        assert result.receipt_ids == [r.id for r in stored]
        assert result.receipt_clicks == [0, 0, 1]

    @pytest.mark.asyncio
    async def test_other_campaigns_ignored(self, repos):
        await add_receipts(repos, [
            make_receipt(campaign_id=1),
            make_receipt(campaign_id=2),
        ])
        result = await EpochAggregator(repos.receipts).aggregate(1, EPOCH)
        assert result.total_receipts == 1

    @pytest.mark.asyncio
    async def test_is_read_only(self, repos):
        await add_receipts(repos, [make_receipt()])
        await EpochAggregator(repos.receipts).aggregate(1, EPOCH)
        start, end = epoch_bounds(EPOCH)
        assert len(await repos.receipts.find_unprocessed(1, start, end)) == 1

    @pytest.mark.asyncio
    async def test_empty_window(self, repos):
        result = await EpochAggregator(repos.receipts).aggregate(1, EPOCH)
        assert result.is_empty
        assert result.hosts == {}

    @pytest.mark.asyncio
    async def test_insertion_order_breaks_timestamp_ties(self, repos):
        """Same timestamp: the earlier insert is the first sighting, the later one is deduped."""
        await add_receipts(repos, [
            make_receipt(host=HOST_A, fingerprint="fp", impressions=1, clicks=0, when=at(seconds=5)),
            make_receipt(host=HOST_A, fingerprint="fp", impressions=1, clicks=1, when=at(seconds=5)),
        ])
        result = await EpochAggregator(repos.receipts).aggregate(1, EPOCH)
        assert result.hosts[HOST_A].impressions == 1
        assert result.hosts[HOST_A].clicks == 1
