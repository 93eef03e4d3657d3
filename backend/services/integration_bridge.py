"""
IntegrationBridge - Tracking events in, settlement receipts out

Connects the tracking side (impression / click events keyed by host id) to
the payout side (receipts keyed by host wallet address).

Event shapes (as produced by the tracking endpoint onto the Redis queue):
    impression: {'id', 'campaign_id', 'host_id', 'dwell_ms'?, 'fingerprint'?,
                 'ip_address'?, 'timestamp'?}
    click:      {'id', 'campaign_id', 'host_id', 'fingerprint'?,
                 'ip_address'?, 'timestamp'?}

Signatures `IMP_<event id>` / `CLK_<event id>` make redelivered events
no-ops.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from models.domain.receipt import Receipt
from services.errors import InvalidReceiptError, MissingWalletError
from utils.address import normalize_address
from utils.datetime_utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_IMPRESSION_DWELL_MS = 1500
DEFAULT_CLICK_DWELL_MS = 2000


def _event_time(event: dict) -> datetime:
    value = event.get('timestamp')
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
    except ValueError:
        raise InvalidReceiptError(f"Event {event.get('id')}: bad timestamp {value!r}")


def _require(event: dict, key: str):
    value = event.get(key)
    if value is None or value == '':
        raise InvalidReceiptError(f"Event {event.get('id')}: missing {key}")
    return value


class IntegrationBridge:
    """Turns tracking facts into receipts for the hourly settlement"""

    def __init__(self, repos, keeper=None):
        self.repos = repos
        self.keeper = keeper

    async def record_receipt(
        self,
        campaign_id: int,
        host_address: str,
        timestamp: datetime,
        impressions: int = 0,
        clicks: int = 0,
        dwell_ms: Optional[int] = None,
        fingerprint: Optional[str] = None,
        signature: Optional[str] = None
    ) -> Receipt:
        """
        Validate and store one receipt.

        A signature that already exists returns the stored receipt unchanged.

        Raises:
            InvalidReceiptError: bad address, negative counts, no activity
                or unknown campaign
        """
        try:
            address = normalize_address(host_address)
        except ValueError as e:
            raise InvalidReceiptError(str(e)) from e

        if impressions < 0 or clicks < 0:
            raise InvalidReceiptError(
                f"Negative counts for {address}: impressions={impressions}, clicks={clicks}"
            )
        if impressions == 0 and clicks == 0:
            raise InvalidReceiptError(f"Receipt for {address} carries no activity")
        if dwell_ms is not None and dwell_ms < 0:
            raise InvalidReceiptError(f"Negative dwell for {address}: {dwell_ms}")

        campaign_id = int(campaign_id)
        if await self.repos.campaigns.get(campaign_id) is None:
            raise InvalidReceiptError(f"Campaign {campaign_id} not found")

        receipt = Receipt(
            campaign_id=campaign_id,
            host_address=address,
            timestamp=timestamp,
            impressions=impressions,
            clicks=clicks,
            dwell_ms=dwell_ms,
            viewer_fingerprint=fingerprint or None,
            signature=signature,
        )
        stored = await self.repos.receipts.create(receipt)
        logger.debug(f"Recorded receipt {stored.id} ({signature or 'unsigned'}) for {address}")
        return stored

    async def _wallet_for(self, host_id: str) -> str:
        host = await self.repos.hosts.get(host_id)
        if host is None:
            raise MissingWalletError(f"Host {host_id} not found")
        if not host.wallet_address:
            raise MissingWalletError(f"Host {host_id} has no wallet address")
        try:
            return normalize_address(host.wallet_address)
        except ValueError as e:
            raise InvalidReceiptError(f"Host {host_id}: {e}") from e

    async def receipt_from_impression(self, event: dict) -> Receipt:
        """
        One impression event -> one receipt.

        Raises:
            MissingWalletError: the host is unknown or has no wallet
            InvalidReceiptError: the event is malformed
        """
        event_id = _require(event, 'id')
        wallet = await self._wallet_for(_require(event, 'host_id'))

        receipt = await self.record_receipt(
            campaign_id=_require(event, 'campaign_id'),
            host_address=wallet,
            timestamp=_event_time(event),
            impressions=1,
            clicks=0,
            dwell_ms=event.get('dwell_ms') or DEFAULT_IMPRESSION_DWELL_MS,
            fingerprint=event.get('fingerprint') or event.get('ip_address'),
            signature=f"IMP_{event_id}",
        )
        logger.info(f"Created receipt {receipt.id} for impression {event_id}")
        return receipt

    async def receipt_from_click(self, event: dict) -> Receipt:
        """
        Attach a click to the host's latest unprocessed receipt for the
        campaign, or create a click-only receipt if there is none.
        """
        event_id = _require(event, 'id')
        campaign_id = int(_require(event, 'campaign_id'))
        wallet = await self._wallet_for(_require(event, 'host_id'))

        signature = f"CLK_{event_id}"
        existing = await self.repos.receipts.get_by_signature(signature)
        if existing:
            return existing

        latest = await self.repos.receipts.find_latest_unprocessed(campaign_id, wallet)
        if latest and await self.repos.receipts.add_click(latest.id):
            logger.info(f"Added click {event_id} to receipt {latest.id}")
            latest.clicks += 1
            return latest

        receipt = await self.record_receipt(
            campaign_id=campaign_id,
            host_address=wallet,
            timestamp=_event_time(event),
            impressions=0,
            clicks=1,
            dwell_ms=DEFAULT_CLICK_DWELL_MS,
            fingerprint=event.get('fingerprint') or event.get('ip_address'),
            signature=signature,
        )
        logger.info(f"Created click-only receipt {receipt.id} for click {event_id}")
        return receipt

    async def validate_integration(self) -> dict:
        """
        Check that tracking and settlement are actually connected.

        Returns:
            {'is_valid': bool, 'issues': [str]}
        """
        issues = []

        missing = await self.repos.hosts.count_missing_wallets()
        if missing > 0:
            issues.append(f"{missing} hosts missing wallet addresses")

        since = utcnow() - timedelta(hours=1)
        active = await self.repos.campaigns.list_active()
        with_receipts = await self.repos.receipts.campaigns_with_receipts_since(since)
        idle = [c.id for c in active if c.id not in with_receipts]
        if idle:
            issues.append(
                f"{len(idle)} active campaigns with no receipts in the last hour: {idle}"
            )

        if self.keeper is None:
            issues.append("Keeper service not initialized")
        elif not self.keeper.status()['running']:
            issues.append("Keeper service not running")

        if issues:
            logger.warning(f"Integration issues detected: {issues}")
        return {'is_valid': not issues, 'issues': issues}
