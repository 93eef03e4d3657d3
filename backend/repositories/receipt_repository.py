"""
Receipt Repository - PostgreSQL storage for engagement receipts

Receipts are append-only. The only mutations are:
- add_click on a still-unprocessed receipt (tracking bridge)
- processed/epoch_id, set inside EpochRepository.commit_generation
- release, used by reconciliation to undo an orphaned consumption
"""
import logging
from datetime import datetime
from typing import Optional, List, Tuple, Set

import asyncpg

from models.domain.receipt import Receipt

logger = logging.getLogger(__name__)

RECEIPT_COLUMNS = """
    id, campaign_id, host_address, timestamp, impressions, clicks,
    dwell_ms, viewer_fingerprint, signature, processed, epoch_id, created_at
"""


def row_to_receipt(row) -> Receipt:
    return Receipt(
        id=row['id'],
        campaign_id=row['campaign_id'],
        host_address=row['host_address'],
        timestamp=row['timestamp'],
        impressions=row['impressions'],
        clicks=row['clicks'],
        dwell_ms=row['dwell_ms'],
        viewer_fingerprint=row['viewer_fingerprint'],
        signature=row['signature'],
        processed=row['processed'],
        epoch_id=row['epoch_id'],
        created_at=row['created_at'],
    )


class ReceiptRepository:
    """Repository for Receipt domain model"""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get_by_signature(self, signature: str) -> Optional[Receipt]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {RECEIPT_COLUMNS} FROM settlement.receipts
                WHERE signature = $1
            """, signature)
            return row_to_receipt(row) if row else None

    async def find_unprocessed(
        self,
        campaign_id: int,
        start: datetime,
        end: datetime
    ) -> List[Receipt]:
        """
        Unprocessed receipts of a campaign in [start, end).

        Ordered by timestamp, then insertion id, so aggregation is
        reproducible.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {RECEIPT_COLUMNS} FROM settlement.receipts
                WHERE campaign_id = $1
                  AND timestamp >= $2 AND timestamp < $3
                  AND NOT processed
                ORDER BY timestamp ASC, id ASC
            """, campaign_id, start, end)
            return [row_to_receipt(row) for row in rows]

    async def find_unprocessed_for_host(
        self,
        host_address: str,
        start: datetime,
        end: datetime
    ) -> List[Receipt]:
        """Unprocessed receipts of one host across campaigns, same ordering"""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {RECEIPT_COLUMNS} FROM settlement.receipts
                WHERE host_address = $1
                  AND timestamp >= $2 AND timestamp < $3
                  AND NOT processed
                ORDER BY timestamp ASC, id ASC
            """, host_address, start, end)
            return [row_to_receipt(row) for row in rows]

    async def find_latest_unprocessed(
        self,
        campaign_id: int,
        host_address: str
    ) -> Optional[Receipt]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {RECEIPT_COLUMNS} FROM settlement.receipts
                WHERE campaign_id = $1 AND host_address = $2 AND NOT processed
                ORDER BY timestamp DESC, id DESC
                LIMIT 1
            """, campaign_id, host_address)
            return row_to_receipt(row) if row else None

    async def pending_windows(
        self,
        before: datetime,
        limit: int = 100,
        since: Optional[datetime] = None
    ) -> List[Tuple[int, int]]:
        """
        (campaign_id, epoch) pairs with unprocessed receipts in [since, before).

        Windows whose epoch is already finalized are skipped: their late
        receipts can never be settled. The `limit` newest windows are
        selected so stale ones cannot crowd out recent hours, and returned
        oldest first so a missed tick is caught up in order.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT campaign_id, epoch FROM (
                    SELECT r.campaign_id,
                           floor(extract(epoch FROM r.timestamp) / 3600)::bigint AS epoch
                    FROM settlement.receipts r
                    WHERE NOT r.processed AND r.timestamp < $1
                      AND ($3::timestamptz IS NULL OR r.timestamp >= $3)
                    GROUP BY r.campaign_id, epoch
                ) w
                WHERE NOT EXISTS (
                    SELECT 1 FROM settlement.epochs e
                    WHERE e.campaign_id = w.campaign_id
                      AND e.epoch = w.epoch
                      AND e.status <> 'pending'
                )
                ORDER BY epoch DESC, campaign_id DESC
                LIMIT $2
            """, before, limit, since)
            windows = [(row['campaign_id'], row['epoch']) for row in rows]
            return sorted(windows, key=lambda w: (w[1], w[0]))

    async def find_orphaned_epoch_ids(self) -> List[str]:
        """Epoch ids referenced by processed receipts but missing from epochs"""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT DISTINCT r.epoch_id
                FROM settlement.receipts r
                LEFT JOIN settlement.epochs e ON e.id = r.epoch_id
                WHERE r.processed AND r.epoch_id IS NOT NULL AND e.id IS NULL
                ORDER BY r.epoch_id
            """)
            return [row['epoch_id'] for row in rows]

    async def campaigns_with_receipts_since(self, since: datetime) -> Set[int]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT DISTINCT campaign_id FROM settlement.receipts
                WHERE timestamp >= $1
            """, since)
            return {row['campaign_id'] for row in rows}

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    async def create(self, receipt: Receipt) -> Receipt:
        """
        Insert a receipt.

        A receipt with a signature that already exists is not inserted
        again; the stored receipt is returned instead.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                INSERT INTO settlement.receipts (
                    campaign_id, host_address, timestamp, impressions, clicks,
                    dwell_ms, viewer_fingerprint, signature
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (signature) DO NOTHING
                RETURNING {RECEIPT_COLUMNS}
            """,
                receipt.campaign_id,
                receipt.host_address,
                receipt.timestamp,
                receipt.impressions,
                receipt.clicks,
                receipt.dwell_ms,
                receipt.viewer_fingerprint,
                receipt.signature
            )

        if row is None:
            logger.debug(f"Receipt {receipt.signature} already recorded")
            return await self.get_by_signature(receipt.signature)
        return row_to_receipt(row)

    async def add_click(self, receipt_id: int) -> bool:
        """Increment clicks on an unprocessed receipt; False if it was consumed"""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE settlement.receipts
                SET clicks = clicks + 1
                WHERE id = $1 AND NOT processed
            """, receipt_id)
            return result == "UPDATE 1"

    async def release(self, epoch_id: str) -> int:
        """Return receipts consumed by epoch_id to the unprocessed pool"""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE settlement.receipts
                SET processed = false, epoch_id = NULL
                WHERE epoch_id = $1
            """, epoch_id)
            return int(result.split()[-1])
