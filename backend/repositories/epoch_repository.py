"""
Epoch Repository - PostgreSQL storage for settlement epochs

The settlement engine is the only writer. Status transitions are
conditional updates (WHERE status = expected) so a stale caller can never
move an epoch backwards.

commit_generation writes the epoch, its payouts, the receipt consumption
and the campaign spend in ONE transaction: either all of it is visible or
none of it is.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Sequence

import asyncpg

from models.domain.epoch import Epoch, EpochPayout, EpochStatus
from services.errors import EpochAlreadyFinalizedError, ReceiptConflictError

logger = logging.getLogger(__name__)

EPOCH_COLUMNS = """
    id, campaign_id, epoch, merkle_root, allocated_amount, claimed_amount,
    platform_fee, status, total_receipts, total_impressions, total_clicks, host_count,
    submitted_at, submit_tx_hash, distributed_at, distribute_tx_hash,
    last_error, created_at, updated_at
"""


def row_to_epoch(row) -> Epoch:
    return Epoch(
        campaign_id=row['campaign_id'],
        epoch=row['epoch'],
        merkle_root=row['merkle_root'],
        allocated_amount=row['allocated_amount'],
        claimed_amount=row['claimed_amount'],
        platform_fee=row['platform_fee'],
        status=EpochStatus(row['status']),
        total_receipts=row['total_receipts'],
        total_impressions=row['total_impressions'],
        total_clicks=row['total_clicks'],
        host_count=row['host_count'],
        submitted_at=row['submitted_at'],
        submit_tx_hash=row['submit_tx_hash'],
        distributed_at=row['distributed_at'],
        distribute_tx_hash=row['distribute_tx_hash'],
        last_error=row['last_error'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


class EpochRepository:
    """Repository for Epoch domain model"""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(self, epoch_id: str) -> Optional[Epoch]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT {EPOCH_COLUMNS} FROM settlement.epochs WHERE id = $1
            """, epoch_id)
            return row_to_epoch(row) if row else None

    async def list_by_status(self, status: EpochStatus, limit: int = 10) -> List[Epoch]:
        """Epochs in a status, oldest window first"""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {EPOCH_COLUMNS} FROM settlement.epochs
                WHERE status = $1
                ORDER BY epoch ASC, campaign_id ASC
                LIMIT $2
            """, status.value, limit)
            return [row_to_epoch(row) for row in rows]

    async def list_by_campaign(self, campaign_id: int) -> List[Epoch]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {EPOCH_COLUMNS} FROM settlement.epochs
                WHERE campaign_id = $1
                ORDER BY epoch ASC
            """, campaign_id)
            return [row_to_epoch(row) for row in rows]

    # =========================================================================
    # GENERATION (atomic unit)
    # =========================================================================

    async def commit_generation(
        self,
        epoch: Epoch,
        payouts: Sequence[EpochPayout],
        receipt_ids: Sequence[int],
        spend: Decimal,
        receipt_clicks: Optional[Sequence[int]] = None
    ) -> Epoch:
        """
        Persist a generated epoch as one transaction.

        1. Refuse if the epoch exists in any state but PENDING
        2. Drop a PENDING leftover (payouts cascade, receipts released)
        3. Insert epoch + payouts
        4. Mark exactly `receipt_ids` processed (all must still be unprocessed
           and, when `receipt_clicks` is given, still carry those click counts)
        5. Add `spend` to the campaign, completing it when exhausted

        Raises:
            EpochAlreadyFinalizedError: epoch already committed
            ReceiptConflictError: a receipt was consumed concurrently
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow("""
                    SELECT status FROM settlement.epochs WHERE id = $1 FOR UPDATE
                """, epoch.id)

                if existing and existing['status'] != EpochStatus.PENDING.value:
                    raise EpochAlreadyFinalizedError(epoch.id, existing['status'])

                if existing:
                    logger.warning(f"Replacing pending epoch {epoch.id}")
                    await conn.execute("""
                        UPDATE settlement.receipts
                        SET processed = false, epoch_id = NULL
                        WHERE epoch_id = $1
                    """, epoch.id)
                    await conn.execute("""
                        DELETE FROM settlement.epochs WHERE id = $1
                    """, epoch.id)

                row = await conn.fetchrow(f"""
                    INSERT INTO settlement.epochs (
                        id, campaign_id, epoch, merkle_root, allocated_amount,
                        claimed_amount, platform_fee, status, total_receipts,
                        total_impressions, total_clicks, host_count
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    RETURNING {EPOCH_COLUMNS}
                """,
                    epoch.id,
                    epoch.campaign_id,
                    epoch.epoch,
                    epoch.merkle_root,
                    epoch.allocated_amount,
                    epoch.claimed_amount,
                    epoch.platform_fee,
                    epoch.status.value,
                    epoch.total_receipts,
                    epoch.total_impressions,
                    epoch.total_clicks,
                    epoch.host_count
                )

                await conn.executemany("""
                    INSERT INTO settlement.epoch_payouts (
                        epoch_id, leaf_index, campaign_id, epoch, host_address,
                        amount, impressions, clicks, proof, leaf
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """, [
                    (
                        p.epoch_id, p.index, p.campaign_id, p.epoch, p.host_address,
                        p.amount, p.impressions, p.clicks, list(p.proof), p.leaf
                    )
                    for p in payouts
                ])

                if receipt_clicks is None:
                    result = await conn.execute("""
                        UPDATE settlement.receipts
                        SET processed = true, epoch_id = $1
                        WHERE id = ANY($2::bigint[]) AND NOT processed
                    """, epoch.id, list(receipt_ids))
                else:
                    # A click attached after the aggregate read changes the row
                    result = await conn.execute("""
                        UPDATE settlement.receipts r
                        SET processed = true, epoch_id = $1
                        FROM unnest($2::bigint[], $3::int[]) AS seen(id, clicks)
                        WHERE r.id = seen.id
                          AND r.clicks = seen.clicks
                          AND NOT r.processed
                    """, epoch.id, list(receipt_ids), list(receipt_clicks))

                marked = int(result.split()[-1])
                if marked != len(receipt_ids):
                    raise ReceiptConflictError(
                        f"Epoch {epoch.id}: marked {marked} of {len(receipt_ids)} receipts, "
                        f"the rest were consumed or changed concurrently"
                    )

                if spend > 0:
                    await conn.execute("""
                        UPDATE settlement.campaigns
                        SET spent_to_date = spent_to_date + $2,
                            status = CASE
                                WHEN spent_to_date + $2 >= total_budget THEN 'completed'
                                ELSE status
                            END,
                            updated_at = now()
                        WHERE id = $1
                    """, epoch.campaign_id, spend)

                logger.info(
                    f"Committed epoch {epoch.id}: {len(payouts)} payouts, "
                    f"{marked} receipts, root={epoch.merkle_root}"
                )
                return row_to_epoch(row)

    async def discard_pending(self, epoch_id: str) -> bool:
        """Delete a PENDING epoch (payouts cascade) and release its receipts"""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute("""
                    DELETE FROM settlement.epochs WHERE id = $1 AND status = 'pending'
                """, epoch_id)
                if result != "DELETE 1":
                    return False
                await conn.execute("""
                    UPDATE settlement.receipts
                    SET processed = false, epoch_id = NULL
                    WHERE epoch_id = $1
                """, epoch_id)
                return True

    # =========================================================================
    # STATUS TRANSITIONS
    # =========================================================================

    async def mark_submitted(self, epoch_id: str, tx_hash: str, at: datetime) -> bool:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE settlement.epochs
                SET status = 'submitted', submitted_at = $2, submit_tx_hash = $3,
                    last_error = NULL, updated_at = now()
                WHERE id = $1 AND status = 'ready'
            """, epoch_id, at, tx_hash)
            return result == "UPDATE 1"

    async def mark_distributed(self, epoch_id: str, tx_hash: Optional[str], at: datetime) -> bool:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE settlement.epochs
                SET status = 'distributed', distributed_at = $2,
                    distribute_tx_hash = COALESCE($3, distribute_tx_hash),
                    last_error = NULL, updated_at = now()
                WHERE id = $1 AND status = 'submitted'
            """, epoch_id, at, tx_hash)
            return result == "UPDATE 1"

    async def mark_failed(self, epoch_id: str, expected: EpochStatus, error: str) -> bool:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE settlement.epochs
                SET status = 'failed', last_error = $3, updated_at = now()
                WHERE id = $1 AND status = $2
            """, epoch_id, expected.value, error)
            return result == "UPDATE 1"

    async def record_error(self, epoch_id: str, error: str):
        """Note a transient failure without changing status"""
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                UPDATE settlement.epochs
                SET last_error = $2, updated_at = now()
                WHERE id = $1
            """, epoch_id, error)
