"""
Payout Repository - PostgreSQL storage for per-host epoch payouts

Rows are created only by EpochRepository.commit_generation. Afterwards the
only mutation is mark_claimed once the ledger confirms a disbursement.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Sequence, Tuple, Dict, Any

import asyncpg

from models.domain.epoch import EpochPayout
from utils.money import ZERO

logger = logging.getLogger(__name__)

PAYOUT_COLUMNS = """
    p.epoch_id, p.leaf_index, p.campaign_id, p.epoch, p.host_address, p.amount,
    p.impressions, p.clicks, p.proof, p.leaf, p.claimed, p.claimed_tx_hash,
    p.claimed_at
"""


def row_to_payout(row) -> EpochPayout:
    return EpochPayout(
        epoch_id=row['epoch_id'],
        campaign_id=row['campaign_id'],
        epoch=row['epoch'],
        index=row['leaf_index'],
        host_address=row['host_address'],
        amount=row['amount'],
        impressions=row['impressions'],
        clicks=row['clicks'],
        proof=list(row['proof'] or []),
        leaf=row['leaf'],
        claimed=row['claimed'],
        claimed_tx_hash=row['claimed_tx_hash'],
        claimed_at=row['claimed_at'],
    )


class PayoutRepository:
    """Repository for EpochPayout domain model"""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def list_by_epoch(self, epoch_id: str) -> List[EpochPayout]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {PAYOUT_COLUMNS} FROM settlement.epoch_payouts p
                WHERE p.epoch_id = $1
                ORDER BY p.leaf_index ASC
            """, epoch_id)
            return [row_to_payout(row) for row in rows]

    async def list_unclaimed(self, epoch_id: str, limit: int = 100) -> List[EpochPayout]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT {PAYOUT_COLUMNS} FROM settlement.epoch_payouts p
                WHERE p.epoch_id = $1 AND NOT p.claimed
                ORDER BY p.leaf_index ASC
                LIMIT $2
            """, epoch_id, limit)
            return [row_to_payout(row) for row in rows]

    async def mark_claimed(
        self,
        epoch_id: str,
        indices: Sequence[int],
        tx_hash: str,
        at: datetime
    ) -> Decimal:
        """
        Mark leaves claimed and add their total to the epoch's claimed_amount.

        Already-claimed leaves are skipped. Returns the newly claimed total.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch("""
                    UPDATE settlement.epoch_payouts
                    SET claimed = true, claimed_tx_hash = $3, claimed_at = $4
                    WHERE epoch_id = $1 AND leaf_index = ANY($2::int[]) AND NOT claimed
                    RETURNING amount
                """, epoch_id, list(indices), tx_hash, at)

                claimed = sum((row['amount'] for row in rows), ZERO)
                if claimed > 0:
                    await conn.execute("""
                        UPDATE settlement.epochs
                        SET claimed_amount = claimed_amount + $2, updated_at = now()
                        WHERE id = $1
                    """, epoch_id, claimed)
                return claimed

    # =========================================================================
    # HOST QUERIES
    # =========================================================================

    async def host_totals(self, host_address: str) -> Dict[str, Any]:
        """Settled earnings of one host, split by claim status"""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT COALESCE(SUM(amount), 0) AS total,
                       COALESCE(SUM(amount) FILTER (WHERE claimed), 0) AS claimed,
                       COUNT(*) AS payouts,
                       COUNT(*) FILTER (WHERE claimed) AS claimed_payouts
                FROM settlement.epoch_payouts
                WHERE host_address = $1
            """, host_address)
            return {
                'total': Decimal(row['total']),
                'claimed': Decimal(row['claimed']),
                'payouts': row['payouts'],
                'claimed_payouts': row['claimed_payouts'],
            }

    async def list_unclaimed_by_host(
        self,
        host_address: str,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[int, List[Tuple[EpochPayout, str, str]]]:
        """
        Page of a host's unclaimed payouts, newest epoch first.

        Returns:
            (total count, [(payout, merkle_root, epoch status), ...])
        """
        async with self.db_pool.acquire() as conn:
            total = await conn.fetchval("""
                SELECT COUNT(*) FROM settlement.epoch_payouts
                WHERE host_address = $1 AND NOT claimed
            """, host_address)

            rows = await conn.fetch(f"""
                SELECT {PAYOUT_COLUMNS}, e.merkle_root, e.status AS epoch_status
                FROM settlement.epoch_payouts p
                JOIN settlement.epochs e ON e.id = p.epoch_id
                WHERE p.host_address = $1 AND NOT p.claimed
                ORDER BY p.epoch DESC, p.campaign_id ASC
                LIMIT $2 OFFSET $3
            """, host_address, limit, offset)

            return total, [
                (row_to_payout(row), row['merkle_root'], row['epoch_status'])
                for row in rows
            ]
