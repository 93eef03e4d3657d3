"""
Campaign Repository - PostgreSQL view of the campaign collaborator

The settlement engine reads budgets and writes only spent_to_date (inside
the epoch commit) and status.
"""
import logging
from typing import Optional, List

import asyncpg

from models.domain.campaign import Campaign, CampaignStatus, HostProfile

logger = logging.getLogger(__name__)


def row_to_campaign(row) -> Campaign:
    return Campaign(
        id=row['id'],
        total_budget=row['total_budget'],
        spent_to_date=row['spent_to_date'],
        end_date=row['end_date'],
        status=CampaignStatus(row['status']),
    )


class CampaignRepository:
    """Repository for Campaign domain model"""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get(self, campaign_id: int) -> Optional[Campaign]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT id, total_budget, spent_to_date, end_date, status
                FROM settlement.campaigns WHERE id = $1
            """, campaign_id)
            return row_to_campaign(row) if row else None

    async def list_active(self) -> List[Campaign]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id, total_budget, spent_to_date, end_date, status
                FROM settlement.campaigns WHERE status = 'active'
                ORDER BY id
            """)
            return [row_to_campaign(row) for row in rows]

    async def upsert(self, campaign: Campaign) -> Campaign:
        """Mirror a campaign from the campaign collaborator"""
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO settlement.campaigns (id, total_budget, spent_to_date, end_date, status)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE
                SET total_budget = EXCLUDED.total_budget,
                    end_date = EXCLUDED.end_date,
                    status = EXCLUDED.status,
                    updated_at = now()
            """, campaign.id, campaign.total_budget, campaign.spent_to_date,
                campaign.end_date, campaign.status.value)
        return campaign

    async def mark_completed(self, campaign_id: int) -> bool:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE settlement.campaigns
                SET status = 'completed', updated_at = now()
                WHERE id = $1 AND status <> 'completed'
            """, campaign_id)
            return result == "UPDATE 1"


class HostRepository:
    """Repository for HostProfile (wallet lookup for the tracking bridge)"""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def get(self, host_id: str) -> Optional[HostProfile]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT host_id, wallet_address, is_opted_in
                FROM settlement.host_profiles WHERE host_id = $1
            """, host_id)
            if not row:
                return None
            return HostProfile(
                host_id=row['host_id'],
                wallet_address=row['wallet_address'],
                is_opted_in=row['is_opted_in'],
            )

    async def upsert(self, host: HostProfile) -> HostProfile:
        async with self.db_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO settlement.host_profiles (host_id, wallet_address, is_opted_in)
                VALUES ($1, $2, $3)
                ON CONFLICT (host_id) DO UPDATE
                SET wallet_address = EXCLUDED.wallet_address,
                    is_opted_in = EXCLUDED.is_opted_in
            """, host.host_id, host.wallet_address, host.is_opted_in)
        return host

    async def count_missing_wallets(self) -> int:
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT COUNT(*) FROM settlement.host_profiles
                WHERE is_opted_in AND wallet_address IS NULL
            """)
