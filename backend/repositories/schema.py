"""
Settlement schema bootstrap

All tables live in the `settlement` schema. Amounts are NUMERIC(20, 6) so
Decimal values round-trip through asyncpg without floats.
"""
import logging

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS settlement;

CREATE TABLE IF NOT EXISTS settlement.campaigns (
    id              BIGINT PRIMARY KEY,
    total_budget    NUMERIC(20, 6) NOT NULL,
    spent_to_date   NUMERIC(20, 6) NOT NULL DEFAULT 0,
    end_date        TIMESTAMPTZ,
    status          TEXT NOT NULL DEFAULT 'active',
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS settlement.host_profiles (
    host_id         TEXT PRIMARY KEY,
    wallet_address  TEXT,
    is_opted_in     BOOLEAN NOT NULL DEFAULT true
);

CREATE TABLE IF NOT EXISTS settlement.receipts (
    id                  BIGSERIAL PRIMARY KEY,
    campaign_id         BIGINT NOT NULL,
    host_address        TEXT NOT NULL,
    timestamp           TIMESTAMPTZ NOT NULL,
    impressions         INTEGER NOT NULL DEFAULT 0 CHECK (impressions >= 0),
    clicks              INTEGER NOT NULL DEFAULT 0 CHECK (clicks >= 0),
    dwell_ms            INTEGER,
    viewer_fingerprint  TEXT,
    signature           TEXT UNIQUE,
    processed           BOOLEAN NOT NULL DEFAULT false,
    epoch_id            TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS receipts_unprocessed_idx
    ON settlement.receipts (campaign_id, timestamp, id) WHERE NOT processed;
CREATE INDEX IF NOT EXISTS receipts_host_idx
    ON settlement.receipts (host_address, timestamp);
CREATE INDEX IF NOT EXISTS receipts_epoch_idx
    ON settlement.receipts (epoch_id);

CREATE TABLE IF NOT EXISTS settlement.epochs (
    id                  TEXT PRIMARY KEY,
    campaign_id         BIGINT NOT NULL,
    epoch               BIGINT NOT NULL,
    merkle_root         TEXT,
    allocated_amount    NUMERIC(20, 6) NOT NULL DEFAULT 0,
    claimed_amount      NUMERIC(20, 6) NOT NULL DEFAULT 0,
    platform_fee        NUMERIC(20, 6) NOT NULL DEFAULT 0,
    status              TEXT NOT NULL DEFAULT 'pending',
    total_receipts      INTEGER NOT NULL DEFAULT 0,
    total_impressions   BIGINT NOT NULL DEFAULT 0,
    total_clicks        BIGINT NOT NULL DEFAULT 0,
    host_count          INTEGER NOT NULL DEFAULT 0,
    submitted_at        TIMESTAMPTZ,
    submit_tx_hash      TEXT,
    distributed_at      TIMESTAMPTZ,
    distribute_tx_hash  TEXT,
    last_error          TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (campaign_id, epoch)
);

ALTER TABLE settlement.epochs
    ADD COLUMN IF NOT EXISTS platform_fee NUMERIC(20, 6) NOT NULL DEFAULT 0;

CREATE INDEX IF NOT EXISTS epochs_status_idx ON settlement.epochs (status, epoch);

CREATE TABLE IF NOT EXISTS settlement.epoch_payouts (
    epoch_id            TEXT NOT NULL REFERENCES settlement.epochs (id) ON DELETE CASCADE,
    leaf_index          INTEGER NOT NULL,
    campaign_id         BIGINT NOT NULL,
    epoch               BIGINT NOT NULL,
    host_address        TEXT NOT NULL,
    amount              NUMERIC(20, 6) NOT NULL,
    impressions         INTEGER NOT NULL DEFAULT 0,
    clicks              INTEGER NOT NULL DEFAULT 0,
    proof               TEXT[] NOT NULL DEFAULT '{}',
    leaf                TEXT,
    claimed             BOOLEAN NOT NULL DEFAULT false,
    claimed_tx_hash     TEXT,
    claimed_at          TIMESTAMPTZ,
    PRIMARY KEY (epoch_id, leaf_index)
);

CREATE INDEX IF NOT EXISTS epoch_payouts_host_idx
    ON settlement.epoch_payouts (host_address, claimed);
"""


async def ensure_schema(db_pool: asyncpg.Pool):
    """Create the settlement schema and tables if missing (idempotent)"""
    async with db_pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Settlement schema ready")
