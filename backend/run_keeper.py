#!/usr/bin/env python3
"""
Keeper Runner
=============

Runs the hourly settlement keeper: generates epochs for closed hours,
optionally submits roots and distributes payouts through the ledger relayer.

Usage:
    python run_keeper.py                          # Periodic (keeper_interval_seconds)
    python run_keeper.py --once                   # One full pass, then exit
    python run_keeper.py --epoch 493812           # Generate one hour for all active campaigns
    python run_keeper.py --epoch 493812 --campaign 7
    python run_keeper.py --status                 # Print keeper configuration
"""

import os
import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path

from dotenv import load_dotenv

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import get_settings, create_postgres_pool
from repositories import Repositories, ensure_schema
from services.keeper import Keeper
from services.ledger_client import HttpLedgerClient
from services.settlement import SettlementService

env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)
logger = logging.getLogger('keeper-runner')


def parse_args():
    parser = argparse.ArgumentParser(description='Hourly settlement keeper')
    parser.add_argument('--once', action='store_true', help='Run one pass and exit')
    parser.add_argument('--epoch', type=int, help='Generate a single epoch number')
    parser.add_argument('--campaign', type=int, help='Restrict --epoch to one campaign')
    parser.add_argument('--status', action='store_true', help='Print keeper status and exit')
    return parser.parse_args()


async def main():
    args = parse_args()
    settings = get_settings()

    db_pool = await create_postgres_pool(settings)
    await ensure_schema(db_pool)

    ledger = HttpLedgerClient.from_settings(settings)
    settlement = SettlementService(Repositories.postgres(db_pool), ledger, settings)
    keeper = Keeper(settlement, settings)

    try:
        if args.status:
            print(json.dumps(keeper.status(), indent=2))
            return

        if args.epoch is not None:
            run = await keeper.run_manual(epoch=args.epoch, campaign_id=args.campaign)
            print(json.dumps(run.to_dict() if run else None, indent=2))
            return

        if args.once:
            run = await keeper.run_once()
            print(json.dumps(run.to_dict() if run else None, indent=2))
            return

        task = keeper.start()
        if task is None:
            logger.info("Keeper disabled (KEEPER_ENABLED=false), exiting")
            return
        await task

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("👋 Keeper shutting down")
    finally:
        await keeper.stop()
        await ledger.close()
        await db_pool.close()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
