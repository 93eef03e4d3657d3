#!/usr/bin/env python3
"""
Bridge Worker Runner
====================

Runs the BridgeWorker that consumes tracking events from Redis and records
settlement receipts.

Queue: queue:tracking:events (TRACKING_QUEUE)
Output: settlement.receipts in PostgreSQL

Usage:
    python run_bridge_worker.py
"""

import asyncio
import os
import sys
import logging
from pathlib import Path

from dotenv import load_dotenv

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from workers.bridge_worker import main

env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)

def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
