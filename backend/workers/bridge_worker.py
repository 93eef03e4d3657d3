"""
Bridge Worker - Tracking events from Redis into settlement receipts

Queue: queue:tracking:events
Jobs:  {'type': 'impression' | 'click', 'event': {...}}

Missing wallets and malformed events are logged and dropped: the tracking
side keeps its own copy, and a replay after the host sets a wallet is
idempotent through the event signature.
"""
import asyncio
import logging
from typing import Tuple

from config import get_settings, create_postgres_pool, create_job_queue
from repositories import Repositories, ensure_schema
from services.errors import InvalidReceiptError, MissingWalletError
from services.integration_bridge import IntegrationBridge
from services.job_queue import JobQueue
from services.worker_base import BaseWorker

logger = logging.getLogger(__name__)

EVENT_TYPES = ('impression', 'click')


class BridgeWorker(BaseWorker):
    """Consumes tracking events and records receipts"""

    def __init__(self, bridge: IntegrationBridge, job_queue: JobQueue, queue_name: str):
        super().__init__(job_queue, worker_name='bridge', queue_name=queue_name)
        self.bridge = bridge

    async def get_state(self, job: dict) -> dict:
        return {
            'type': job.get('type'),
            'event': job.get('event') or {},
        }

    async def should_process(self, state: dict) -> Tuple[bool, str]:
        if state['type'] not in EVENT_TYPES:
            return False, f"unknown event type {state['type']!r}"
        if not state['event'].get('id'):
            return False, "event without id"
        return True, state['type']

    async def process(self, job: dict, state: dict):
        if state['type'] == 'impression':
            await self.bridge.receipt_from_impression(state['event'])
        else:
            await self.bridge.receipt_from_click(state['event'])

    async def handle_error(self, job: dict, error: Exception):
        if isinstance(error, MissingWalletError):
            logger.warning(f"[{self.worker_name}] Dropping {job.get('type')} event: {error}")
        elif isinstance(error, InvalidReceiptError):
            logger.warning(f"[{self.worker_name}] Invalid {job.get('type')} event: {error}")
        else:
            await super().handle_error(job, error)


async def main():
    """Run the bridge worker."""
    settings = get_settings()
    db_pool = await create_postgres_pool(settings)
    await ensure_schema(db_pool)
    job_queue = await create_job_queue(settings)

    bridge = IntegrationBridge(Repositories.postgres(db_pool))
    worker = BridgeWorker(bridge, job_queue, settings.tracking_queue)

    try:
        await worker.start()
    finally:
        await job_queue.close()
        await db_pool.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )
    asyncio.run(main())
