"""
Redis-based job queue for tracking events

Uses LPUSH/BRPOP for efficient queue consumption

Queues:
- queue:tracking:events - impression / click events from the tracking
  endpoint, consumed by the bridge worker
"""
import json
import redis.asyncio as redis
from typing import Optional

TRACKING_QUEUE = 'queue:tracking:events'


class JobQueue:
    """
    Redis-based job queue

    Producers LPUSH JSON jobs, workers BRPOP them (blocking pop).
    Each job is consumed by exactly ONE worker (round-robin).
    """

    def __init__(self, redis_url: str):
        self.redis = None
        self.redis_url = redis_url

    async def connect(self):
        """Initialize Redis connection"""
        self.redis = await redis.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        """Close Redis connection"""
        if self.redis:
            await self.redis.close()

    async def enqueue(self, queue_name: str, job: dict):
        """
        Add job to queue

        Example:
            await queue.enqueue(TRACKING_QUEUE, {
                'type': 'impression',
                'event': {'id': 'evt_1', 'campaign_id': 7, 'host_id': 'h_42'}
            })
        """
        await self.redis.lpush(queue_name, json.dumps(job, default=str))

    async def dequeue(self, queue_name: str, timeout: int = 5) -> Optional[dict]:
        """
        Blocking pop from queue (BRPOP)

        Returns None on timeout
        """
        result = await self.redis.brpop(queue_name, timeout=timeout)
        if result:
            # result is a tuple: (queue_name, job_json)
            return json.loads(result[1])
        return None

    async def queue_length(self, queue_name: str) -> int:
        """Get current queue length"""
        return await self.redis.llen(queue_name)
