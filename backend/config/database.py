"""
Connection factories
====================

The keeper and the bridge worker open the same two connections: an asyncpg
pool onto the epoch store and a Redis job queue for tracking events. Both
are configured from Settings (POSTGRES_*, REDIS_URL).
"""
from dataclasses import dataclass
from typing import Optional

import asyncpg

from .settings import Settings, get_settings


@dataclass
class PostgresConfig:
    """Epoch store connection parameters."""
    host: str
    port: int
    user: str
    password: str
    database: str
    min_size: int = 2
    max_size: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> 'PostgresConfig':
        return cls(
            host=settings.postgres_host,
            port=settings.postgres_port,
            user=settings.postgres_user,
            password=settings.postgres_password,
            database=settings.postgres_db,
            min_size=settings.postgres_pool_min,
            max_size=settings.postgres_pool_max,
        )

    def pool_kwargs(self) -> dict:
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database,
            'min_size': self.min_size,
            'max_size': self.max_size,
        }


@dataclass
class RedisConfig:
    """Tracking queue connection parameters."""
    url: str
    queue_name: str

    @classmethod
    def from_settings(cls, settings: Settings) -> 'RedisConfig':
        return cls(url=settings.redis_url, queue_name=settings.tracking_queue)


def get_postgres_config(settings: Optional[Settings] = None) -> PostgresConfig:
    return PostgresConfig.from_settings(settings or get_settings())


def get_redis_config(settings: Optional[Settings] = None) -> RedisConfig:
    return RedisConfig.from_settings(settings or get_settings())


async def create_postgres_pool(settings: Optional[Settings] = None) -> asyncpg.Pool:
    """Open the epoch store pool."""
    config = get_postgres_config(settings)
    return await asyncpg.create_pool(**config.pool_kwargs())


async def create_job_queue(settings: Optional[Settings] = None):
    """Open and connect the tracking job queue."""
    from services.job_queue import JobQueue
    queue = JobQueue(get_redis_config(settings).url)
    await queue.connect()
    return queue
