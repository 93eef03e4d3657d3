"""
Datetime utility functions for hour-aligned settlement epochs

An epoch number is floor(unix_time / 3600); epoch N covers
[N*3600s, (N+1)*3600s) in UTC.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple
import logging

logger = logging.getLogger(__name__)

EPOCH_SECONDS = 3600


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive datetimes are assumed to already be UTC (asyncpg returns naive
    values for `timestamp` columns).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_number(dt: datetime) -> int:
    """Hour-aligned epoch number containing dt"""
    return int(ensure_utc(dt).timestamp()) // EPOCH_SECONDS


def current_epoch(now: Optional[datetime] = None) -> int:
    """Epoch number of the hour in progress"""
    return epoch_number(now or utcnow())


def epoch_bounds(epoch: int) -> Tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of an epoch"""
    start = datetime.fromtimestamp(epoch * EPOCH_SECONDS, tz=timezone.utc)
    return start, start + timedelta(seconds=EPOCH_SECONDS)


def epoch_id(campaign_id: int, epoch: int) -> str:
    """Globally unique epoch id: '{campaign_id}_{epoch}'"""
    return f"{campaign_id}_{epoch}"


def parse_epoch_id(value: str) -> Tuple[int, int]:
    """
    Split an epoch id into (campaign_id, epoch).

    Raises:
        ValueError: If the id is not in '{campaign_id}_{epoch}' form
    """
    try:
        campaign_part, epoch_part = value.split('_')
        return int(campaign_part), int(epoch_part)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid epoch id: {value!r}")
