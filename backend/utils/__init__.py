"""
Utility functions
"""
from .datetime_utils import (
    utcnow, ensure_utc, epoch_number, current_epoch, epoch_bounds,
    epoch_id, parse_epoch_id,
)
from .money import quantize, to_units, from_units, format_amount
from .address import normalize_address

__all__ = [
    'utcnow', 'ensure_utc', 'epoch_number', 'current_epoch', 'epoch_bounds',
    'epoch_id', 'parse_epoch_id',
    'quantize', 'to_units', 'from_units', 'format_amount',
    'normalize_address',
]
