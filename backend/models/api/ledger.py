"""
Pydantic models for the ledger relayer wire format

Amounts travel as integer smallest units (strings, to survive JSON number
precision limits in other runtimes) next to the human-readable decimal.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class SubmitRootRequest(BaseModel):
    """Publish an epoch commitment"""
    epoch_id: str
    merkle_root: str
    total_amount: str            # decimal string, 6 places
    total_amount_units: str      # integer string
    options: Dict[str, Any] = Field(default_factory=dict)


class DistributionEntry(BaseModel):
    """One leaf being disbursed"""
    index: int
    host_address: str
    amount: str
    amount_units: str
    proof: List[str]


class BatchDistributeRequest(BaseModel):
    epoch_id: str
    merkle_root: str
    entries: List[DistributionEntry]
    options: Dict[str, Any] = Field(default_factory=dict)


class LedgerReceipt(BaseModel):
    """Relayer confirmation of a submitted transaction"""
    tx_hash: str
    status: str = "confirmed"
    block_number: Optional[int] = None
    merkle_root: Optional[str] = None    # echoed on submit / conflict


class LedgerErrorBody(BaseModel):
    """Relayer error payload"""
    error: str
    merkle_root: Optional[str] = None
