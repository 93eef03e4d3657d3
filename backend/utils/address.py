"""
Wallet address normalization.

Host addresses are identity keys: stored and compared as lowercase
0x-prefixed 20-byte hex strings.
"""
from typing import Optional

from eth_utils import is_address, to_canonical_address, to_normalized_address


def normalize_address(address: Optional[str]) -> str:
    """
    Lowercase, 0x-prefixed form of a wallet address.

    Raises:
        ValueError: If the address is empty or not a valid 20-byte hex address
    """
    if not address or not isinstance(address, str):
        raise ValueError("Wallet address is required")
    address = address.strip()
    if not is_address(address):
        raise ValueError(f"Invalid wallet address: {address!r}")
    return to_normalized_address(address)


def address_bytes(address: str) -> bytes:
    """20 raw bytes of an address (for abi.encodePacked layouts)"""
    return to_canonical_address(normalize_address(address))
