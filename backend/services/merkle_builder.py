"""
MerkleBuilder - Commitment over an epoch's payout set

Leaf encoding (Solidity abi.encodePacked layout):
    keccak256(uint256 index || address host || uint256 amount_units)
amount_units is the integer amount in 10^-6 token units; Decimal amounts are
converted before hashing, never floats.

Internal nodes use the sorted-pair rule:
    keccak256(min(a, b) || max(a, b))
so a proof is just the list of siblings; verifiers need no left/right flags.
An odd node at the end of a level is promoted unchanged. A single leaf is
its own root with an empty proof.

Usage:
    commitment = build_commitment(allocation.payouts)
    commitment.root            # '0x…'
    commitment.proofs[0]       # ['0x…', …]
    verify_proof(commitment.leaves[0], commitment.proofs[0], commitment.root)

Pure: identical payout lists always produce identical roots and proofs.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Sequence, Union

from eth_utils import keccak

from utils.address import address_bytes
from utils.money import to_units

HexStr = str


def _to_bytes(value: Union[bytes, HexStr]) -> bytes:
    if isinstance(value, bytes):
        return value
    return bytes.fromhex(value[2:] if value.startswith('0x') else value)


def to_hex(value: bytes) -> HexStr:
    return '0x' + value.hex()


def encode_leaf(index: int, host_address: str, amount: Decimal) -> bytes:
    """keccak256(abi.encodePacked(uint256 index, address host, uint256 units))"""
    if index < 0:
        raise ValueError(f"Leaf index must be non-negative: {index}")
    units = to_units(amount)
    if units < 0:
        raise ValueError(f"Leaf amount must be non-negative: {amount}")
    packed = (
        index.to_bytes(32, 'big')
        + address_bytes(host_address)
        + units.to_bytes(32, 'big')
    )
    return keccak(packed)


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Sorted-pair node hash (OpenZeppelin MerkleProof compatible)"""
    return keccak(a + b) if a <= b else keccak(b + a)


def build_layers(leaves: Sequence[bytes]) -> List[List[bytes]]:
    """All tree levels, leaves first, root level last"""
    if not leaves:
        raise ValueError("Cannot build a Merkle tree without leaves")

    layers = [list(leaves)]
    while len(layers[-1]) > 1:
        level = layers[-1]
        parents = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                parents.append(hash_pair(level[i], level[i + 1]))
            else:
                parents.append(level[i])
        layers.append(parents)
    return layers


def proof_for(layers: List[List[bytes]], index: int) -> List[bytes]:
    """Sibling path from leaf `index` to the root"""
    if not 0 <= index < len(layers[0]):
        raise IndexError(f"Leaf index {index} out of range")

    proof = []
    for level in layers[:-1]:
        sibling = index - 1 if index % 2 else index + 1
        if sibling < len(level):
            proof.append(level[sibling])
        index //= 2
    return proof


def process_proof(leaf: Union[bytes, HexStr], proof: Sequence[Union[bytes, HexStr]]) -> bytes:
    computed = _to_bytes(leaf)
    for sibling in proof:
        computed = hash_pair(computed, _to_bytes(sibling))
    return computed


def verify_proof(
    leaf: Union[bytes, HexStr],
    proof: Sequence[Union[bytes, HexStr]],
    root: Union[bytes, HexStr]
) -> bool:
    """Recompute the root from a leaf and its proof"""
    return process_proof(leaf, proof) == _to_bytes(root)


def verify_payout(index: int, host_address: str, amount: Decimal, proof: Sequence[HexStr], root: HexStr) -> bool:
    """Verify an entitlement from its fields alone (what a claimant would do)"""
    return verify_proof(encode_leaf(index, host_address, amount), proof, root)


@dataclass
class Commitment:
    root: HexStr
    leaves: List[HexStr] = field(default_factory=list)
    proofs: List[List[HexStr]] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.leaves)


def build_commitment(payouts: Sequence) -> Commitment:
    """
    Commit to an indexed payout list.

    Args:
        payouts: objects with index, host_address and amount, where
                 payouts[i].index == i (the allocator's sorted order)

    Raises:
        ValueError: empty list or indices not 0..n-1 in order
    """
    for position, payout in enumerate(payouts):
        if payout.index != position:
            raise ValueError(
                f"Payout {payout.host_address} has index {payout.index}, expected {position}"
            )

    leaves = [encode_leaf(p.index, p.host_address, p.amount) for p in payouts]
    layers = build_layers(leaves)

    return Commitment(
        root=to_hex(layers[-1][0]),
        leaves=[to_hex(leaf) for leaf in leaves],
        proofs=[[to_hex(node) for node in proof_for(layers, i)] for i in range(len(leaves))],
    )
