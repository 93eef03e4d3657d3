"""
Settlement exceptions

Taxonomy:
- Input errors: bad or incomplete tracking data; the item is skipped
- State errors: an operation against an epoch in the wrong state; reported,
  never retried automatically
- Ledger errors: transient (state unchanged, retried next tick) or
  permanent (epoch marked failed)
"""


class SettlementError(Exception):
    """Base class for settlement engine errors."""
    pass


# =============================================================================
# Input errors
# =============================================================================

class InvalidReceiptError(SettlementError, ValueError):
    """Raised when a tracking fact cannot be turned into a receipt."""
    pass


class MissingWalletError(InvalidReceiptError):
    """Raised when a host has no wallet address to pay."""
    pass


# =============================================================================
# State errors
# =============================================================================

class CampaignNotFoundError(SettlementError):
    """Raised when the campaign collaborator has no such campaign."""
    pass


class EpochNotFoundError(SettlementError):
    """Raised when an epoch id has no stored epoch."""
    pass


class EpochAlreadyFinalizedError(SettlementError):
    """Raised when regenerating an epoch whose root is already committed."""

    def __init__(self, epoch_id: str, status: str):
        super().__init__(f"Epoch {epoch_id} already finalized (status={status})")
        self.epoch_id = epoch_id
        self.status = status


class InvalidEpochStateError(SettlementError):
    """Raised when an epoch is not in the state an operation expects."""

    def __init__(self, epoch_id: str, expected: str, actual: str):
        super().__init__(f"Epoch {epoch_id} is {actual}, expected {expected}")
        self.epoch_id = epoch_id
        self.expected = expected
        self.actual = actual


class ReceiptConflictError(SettlementError):
    """Raised when receipts chosen for an epoch were consumed by another writer."""
    pass


# =============================================================================
# Ledger errors
# =============================================================================

class LedgerError(SettlementError):
    """Base class for ledger collaborator failures."""
    pass


class LedgerUnavailableError(LedgerError):
    """Transient failure: timeout, network error or relayer 5xx."""
    pass


class LedgerRejectedError(LedgerError):
    """Permanent failure: the ledger refused the call (e.g. root conflict)."""
    pass
