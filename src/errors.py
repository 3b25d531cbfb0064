"""
Exception types shared across the deposit sync engine.
"""

from typing import Optional


class DepositSyncError(Exception):
    """Base class for deposit sync failures"""
    pass


class ConfigurationError(DepositSyncError):
    """Raised when the configuration file is missing or invalid"""
    pass


class DatabaseLockError(DepositSyncError):
    """Raised when database is locked by another process"""
    pass


class LedgerError(DepositSyncError):
    """Raised when a ledger write cannot be applied"""
    pass


class ChainReadError(DepositSyncError):
    """Raised when a network's RPC endpoints cannot serve a read"""

    def __init__(self, network_id: str, message: str, from_block: Optional[int] = None,
                 to_block: Optional[int] = None):
        self.network_id = network_id
        self.from_block = from_block
        self.to_block = to_block
        if from_block is not None and to_block is not None:
            message = f"[{network_id}] blocks {from_block}-{to_block}: {message}"
        else:
            message = f"[{network_id}] {message}"
        super().__init__(message)


class AccountError(DepositSyncError):
    """Raised when an account operation is rejected"""
    pass
