"""
Depositor error types.

Specific exceptions for the failure modes the engine distinguishes,
so adapters can hand the classifier as much structure as they have.
"""

from __future__ import annotations

from typing import Optional, Union


class DepositorError(Exception):
    """Base error for all Depositor operations."""
    pass


class ConfigurationError(DepositorError):
    """Required contract addresses or network settings are missing or invalid."""
    pass


# Ledger errors
class LedgerError(DepositorError):
    """A read or write against the remote ledger failed.

    ``code`` carries the structured error code (JSON-RPC, EIP-1193 or an
    ethers-style string code) when the underlying client exposed one.
    """

    def __init__(self, message: str, code: Optional[Union[int, str]] = None):
        self.message = message
        self.code = code
        super().__init__(message)


class SubmissionRejectedError(LedgerError):
    """A write was rejected before dispatch (signer declined, node refused)."""
    pass


class SettlementError(LedgerError):
    """A dispatched write settled with failure."""

    def __init__(
        self,
        message: str,
        code: Optional[Union[int, str]] = None,
        tx_hash: Optional[str] = None,
    ):
        self.tx_hash = tx_hash
        super().__init__(message, code=code)
