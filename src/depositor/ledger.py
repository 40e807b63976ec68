"""
Ledger client contract consumed by the engine.

The engine never talks to a node directly. It reads public state and
submits writes through any object satisfying ``LedgerClient``; every
method is a coroutine and failures are raised as ``LedgerError``
subclasses (``SubmissionRejectedError`` before dispatch,
``SettlementError`` when a dispatched write fails).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

Amount = int
"""Token amount in integer base units."""


class WriteOperation(str, Enum):
    APPROVE = "approve"
    DEPOSIT = "deposit"


@dataclass(frozen=True)
class SettlementHandle:
    """Opaque reference to a dispatched write."""

    tx_hash: str
    operation: WriteOperation
    submitted_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SettlementReceipt:
    tx_hash: str
    block_number: Optional[int] = None


@runtime_checkable
class LedgerClient(Protocol):
    async def read_has_committed(self, identity: str) -> bool: ...

    async def read_required_amount(self) -> Amount: ...

    async def read_allowance(self, identity: str) -> Amount: ...

    async def read_balance(self, identity: str) -> Amount: ...

    async def submit_approve(self, amount: Amount) -> SettlementHandle: ...

    async def submit_deposit(self) -> SettlementHandle: ...

    async def await_settlement(self, handle: SettlementHandle) -> SettlementReceipt: ...
