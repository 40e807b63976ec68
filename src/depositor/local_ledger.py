"""In-process ledger honouring the token + deposit pool contract semantics."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import deque
from typing import Optional

from .config import normalize_address
from .errors import LedgerError, SettlementError, SubmissionRejectedError
from .ledger import Amount, SettlementHandle, SettlementReceipt, WriteOperation

logger = logging.getLogger(__name__)


class InMemoryLedger:
    """Stand-in for the on-chain token and deposit pool.

    Enforces the same rules as the real contracts (one deposit per account,
    ``transferFrom`` needs allowance and balance) and is suitable for local
    development, the CLI demo and tests. Writes take effect at settlement,
    not at submission, the way a mined transaction does.

    Failure injection and timing hooks:
    - ``fail_reads(*errors)`` queues exceptions for the next reads.
    - ``fail_submission(op, error)`` / ``fail_settlement(op, error)`` queue
      write failures per operation.
    - ``pause_reads()`` / ``resume_reads()`` hold reads in flight.
    - ``hold_settlements()`` / ``release_settlements()`` hold writes in flight.
    """

    def __init__(
        self,
        required_amount: Amount = 0,
        sender: Optional[str] = None,
        course_finalized_time: int = 0,
    ):
        self.required_amount = int(required_amount)
        self.course_finalized_time = int(course_finalized_time)
        self.sender = normalize_address(sender) if sender else None
        self.balances: dict[str, Amount] = {}
        self.allowances: dict[str, Amount] = {}
        self.deposited: set[str] = set()
        self.pool_balance: Amount = 0
        self.calls: list[str] = []

        self._read_failures: deque[BaseException] = deque()
        self._submit_failures: dict[WriteOperation, deque[BaseException]] = {
            op: deque() for op in WriteOperation
        }
        self._settle_failures: dict[WriteOperation, deque[BaseException]] = {
            op: deque() for op in WriteOperation
        }
        self._reads_open: Optional[asyncio.Event] = None
        self._hold_settlements = False
        self._settlement_gates: dict[str, asyncio.Event] = {}
        self._pending: dict[str, tuple[WriteOperation, str, Amount]] = {}
        self._tx_counter = 0

    # ── Setup ──────────────────────────────────────────────────────

    def use_sender(self, identity: str) -> None:
        self.sender = normalize_address(identity)

    def fund(self, identity: str, amount: Amount) -> None:
        self.balances[normalize_address(identity)] = int(amount)

    def set_allowance(self, identity: str, amount: Amount) -> None:
        self.allowances[normalize_address(identity)] = int(amount)

    def mark_deposited(self, identity: str) -> None:
        self.deposited.add(normalize_address(identity))

    def fail_reads(self, *errors: BaseException) -> None:
        self._read_failures.extend(errors)

    def fail_submission(self, operation: WriteOperation, error: BaseException) -> None:
        self._submit_failures[operation].append(error)

    def fail_settlement(self, operation: WriteOperation, error: BaseException) -> None:
        self._settle_failures[operation].append(error)

    def pause_reads(self) -> None:
        self._reads_open = asyncio.Event()

    def resume_reads(self) -> None:
        gate, self._reads_open = self._reads_open, None
        if gate is not None:
            gate.set()

    def hold_settlements(self) -> None:
        self._hold_settlements = True

    def release_settlements(self) -> None:
        self._hold_settlements = False
        for gate in self._settlement_gates.values():
            gate.set()

    # ── Reads ──────────────────────────────────────────────────────

    async def read_has_committed(self, identity: str) -> bool:
        await self._before_read("read_has_committed")
        return normalize_address(identity) in self.deposited

    async def read_required_amount(self) -> Amount:
        await self._before_read("read_required_amount")
        return self.required_amount

    async def read_allowance(self, identity: str) -> Amount:
        await self._before_read("read_allowance")
        return self.allowances.get(normalize_address(identity), 0)

    async def read_balance(self, identity: str) -> Amount:
        await self._before_read("read_balance")
        return self.balances.get(normalize_address(identity), 0)

    async def read_course_finalized_time(self) -> int:
        await self._before_read("read_course_finalized_time")
        return self.course_finalized_time

    async def _before_read(self, name: str) -> None:
        self.calls.append(name)
        gate = self._reads_open
        if gate is not None:
            await gate.wait()
        if self._read_failures:
            raise self._read_failures.popleft()

    # ── Writes ─────────────────────────────────────────────────────

    async def submit_approve(self, amount: Amount) -> SettlementHandle:
        self.calls.append("submit_approve")
        return self._dispatch(WriteOperation.APPROVE, int(amount))

    async def submit_deposit(self) -> SettlementHandle:
        self.calls.append("submit_deposit")
        return self._dispatch(WriteOperation.DEPOSIT, self.required_amount)

    async def await_settlement(self, handle: SettlementHandle) -> SettlementReceipt:
        self.calls.append("await_settlement")
        pending = self._pending.get(handle.tx_hash)
        if pending is None:
            raise LedgerError(f"Unknown transaction: {handle.tx_hash}")

        gate = self._settlement_gates.get(handle.tx_hash)
        if gate is not None:
            await gate.wait()
        self._settlement_gates.pop(handle.tx_hash, None)
        del self._pending[handle.tx_hash]

        operation, sender, amount = pending
        failures = self._settle_failures[operation]
        if failures:
            raise failures.popleft()

        if operation is WriteOperation.APPROVE:
            self.allowances[sender] = amount
        else:
            self._apply_deposit(sender, handle.tx_hash)
        logger.debug("Settled %s for %s (%s)", operation.value, sender, handle.tx_hash)
        return SettlementReceipt(tx_hash=handle.tx_hash, block_number=self._tx_counter)

    def _dispatch(self, operation: WriteOperation, amount: Amount) -> SettlementHandle:
        failures = self._submit_failures[operation]
        if failures:
            raise failures.popleft()
        if self.sender is None:
            raise SubmissionRejectedError("No signer configured for submission")

        self._tx_counter += 1
        tx_hash = _pseudo_tx_hash(operation.value, self.sender, self._tx_counter)
        self._pending[tx_hash] = (operation, self.sender, amount)
        if self._hold_settlements:
            self._settlement_gates[tx_hash] = asyncio.Event()
        return SettlementHandle(tx_hash=tx_hash, operation=operation)

    def _apply_deposit(self, sender: str, tx_hash: str) -> None:
        required = self.required_amount
        if sender in self.deposited:
            raise SettlementError("execution reverted: already deposited", tx_hash=tx_hash)
        if self.allowances.get(sender, 0) < required:
            raise SettlementError("execution reverted: ERC20: insufficient allowance", tx_hash=tx_hash)
        if self.balances.get(sender, 0) < required:
            raise SettlementError(
                "execution reverted: ERC20: transfer amount exceeds balance", tx_hash=tx_hash
            )
        self.allowances[sender] -= required
        self.balances[sender] -= required
        self.pool_balance += required
        self.deposited.add(sender)


def _pseudo_tx_hash(prefix: str, sender: str, counter: int) -> str:
    return "0x" + hashlib.sha256(f"{prefix}:{sender}:{counter}".encode()).hexdigest()
