"""
Approve → deposit orchestration.

Flow for each write:
1. Gate: one write in flight per identity; preconditions on the
   sub-machine states and the latest CommitmentFact
2. Short-circuit writes that are known to fail (balance already short)
3. Double-check preconditions against a fresh read
4. Submit, then wait for settlement
5. Fold the outcome into ApprovalState / DepositState and the single
   surfaced ErrorRecord, journal it, and ask for an immediate read

Reconciliation facts may move Idle/Failed approval forward to Approved and
force DepositState to Success on commitment, but never touch a sub-machine
while a write is Pending.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .classifier import (
    MESSAGES,
    ErrorClassifier,
    ErrorKind,
    ErrorRecord,
    SourceOperation,
)
from .journal import EventType, Journal
from .ledger import LedgerClient
from .reconciler import CommitmentFact, PollingReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ApprovalState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    APPROVED = "approved"
    FAILED = "failed"


class DepositState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class _Superseded(Exception):
    """The identity or network changed while a write was in flight."""


class TransactionOrchestrator:
    """Owns the approve/deposit state machine for the active identity."""

    def __init__(
        self,
        ledger: LedgerClient,
        reconciler: PollingReconciler,
        classifier: Optional[ErrorClassifier] = None,
        journal: Optional[Journal] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.ledger = ledger
        self.reconciler = reconciler
        self.classifier = classifier or ErrorClassifier()
        self.journal = journal
        self._on_change = on_change

        self._identity: Optional[str] = None
        self._network: Optional[str] = None
        self._approval = ApprovalState.IDLE
        self._deposit = DepositState.IDLE
        self._error: Optional[ErrorRecord] = None
        self._write_in_flight = False
        self._superseded = asyncio.Event()

    # ── State ──────────────────────────────────────────────────────

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def approval_state(self) -> ApprovalState:
        return self._approval

    @property
    def deposit_state(self) -> DepositState:
        return self._deposit

    @property
    def error_record(self) -> Optional[ErrorRecord]:
        return self._error

    @property
    def write_in_flight(self) -> bool:
        return self._write_in_flight

    @property
    def is_active(self) -> bool:
        return self._identity is not None

    def reset(self, identity: Optional[str] = None, network: Optional[str] = None) -> None:
        """Drop all state and supersede any in-flight write."""
        self._superseded.set()
        self._superseded = asyncio.Event()
        self._identity = identity
        self._network = network
        self._approval = ApprovalState.IDLE
        self._deposit = DepositState.IDLE
        self._error = None
        self._write_in_flight = False
        self._notify_change()

    # ── Reconciliation input ──────────────────────────────────────

    def on_commitment_fact(self, fact: CommitmentFact) -> None:
        if not self.is_active or fact.identity != self._identity:
            return
        if self._write_in_flight:
            return
        if self._apply_fact(fact):
            self._notify_change()

    def report_read_error(self, record: ErrorRecord) -> None:
        """Surface a status-read failure unless a write error is already showing."""
        if not self.is_active:
            return
        if self._error is not None and self._error.source_operation is not SourceOperation.STATUS_READ:
            return
        self._error = record
        self._notify_change()

    def _apply_fact(self, fact: CommitmentFact) -> bool:
        changed = False
        if fact.has_committed and self._deposit is not DepositState.SUCCESS:
            self._deposit = DepositState.SUCCESS
            changed = True
            logger.info("Commitment observed for %s; deposit marked successful", self._identity)
            self._journal(
                EventType.COMMITMENT_OBSERVED, amount=fact.required_amount if fact.amounts_known else None
            )
            if self._error is not None and self._error.source_operation is not SourceOperation.STATUS_READ:
                self._error = None
        if (
            self._approval in (ApprovalState.IDLE, ApprovalState.FAILED)
            and fact.allowance_covers_requirement
        ):
            self._approval = ApprovalState.APPROVED
            changed = True
            logger.info("Allowance confirmed on ledger for %s", self._identity)
            if self._error is not None and self._error.source_operation is SourceOperation.APPROVE:
                self._error = None
        if (
            self._error is not None
            and self._error.source_operation is SourceOperation.STATUS_READ
        ):
            self._error = None
            changed = True
        return changed

    # ── Approve ────────────────────────────────────────────────────

    async def approve(self) -> ApprovalState:
        if not self._can_write("approve"):
            return self._approval
        if self._approval not in (ApprovalState.IDLE, ApprovalState.FAILED):
            logger.debug("approve() ignored in state %s", self._approval.value)
            return self._approval

        cached = self.reconciler.fact
        if (
            cached is not None
            and cached.identity == self._identity
            and not cached.balance_covers_requirement
        ):
            self._fail_approval(ErrorKind.INSUFFICIENT_BALANCE, detail=_shortfall(cached))
            return self._approval

        superseded = self._superseded
        self._write_in_flight = True
        self._approval = ApprovalState.PENDING
        self._notify_change()
        try:
            await self._run_approve(superseded)
        except _Superseded:
            logger.info("Approve superseded by session change")
        finally:
            if superseded is self._superseded:
                self._write_in_flight = False
                self._after_write()
        return self._approval

    async def _run_approve(self, superseded: asyncio.Event) -> None:
        fact = await self._fresh_fact(superseded)
        if fact is None:
            self._fail_approval_from_read()
            return
        if fact.has_committed:
            self._approval = ApprovalState.IDLE
            self._mark_committed()
            return
        if not fact.balance_covers_requirement:
            self._fail_approval(ErrorKind.INSUFFICIENT_BALANCE, detail=_shortfall(fact))
            return
        if fact.allowance_covers_requirement:
            logger.info("Allowance already covers %d for %s; skipping approve", fact.required_amount, self._identity)
            self._approval = ApprovalState.APPROVED
            return

        amount = fact.required_amount
        try:
            handle = await self._guard(superseded, self.ledger.submit_approve(amount))
            logger.info("Approve submitted for %s: %s", self._identity, handle.tx_hash)
            self._journal(EventType.APPROVE_SUBMITTED, amount=amount, tx_hash=handle.tx_hash)
            receipt = await self._guard(superseded, self.ledger.await_settlement(handle))
        except _Superseded:
            raise
        except Exception as exc:
            record = self.classifier.classify(exc, source=SourceOperation.APPROVE)
            if record.kind is ErrorKind.USER_REJECTED:
                logger.info("Approve rejected by user for %s", self._identity)
                self._approval = ApprovalState.IDLE
                self._journal(EventType.APPROVE_REJECTED, amount=amount, success=False)
                return
            self._approval = ApprovalState.FAILED
            self._error = record
            logger.warning("Approve failed for %s: %s (%s)", self._identity, record.kind.value, exc)
            self._journal(
                EventType.APPROVE_FAILED,
                amount=amount,
                tx_hash=getattr(exc, "tx_hash", None),
                error_kind=record.kind,
                success=False,
                reason=record.detail,
            )
            return

        self._approval = ApprovalState.APPROVED
        if self._error is not None and self._error.source_operation is SourceOperation.APPROVE:
            self._error = None
        logger.info("Approve settled for %s: %s", self._identity, receipt.tx_hash)
        self._journal(EventType.APPROVE_CONFIRMED, amount=amount, tx_hash=receipt.tx_hash)

    def _fail_approval(self, kind: ErrorKind, detail: Optional[str] = None) -> None:
        self._approval = ApprovalState.FAILED
        self._error = ErrorRecord(
            kind=kind,
            message=MESSAGES[kind],
            source_operation=SourceOperation.APPROVE,
            detail=detail,
        )
        logger.warning("Approve for %s short-circuited: %s", self._identity, kind.value)
        self._journal(EventType.APPROVE_FAILED, error_kind=kind, success=False, reason=detail)
        self._notify_change()

    def _fail_approval_from_read(self) -> None:
        last = self.reconciler.last_error
        kind = last.kind if last is not None else ErrorKind.UNKNOWN
        self._fail_approval(kind, detail=last.detail if last is not None else None)

    # ── Deposit ────────────────────────────────────────────────────

    async def deposit(self) -> DepositState:
        if self._approval is not ApprovalState.APPROVED:
            logger.debug("deposit() ignored: approval is %s", self._approval.value)
            return self._deposit
        if not self._can_write("deposit"):
            return self._deposit

        superseded = self._superseded
        self._write_in_flight = True
        self._deposit = DepositState.PENDING
        self._notify_change()
        try:
            await self._run_deposit(superseded)
        except _Superseded:
            logger.info("Deposit superseded by session change")
        finally:
            if superseded is self._superseded:
                self._write_in_flight = False
                self._after_write()
        return self._deposit

    async def _run_deposit(self, superseded: asyncio.Event) -> None:
        fact = await self._fresh_fact(superseded)
        if fact is not None:
            if fact.has_committed:
                self._mark_committed()
                return
            if not fact.allowance_covers_requirement:
                self._fail_deposit_allowance(detail=None)
                return
            if not fact.balance_covers_requirement:
                self._fail_deposit(
                    ErrorRecord(
                        kind=ErrorKind.INSUFFICIENT_BALANCE,
                        message=MESSAGES[ErrorKind.INSUFFICIENT_BALANCE],
                        source_operation=SourceOperation.DEPOSIT,
                        detail=_shortfall(fact),
                    )
                )
                return

        amount = fact.required_amount if fact is not None else None
        try:
            handle = await self._guard(superseded, self.ledger.submit_deposit())
            logger.info("Deposit submitted for %s: %s", self._identity, handle.tx_hash)
            self._journal(EventType.DEPOSIT_SUBMITTED, amount=amount, tx_hash=handle.tx_hash)
            receipt = await self._guard(superseded, self.ledger.await_settlement(handle))
        except _Superseded:
            raise
        except Exception as exc:
            record = self.classifier.classify(exc, source=SourceOperation.DEPOSIT)
            self._on_deposit_failure(record, exc, amount)
            return

        logger.info("Deposit settled for %s: %s", self._identity, receipt.tx_hash)
        self._journal(EventType.DEPOSIT_CONFIRMED, amount=amount, tx_hash=receipt.tx_hash)
        self._mark_committed()

    def _on_deposit_failure(self, record: ErrorRecord, exc: BaseException, amount: Optional[int]) -> None:
        if record.kind is ErrorKind.USER_REJECTED:
            logger.info("Deposit rejected by user for %s", self._identity)
            self._deposit = DepositState.IDLE
            self._journal(EventType.DEPOSIT_REJECTED, amount=amount, success=False)
            return
        if record.kind is ErrorKind.ALREADY_COMMITTED:
            logger.info("Ledger reports %s already deposited; treating as success", self._identity)
            self._mark_committed()
            return

        latest = self.reconciler.fact
        if latest is not None and latest.identity == self._identity and latest.has_committed:
            self._mark_committed()
            return

        self._journal(
            EventType.DEPOSIT_FAILED,
            amount=amount,
            tx_hash=getattr(exc, "tx_hash", None),
            error_kind=record.kind,
            success=False,
            reason=record.detail,
        )
        if record.kind is ErrorKind.INSUFFICIENT_ALLOWANCE:
            self._fail_deposit_allowance(detail=record.detail, journal=False)
            return
        logger.warning("Deposit failed for %s: %s (%s)", self._identity, record.kind.value, exc)
        self._fail_deposit(record, journal=False)

    def _fail_deposit_allowance(self, detail: Optional[str], journal: bool = True) -> None:
        # The only write-path override of ApprovalState: the user must re-approve.
        logger.warning("Allowance insufficient for %s; approval reset", self._identity)
        self._approval = ApprovalState.IDLE
        self._fail_deposit(
            ErrorRecord(
                kind=ErrorKind.INSUFFICIENT_ALLOWANCE,
                message=MESSAGES[ErrorKind.INSUFFICIENT_ALLOWANCE],
                source_operation=SourceOperation.DEPOSIT,
                detail=detail,
            ),
            journal=journal,
        )

    def _fail_deposit(self, record: ErrorRecord, journal: bool = True) -> None:
        self._deposit = DepositState.FAILED
        self._error = record
        if journal:
            self._journal(EventType.DEPOSIT_FAILED, error_kind=record.kind, success=False, reason=record.detail)

    def _mark_committed(self) -> None:
        self._deposit = DepositState.SUCCESS
        if self._error is not None and self._error.source_operation is not SourceOperation.STATUS_READ:
            self._error = None
        self.reconciler.assume_committed()

    # ── Presentation operations ────────────────────────────────────

    def dismiss_error(self) -> None:
        if self._error is not None:
            self._error = None
            self._notify_change()

    async def retry_failed_transaction(self) -> None:
        """Re-invoke the write that produced the surfaced error (or the one that is due)."""
        record = self._error
        self.dismiss_error()
        if record is not None and record.source_operation is SourceOperation.STATUS_READ:
            self.reconciler.manual_retry()
            return
        if self._deposit is DepositState.FAILED and self._approval is ApprovalState.APPROVED:
            await self.deposit()
        elif self._approval in (ApprovalState.IDLE, ApprovalState.FAILED) and (
            self._approval is ApprovalState.FAILED or self._deposit is DepositState.FAILED
        ):
            await self.approve()
        else:
            logger.debug("Nothing to retry (approval=%s, deposit=%s)", self._approval.value, self._deposit.value)

    # ── Helpers ────────────────────────────────────────────────────

    def _can_write(self, operation: str) -> bool:
        if not self.is_active:
            logger.debug("%s() ignored: no active identity", operation)
            return False
        if self._deposit is DepositState.SUCCESS:
            logger.debug("%s() ignored: %s has already committed", operation, self._identity)
            return False
        if self._write_in_flight:
            logger.debug("%s() ignored: a write is already in flight", operation)
            return False
        return True

    async def _fresh_fact(self, superseded: asyncio.Event) -> Optional[CommitmentFact]:
        """Double-check against a fresh read; fall back to the latest known fact."""
        fact = await self._guard(superseded, self.reconciler.refresh())
        if fact is None:
            fact = self.reconciler.fact
            if fact is not None:
                logger.warning("Fresh read unavailable for %s; using fact from %.0fs ago",
                               self._identity, _age(fact))
        if fact is not None and fact.identity != self._identity:
            return None
        return fact

    async def _guard(self, superseded: asyncio.Event, awaitable: Awaitable[T]) -> T:
        """Await a ledger call unless the session changes first."""
        if superseded.is_set():
            raise _Superseded()
        inner = asyncio.ensure_future(awaitable)
        cancel = asyncio.ensure_future(superseded.wait())
        try:
            await asyncio.wait({inner, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel.cancel()
            if not inner.done():
                inner.cancel()
        if superseded.is_set():
            if inner.done() and not inner.cancelled():
                inner.exception()
            raise _Superseded()
        return inner.result()

    def _after_write(self) -> None:
        # Facts skipped while the write was pending are stale; read again.
        self._notify_change()
        self.reconciler.request_refresh()

    def _journal(self, event_type: EventType, **fields: Any) -> None:
        if self.journal is None or self._identity is None:
            return
        kind = fields.pop("error_kind", None)
        self.journal.record(
            event_type,
            self._identity,
            network=self._network,
            error_kind=kind.value if kind is not None else None,
            **fields,
        )

    def _notify_change(self) -> None:
        if self._on_change is not None:
            self._on_change()


def _shortfall(fact: CommitmentFact) -> str:
    return f"Balance {fact.owner_balance} is below the required {fact.required_amount}."


def _age(fact: CommitmentFact) -> float:
    return max(0.0, time.time() - fact.fetched_at)
