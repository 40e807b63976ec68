"""
Background reconciliation of commitment state against the ledger.

One polling task per active (identity, network). Reads never overlap:
each read is awaited before the next is scheduled, and the interval is
measured from the completion of the previous read. Failed reads back off
exponentially until the retry ceiling, then wait for a manual trigger.

Stopping cancels only the next scheduled read. A read already in flight
completes and its result is discarded.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from .backoff import BackoffPolicy
from .classifier import ErrorClassifier, ErrorKind, ErrorRecord, SourceOperation
from .ledger import Amount, LedgerClient

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class CommitmentFact:
    """Ledger state for one identity, replaced wholesale by each successful read."""

    identity: str
    has_committed: bool
    required_amount: Amount
    current_allowance: Amount
    owner_balance: Amount
    fetched_at: float
    # False when only the committed flag is known; the amounts are then zero placeholders.
    amounts_known: bool = True

    @property
    def allowance_covers_requirement(self) -> bool:
        return self.required_amount > 0 and self.current_allowance >= self.required_amount

    @property
    def balance_covers_requirement(self) -> bool:
        return self.owner_balance >= self.required_amount

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "has_committed": self.has_committed,
            "required_amount": self.required_amount,
            "current_allowance": self.current_allowance,
            "owner_balance": self.owner_balance,
            "fetched_at": self.fetched_at,
            "amounts_known": self.amounts_known,
        }


@dataclass(frozen=True)
class RetryState:
    attempt: int = 0
    next_delay: Optional[float] = None
    exhausted: bool = False

    def to_dict(self) -> dict:
        return {"attempt": self.attempt, "next_delay": self.next_delay, "exhausted": self.exhausted}


class ReconcilerState(str, Enum):
    STOPPED = "stopped"
    POLLING = "polling"


class PollingReconciler:
    """Owns the repeating read of commitment, allowance and balance state."""

    def __init__(
        self,
        ledger: LedgerClient,
        classifier: Optional[ErrorClassifier] = None,
        backoff: Optional[BackoffPolicy] = None,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_fact: Optional[Callable[[CommitmentFact], None]] = None,
        on_error: Optional[Callable[[ErrorRecord], None]] = None,
        on_change: Optional[Callable[[], None]] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.ledger = ledger
        self.classifier = classifier or ErrorClassifier()
        self.backoff = backoff or BackoffPolicy()
        self.interval_seconds = interval_seconds
        self._on_fact = on_fact
        self._on_error = on_error
        self._on_change = on_change
        self._sleep = sleep

        self._state = ReconcilerState.STOPPED
        self._identity: Optional[str] = None
        self._network: Optional[str] = None
        self._generation = 0
        self._fact: Optional[CommitmentFact] = None
        self._retry = RetryState()
        self._last_error: Optional[ErrorRecord] = None
        self._committed = False

        self._task: Optional[asyncio.Task] = None
        self._reading_task: Optional[asyncio.Task] = None
        self._read_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._waiters: list[asyncio.Future] = []

    # ── Published facts ────────────────────────────────────────────

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def fact(self) -> Optional[CommitmentFact]:
        return self._fact

    @property
    def retry_state(self) -> RetryState:
        return self._retry

    @property
    def last_error(self) -> Optional[ErrorRecord]:
        return self._last_error

    # ── Lifecycle ──────────────────────────────────────────────────

    def start(self, identity: str, network: Optional[str] = None) -> None:
        """Begin polling for ``identity``; any previous stream is stopped first."""
        self.stop()
        self._generation += 1
        self._identity = identity
        self._network = network
        self._state = ReconcilerState.POLLING
        self._wake.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._generation),
            name=f"depositor-reconciler-{self._generation}",
        )
        logger.info("Reconciler started for %s on %s", identity, network or "default network")

    def stop(self) -> None:
        """Stop polling. Idempotent; always ends in STOPPED."""
        was_polling = self._state is ReconcilerState.POLLING
        self._generation += 1
        self._state = ReconcilerState.STOPPED

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not self._reading_task:
            task.cancel()
        self._resolve_waiters(self._take_waiters(), None)

        had_state = self._fact is not None or self._last_error is not None or self._retry != RetryState()
        self._identity = None
        self._network = None
        self._fact = None
        self._retry = RetryState()
        self._last_error = None
        self._committed = False
        if was_polling:
            logger.info("Reconciler stopped")
        if had_state:
            self._notify_change()

    def manual_retry(self) -> None:
        """Bypass any backoff delay and read immediately."""
        if self._state is not ReconcilerState.POLLING:
            logger.debug("Manual retry ignored: reconciler is stopped")
            return
        logger.info("Manual status retry requested for %s", self._identity)
        self._wake.set()

    def request_refresh(self) -> None:
        """Schedule an immediate read without waiting for its result."""
        if self._state is ReconcilerState.POLLING:
            self._wake.set()

    async def refresh(self) -> Optional[CommitmentFact]:
        """Perform an immediate read and return the resulting fact.

        Returns None when the read failed or the reconciler stopped before
        the read completed. The read runs in the polling task, so it never
        overlaps another read.
        """
        if self._state is not ReconcilerState.POLLING:
            return None
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._wake.set()
        return await waiter

    def assume_committed(self) -> None:
        """Publish has_committed=True ahead of the next read (optimistic update)."""
        if self._state is not ReconcilerState.POLLING:
            return
        self._committed = True
        if self._fact is not None and not self._fact.has_committed:
            self._publish(dataclasses.replace(self._fact, has_committed=True))

    # ── Polling loop ───────────────────────────────────────────────

    async def _run(self, generation: int) -> None:
        delay: Optional[float] = 0.0
        while self._is_current(generation):
            if delay is None:
                await self._wake.wait()
                self._wake.clear()
            elif delay > 0:
                await self._wait(delay)
            if not self._is_current(generation):
                return

            waiters = self._take_waiters()
            fact, error = await self._read(generation)
            if not self._is_current(generation):
                logger.debug("Discarding read result for superseded stream %d", generation)
                self._resolve_waiters(waiters, None)
                return

            if error is None:
                self._on_read_success(fact)
                delay = self.interval_seconds
            else:
                fact = None
                delay = self._on_read_failure(error)
            self._resolve_waiters(waiters, fact)

    async def _wait(self, delay: float) -> None:
        if self._wake.is_set():
            self._wake.clear()
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waker.cancel()
        self._wake.clear()

    async def _read(self, generation: int) -> tuple[Optional[CommitmentFact], Optional[BaseException]]:
        identity = self._identity
        async with self._read_lock:
            if not self._is_current(generation) or identity is None:
                return None, None
            self._reading_task = asyncio.current_task()
            try:
                has_committed = await self.ledger.read_has_committed(identity)
                required = await self.ledger.read_required_amount()
                allowance = await self.ledger.read_allowance(identity)
                balance = await self.ledger.read_balance(identity)
            except Exception as exc:
                return None, exc
            finally:
                self._reading_task = None
        fact = CommitmentFact(
            identity=identity,
            has_committed=bool(has_committed),
            required_amount=int(required),
            current_allowance=int(allowance),
            owner_balance=int(balance),
            fetched_at=time.time(),
        )
        return fact, None

    def _on_read_success(self, fact: CommitmentFact) -> None:
        self._retry = RetryState()
        if self._last_error is not None:
            self._last_error = None
        if fact.has_committed:
            self._committed = True
        elif self._committed:
            fact = dataclasses.replace(fact, has_committed=True)
        self._publish(fact)

    def _on_read_failure(self, error: BaseException) -> Optional[float]:
        record = self.classifier.classify(error, source=SourceOperation.STATUS_READ)

        if record.kind is ErrorKind.ALREADY_COMMITTED:
            self._retry = RetryState()
            self._committed = True
            base = self._fact or CommitmentFact(
                identity=self._identity or "",
                has_committed=True,
                required_amount=0,
                current_allowance=0,
                owner_balance=0,
                fetched_at=time.time(),
                amounts_known=False,
            )
            self._publish(dataclasses.replace(base, has_committed=True, fetched_at=time.time()))
            return self.interval_seconds

        attempt = self._retry.attempt
        if record.kind is ErrorKind.CONFIGURATION_ERROR:
            self._retry = RetryState(attempt=attempt, next_delay=None, exhausted=True)
        elif self.backoff.should_retry(attempt):
            self._retry = RetryState(attempt=attempt + 1, next_delay=self.backoff.next_delay(attempt))
        else:
            self._retry = RetryState(attempt=attempt, next_delay=None, exhausted=True)

        self._last_error = record
        if self._retry.exhausted:
            logger.warning(
                "Status read failed for %s (%s); automatic retries stopped after %d attempts",
                self._identity,
                record.kind.value,
                self._retry.attempt,
            )
        else:
            logger.warning(
                "Status read failed for %s (%s); retry %d/%d in %.1fs",
                self._identity,
                record.kind.value,
                self._retry.attempt,
                self.backoff.max_retries,
                self._retry.next_delay,
            )
        if self._on_error is not None:
            self._on_error(record)
        self._notify_change()
        return self._retry.next_delay

    # ── Helpers ────────────────────────────────────────────────────

    def _publish(self, fact: CommitmentFact) -> None:
        self._fact = fact
        if self._on_fact is not None:
            self._on_fact(fact)
        self._notify_change()

    def _notify_change(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state is ReconcilerState.POLLING

    def _take_waiters(self) -> list[asyncio.Future]:
        waiters, self._waiters = self._waiters, []
        return waiters

    @staticmethod
    def _resolve_waiters(waiters: list[asyncio.Future], fact: Optional[CommitmentFact]) -> None:
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(fact)
