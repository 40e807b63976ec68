"""
Deposit engine: the surface the presentation layer sees.

Wires the reconciler and orchestrator together for one active identity,
publishes read-only snapshots to subscribers, and accepts the five user
intents. Construction validates contract configuration; a
ConfigurationError there means the engine never exists.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .backoff import BackoffPolicy
from .classifier import ErrorClassifier, ErrorRecord
from .config import ContractAddresses, EngineConfig, normalize_address, normalize_network
from .errors import ConfigurationError
from .journal import Journal
from .ledger import LedgerClient
from .orchestrator import ApprovalState, DepositState, TransactionOrchestrator
from .reconciler import CommitmentFact, PollingReconciler, RetryState, Sleep

logger = logging.getLogger(__name__)

Subscriber = Callable[["EngineSnapshot"], None]


@dataclass(frozen=True)
class EngineSnapshot:
    approval_state: ApprovalState
    deposit_state: DepositState
    commitment_fact: Optional[CommitmentFact]
    error_record: Optional[ErrorRecord]
    retry_state: RetryState

    def to_dict(self) -> dict:
        return {
            "approval_state": self.approval_state.value,
            "deposit_state": self.deposit_state.value,
            "commitment_fact": self.commitment_fact.to_dict() if self.commitment_fact else None,
            "error_record": self.error_record.to_dict() if self.error_record else None,
            "retry_state": self.retry_state.to_dict(),
        }


class DepositEngine:
    """Reconciler + orchestrator for the active identity on the required network."""

    def __init__(
        self,
        ledger: LedgerClient,
        config: Optional[EngineConfig] = None,
        addresses: Optional[ContractAddresses] = None,
        classifier: Optional[ErrorClassifier] = None,
        journal: Optional[Journal] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        if addresses is not None:
            addresses.validate()
        self.addresses = addresses
        self.config = config or (
            EngineConfig.for_addresses(addresses) if addresses is not None else EngineConfig()
        )
        self.config.validate()
        self.required_network = normalize_network(self.config.required_network)

        self.classifier = classifier or ErrorClassifier()
        self.backoff = BackoffPolicy(
            base_seconds=self.config.backoff_base_seconds,
            max_retries=self.config.max_retries,
        )
        self.reconciler = PollingReconciler(
            ledger,
            classifier=self.classifier,
            backoff=self.backoff,
            interval_seconds=self.config.poll_interval_seconds,
            on_fact=self._on_fact,
            on_error=self._on_read_error,
            on_change=self._publish,
            sleep=sleep,
        )
        self.orchestrator = TransactionOrchestrator(
            ledger,
            self.reconciler,
            classifier=self.classifier,
            journal=journal,
            on_change=self._publish,
        )
        self._identity: Optional[str] = None
        self._network: Optional[str] = None
        self._subscribers: list[Subscriber] = []
        self._last_snapshot: Optional[EngineSnapshot] = None

    # ── Session lifecycle ──────────────────────────────────────────

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def network(self) -> Optional[str]:
        return self._network

    @property
    def is_active(self) -> bool:
        return self._identity is not None and self._network == self.required_network

    @property
    def is_suspended(self) -> bool:
        return self._identity is not None and self._network != self.required_network

    def activate(self, identity: str, network: str) -> None:
        """Bind to ``identity`` on ``network``; a wrong network suspends the engine."""
        normalized_identity = normalize_address(identity)
        try:
            normalized_network = normalize_network(network)
        except ValueError:
            normalized_network = str(network)

        if normalized_identity == self._identity and normalized_network == self._network:
            return

        self.reconciler.stop()
        self._identity = normalized_identity
        self._network = normalized_network
        if normalized_network != self.required_network:
            logger.warning(
                "Network %s does not match required %s; engine suspended",
                normalized_network,
                self.required_network,
            )
            self.orchestrator.reset()
            return

        self.orchestrator.reset(normalized_identity, normalized_network)
        self.reconciler.start(normalized_identity, normalized_network)
        logger.info("Engine active for %s on %s", normalized_identity, normalized_network)

    def deactivate(self) -> None:
        if self._identity is None and self._network is None:
            return
        self.reconciler.stop()
        self.orchestrator.reset()
        self._identity = None
        self._network = None
        logger.info("Engine deactivated")

    # ── Snapshot publication ───────────────────────────────────────

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            approval_state=self.orchestrator.approval_state,
            deposit_state=self.orchestrator.deposit_state,
            commitment_fact=self.reconciler.fact,
            error_record=self.orchestrator.error_record,
            retry_state=self.reconciler.retry_state,
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a snapshot listener; returns an unsubscribe callable."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self) -> None:
        snapshot = self.snapshot()
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed")

    def _on_fact(self, fact: CommitmentFact) -> None:
        self.orchestrator.on_commitment_fact(fact)

    def _on_read_error(self, record: ErrorRecord) -> None:
        self.orchestrator.report_read_error(record)

    # ── User intents ───────────────────────────────────────────────

    async def approve(self) -> ApprovalState:
        if not self.is_active:
            return self.orchestrator.approval_state
        return await self.orchestrator.approve()

    async def deposit(self) -> DepositState:
        if not self.is_active:
            return self.orchestrator.deposit_state
        return await self.orchestrator.deposit()

    def dismiss_error(self) -> None:
        self.orchestrator.dismiss_error()

    async def retry_failed_transaction(self) -> None:
        if self.is_active:
            await self.orchestrator.retry_failed_transaction()

    def retry_status_check(self) -> None:
        if self.is_active:
            self.reconciler.manual_retry()


def build_engine(
    ledger: LedgerClient,
    addresses: Optional[ContractAddresses] = None,
    **kwargs,
) -> DepositEngine:
    """Build an engine from explicit or environment-provided addresses."""
    resolved = addresses or ContractAddresses.from_env()
    try:
        return DepositEngine(ledger, addresses=resolved, **kwargs)
    except ConfigurationError:
        logger.error("Deposit engine not started: contract configuration is invalid")
        raise
