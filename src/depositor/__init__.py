"""
Depositor: security deposit commitment against an ERC-20 deposit pool.

Read the ledger → approve the pool → deposit once:
Exactly one surfaced error, at most one write in flight, commitment is final.
"""

__version__ = "0.1.0"

from .backoff import BackoffPolicy
from .classifier import (
    ClassificationRule,
    ErrorClassifier,
    ErrorKind,
    ErrorRecord,
    SourceOperation,
    format_error_message,
)
from .config import ContractAddresses, EngineConfig, Network
from .engine import DepositEngine, EngineSnapshot, build_engine
from .errors import (
    ConfigurationError,
    DepositorError,
    LedgerError,
    SettlementError,
    SubmissionRejectedError,
)
from .journal import EventType, Journal
from .ledger import LedgerClient, SettlementHandle, SettlementReceipt, WriteOperation
from .local_ledger import InMemoryLedger
from .orchestrator import ApprovalState, DepositState, TransactionOrchestrator
from .reconciler import CommitmentFact, PollingReconciler, RetryState
from .session import LocalSession, SessionBinding, SessionProvider

__all__ = [
    "BackoffPolicy", "ClassificationRule", "ErrorClassifier", "ErrorKind", "ErrorRecord",
    "SourceOperation", "format_error_message",
    "ContractAddresses", "EngineConfig", "Network",
    "DepositEngine", "EngineSnapshot", "build_engine",
    "ConfigurationError", "DepositorError", "LedgerError", "SettlementError",
    "SubmissionRejectedError",
    "EventType", "Journal",
    "LedgerClient", "SettlementHandle", "SettlementReceipt", "WriteOperation",
    "InMemoryLedger",
    "ApprovalState", "DepositState", "TransactionOrchestrator",
    "CommitmentFact", "PollingReconciler", "RetryState",
    "LocalSession", "SessionBinding", "SessionProvider",
]
