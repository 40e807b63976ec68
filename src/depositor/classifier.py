"""
Error classification for ledger and wallet failures.

Remote nodes and wallets return unstructured, vendor-specific error text.
The classifier folds any failure into one ErrorKind with a fixed
user-facing message. It never raises: anything unmatched is Unknown.

Resolution order:
1. Structured codes (EIP-1193, JSON-RPC, ethers-style) that name a
   specific condition.
2. Ordered substring rules against the message text; first match wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Union

from .errors import ConfigurationError, LedgerError


class ErrorKind(str, Enum):
    USER_REJECTED = "user_rejected"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    GAS_FAILURE = "gas_failure"
    NETWORK_FAILURE = "network_failure"
    RATE_LIMITED = "rate_limited"
    NONCE_CONFLICT = "nonce_conflict"
    CONTRACT_REVERTED = "contract_reverted"
    ALREADY_COMMITTED = "already_committed"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN = "unknown"


class SourceOperation(str, Enum):
    APPROVE = "approve"
    DEPOSIT = "deposit"
    STATUS_READ = "status_read"


MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.USER_REJECTED: "The transaction was rejected in the wallet.",
    ErrorKind.INSUFFICIENT_BALANCE: "Insufficient token balance to cover the required deposit.",
    ErrorKind.INSUFFICIENT_ALLOWANCE: "Token allowance insufficient. Please approve spending first.",
    ErrorKind.GAS_FAILURE: "Gas estimation failed or ETH balance is too low for gas fees.",
    ErrorKind.NETWORK_FAILURE: "Network error. Please check your connection.",
    ErrorKind.RATE_LIMITED: "Rate limited by the network provider. Please wait and try again.",
    ErrorKind.NONCE_CONFLICT: "Transaction nonce error. Please reset your wallet account.",
    ErrorKind.CONTRACT_REVERTED: "Transaction was reverted by the contract. Please check contract conditions.",
    ErrorKind.ALREADY_COMMITTED: "You have already made a deposit to this contract.",
    ErrorKind.CONFIGURATION_ERROR: "Contract addresses are not configured correctly.",
    ErrorKind.UNKNOWN: "Something went wrong. Please try again.",
}

_NOT_RETRIABLE = frozenset(
    {ErrorKind.USER_REJECTED, ErrorKind.ALREADY_COMMITTED, ErrorKind.CONFIGURATION_ERROR}
)


@dataclass(frozen=True)
class ClassificationRule:
    """Lower-case substrings (or regexes when ``regex`` is set) for one kind."""

    kind: ErrorKind
    patterns: tuple[str, ...]
    regex: bool = False

    def matches(self, text: str) -> bool:
        if self.regex:
            return any(re.search(p, text) for p in self.patterns)
        return any(p in text for p in self.patterns)


# Order matters: gas shortfalls ("gas required exceeds allowance", "insufficient
# funds for gas") must win over the allowance and balance rules, revert reasons
# over "reverted".
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        ErrorKind.USER_REJECTED,
        ("user rejected", "user denied", "rejected the request", "rejected the transaction", "action_rejected"),
    ),
    ClassificationRule(ErrorKind.ALREADY_COMMITTED, ("already deposited", "already committed")),
    ClassificationRule(
        ErrorKind.CONFIGURATION_ERROR,
        ("not configured", "invalid address", "environment variable is required", "contract address format"),
    ),
    ClassificationRule(
        ErrorKind.GAS_FAILURE,
        ("insufficient funds for gas", "gas required exceeds", "out of gas", "intrinsic gas",
         "exceeds block gas limit"),
    ),
    ClassificationRule(
        ErrorKind.INSUFFICIENT_ALLOWANCE,
        ("insufficient allowance", "exceeds allowance", "allowance"),
    ),
    ClassificationRule(
        ErrorKind.INSUFFICIENT_BALANCE,
        ("insufficient funds", "insufficient balance", "exceeds balance", "balance"),
    ),
    ClassificationRule(ErrorKind.NONCE_CONFLICT, ("nonce", "replacement transaction underpriced")),
    ClassificationRule(ErrorKind.GAS_FAILURE, ("gas",)),
    ClassificationRule(ErrorKind.RATE_LIMITED, ("rate limit", "too many requests")),
    ClassificationRule(ErrorKind.RATE_LIMITED, (r"\b429\b",), regex=True),
    ClassificationRule(
        ErrorKind.NETWORK_FAILURE,
        ("network", "timeout", "timed out", "connection", "econnrefused", "fetch failed",
         "temporarily unavailable", "cannot connect", "connect call failed", "clientconnectorerror"),
    ),
    ClassificationRule(ErrorKind.NETWORK_FAILURE, (r"\b50[234]\b",), regex=True),
    ClassificationRule(ErrorKind.CONTRACT_REVERTED, ("execution reverted", "reverted", "revert", "call_exception")),
)

# Generic revert codes are absent so revert reasons reach the text rules.
DEFAULT_CODE_RULES: dict[Union[int, str], ErrorKind] = {
    4001: ErrorKind.USER_REJECTED,
    "ACTION_REJECTED": ErrorKind.USER_REJECTED,
    429: ErrorKind.RATE_LIMITED,
    -32005: ErrorKind.RATE_LIMITED,
    "INSUFFICIENT_FUNDS": ErrorKind.GAS_FAILURE,
    "NONCE_EXPIRED": ErrorKind.NONCE_CONFLICT,
    "REPLACEMENT_UNDERPRICED": ErrorKind.NONCE_CONFLICT,
    "NETWORK_ERROR": ErrorKind.NETWORK_FAILURE,
    "TIMEOUT": ErrorKind.NETWORK_FAILURE,
    "SERVER_ERROR": ErrorKind.NETWORK_FAILURE,
    502: ErrorKind.NETWORK_FAILURE,
    503: ErrorKind.NETWORK_FAILURE,
}


@dataclass(frozen=True)
class ErrorRecord:
    """The single surfaced error, until dismissed or superseded."""

    kind: ErrorKind
    message: str
    source_operation: SourceOperation
    detail: Optional[str] = None

    @property
    def retriable(self) -> bool:
        return self.kind not in _NOT_RETRIABLE

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "source_operation": self.source_operation.value,
            "detail": self.detail,
            "retriable": self.retriable,
        }


class ErrorClassifier:
    """Total mapping from a raw failure to an ErrorKind."""

    def __init__(
        self,
        rules: Optional[Iterable[ClassificationRule]] = None,
        code_rules: Optional[dict[Union[int, str], ErrorKind]] = None,
    ):
        self.rules: tuple[ClassificationRule, ...] = tuple(DEFAULT_RULES if rules is None else rules)
        self.code_rules = dict(DEFAULT_CODE_RULES if code_rules is None else code_rules)

    def with_rules(self, rules: Iterable[ClassificationRule], prepend: bool = True) -> "ErrorClassifier":
        """Return a classifier with extra rules ahead of (or behind) the current ones."""
        extra = tuple(rules)
        ordered = extra + self.rules if prepend else self.rules + extra
        return ErrorClassifier(rules=ordered, code_rules=self.code_rules)

    def kind_of(
        self,
        error: Any = None,
        *,
        message: Optional[str] = None,
        code: Optional[Union[int, str]] = None,
    ) -> ErrorKind:
        try:
            text, structured = _extract(error, message, code)
            if structured is not None:
                by_code = self._lookup_code(structured)
                if by_code is not None:
                    return by_code
            if isinstance(error, ConfigurationError):
                return ErrorKind.CONFIGURATION_ERROR
            lowered = text.lower()
            for rule in self.rules:
                if rule.matches(lowered):
                    return rule.kind
        except Exception:
            return ErrorKind.UNKNOWN
        return ErrorKind.UNKNOWN

    def classify(
        self,
        error: Any = None,
        *,
        message: Optional[str] = None,
        code: Optional[Union[int, str]] = None,
        source: SourceOperation = SourceOperation.STATUS_READ,
    ) -> ErrorRecord:
        kind = self.kind_of(error, message=message, code=code)
        try:
            raw, _ = _extract(error, message, code)
            detail = format_error_message(raw) if raw else None
        except Exception:
            detail = None
        return ErrorRecord(kind=kind, message=MESSAGES[kind], source_operation=source, detail=detail)

    def _lookup_code(self, code: Any) -> Optional[ErrorKind]:
        if not isinstance(code, (int, str)):
            return None
        if code in self.code_rules:
            return self.code_rules[code]
        if isinstance(code, str):
            stripped = code.strip()
            if stripped.upper() in self.code_rules:
                return self.code_rules[stripped.upper()]
            try:
                return self.code_rules.get(int(stripped))
            except ValueError:
                return None
        return None


def _extract(
    error: Any,
    message: Optional[str],
    code: Optional[Union[int, str]],
) -> tuple[str, Optional[Union[int, str]]]:
    parts: list[str] = []
    if message:
        parts.append(str(message))
    structured = code
    if isinstance(error, LedgerError):
        parts.append(error.message)
        if structured is None:
            structured = error.code
    elif isinstance(error, BaseException):
        parts.append(f"{type(error).__name__}: {error}")
        if structured is None:
            structured = getattr(error, "code", None)
    elif error is not None:
        parts.append(str(error))
    return " | ".join(p for p in parts if p), structured


_ERROR_PREFIX_RE = re.compile(r"^error:\s*", re.IGNORECASE)
_TRAILING_PAREN_RE = re.compile(r"\s*\(.*?\)$")


def format_error_message(text: str) -> str:
    """Strip technical prefixes/suffixes and normalise capitalisation and punctuation."""
    cleaned = _TRAILING_PAREN_RE.sub("", _ERROR_PREFIX_RE.sub("", text or "")).strip()
    if not cleaned:
        return ""
    formatted = cleaned[0].upper() + cleaned[1:]
    return formatted if formatted.endswith(".") else f"{formatted}."
