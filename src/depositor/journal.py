"""
Per-depositor journal of approve/deposit activity.

Every line of the JSONL file belongs to exactly one depositor address and
carries a sequence number plus an HMAC over its content and the MAC of
the previous entry *for the same address*. Addresses therefore form
independent chains: a dropped or edited entry breaks only its own chain
and is reported when that chain is read back.

The journal is a record for people; the engine never restores state
from it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union

from .classifier import SourceOperation


DEFAULT_JOURNAL_PATH = Path.home() / ".depositor" / "journal.jsonl"
DEFAULT_JOURNAL_KEY_PATH = Path.home() / ".depositor-secrets" / "journal_hmac.key"


class EventType(str, Enum):
    APPROVE_SUBMITTED = "approve_submitted"
    APPROVE_CONFIRMED = "approve_confirmed"
    APPROVE_REJECTED = "approve_rejected"
    APPROVE_FAILED = "approve_failed"
    DEPOSIT_SUBMITTED = "deposit_submitted"
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    DEPOSIT_REJECTED = "deposit_rejected"
    DEPOSIT_FAILED = "deposit_failed"
    COMMITMENT_OBSERVED = "commitment_observed"

    @property
    def operation(self) -> SourceOperation:
        if self.value.startswith("approve_"):
            return SourceOperation.APPROVE
        if self.value.startswith("deposit_"):
            return SourceOperation.DEPOSIT
        return SourceOperation.STATUS_READ


@dataclass(frozen=True)
class JournalEntry:
    event_type: str
    identity: str
    operation: str
    seq: int
    timestamp: float
    network: Optional[str] = None
    amount: Optional[int] = None
    tx_hash: Optional[str] = None
    error_kind: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    prev_mac: Optional[str] = None
    mac: str = ""

    def signed_content(self) -> bytes:
        body = {k: v for k, v in asdict(self).items() if k != "mac" and v is not None}
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode()

    def to_line(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))

    @classmethod
    def from_line(cls, line: str) -> "JournalEntry":
        raw = json.loads(line)
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


class Journal:
    """Append-only journal with one tamper-evident chain per depositor."""

    def __init__(self, path: Optional[Path] = None, key_path: Optional[Path] = None):
        self.path = Path(path or DEFAULT_JOURNAL_PATH)
        self.key_path = Path(key_path or DEFAULT_JOURNAL_KEY_PATH)
        _ensure_private(self.path)
        _ensure_private(self.key_path)
        self._key = self._read_or_create_key()
        # identity -> (seq, mac) of the newest entry in that identity's chain
        self._heads: dict[str, tuple[int, str]] = {}
        for entry in self._scan():
            self._heads[entry.identity] = (entry.seq, entry.mac)

    def _read_or_create_key(self) -> bytes:
        key = self.key_path.read_bytes().strip()
        if not key:
            key = secrets.token_hex(32).encode()
            self.key_path.write_bytes(key)
        return key

    def _mac(self, entry: JournalEntry) -> str:
        return hmac.new(self._key, entry.signed_content(), hashlib.sha256).hexdigest()

    def _scan(self) -> Iterator[JournalEntry]:
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    yield JournalEntry.from_line(line)

    def record(
        self,
        event_type: EventType,
        identity: str,
        network: Optional[str] = None,
        amount: Optional[int] = None,
        tx_hash: Optional[str] = None,
        error_kind: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
    ) -> JournalEntry:
        identity = identity.lower()
        seq, prev_mac = self._heads.get(identity, (0, None))
        unsigned = JournalEntry(
            event_type=event_type.value,
            identity=identity,
            operation=event_type.operation.value,
            seq=seq + 1,
            timestamp=time.time(),
            network=network,
            amount=amount,
            tx_hash=tx_hash,
            error_kind=error_kind,
            success=success,
            reason=reason,
            prev_mac=prev_mac,
        )
        entry = JournalEntry(**{**asdict(unsigned), "mac": self._mac(unsigned)})

        with open(self.path, "a") as f:
            f.write(entry.to_line() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._heads[identity] = (entry.seq, entry.mac)
        return entry

    def entries(
        self,
        identity: Optional[str] = None,
        event_type: Optional[EventType] = None,
        operation: Optional[Union[SourceOperation, str]] = None,
        tx_hash: Optional[str] = None,
        limit: int = 100,
    ) -> list[JournalEntry]:
        """Verify every chain and return matching entries, oldest first.

        Raises RuntimeError naming the depositor whose chain is broken.
        """
        wanted_identity = identity.lower() if identity else None
        wanted_operation = SourceOperation(operation).value if operation else None
        wanted_tx = tx_hash.lower() if tx_hash else None

        heads: dict[str, tuple[int, Optional[str]]] = {}
        matched: list[JournalEntry] = []
        for entry in self._scan():
            last_seq, last_mac = heads.get(entry.identity, (0, None))
            if entry.seq != last_seq + 1 or entry.prev_mac != last_mac:
                raise RuntimeError(
                    f"Journal chain broken for {entry.identity}: "
                    f"entry {entry.seq} does not follow entry {last_seq}"
                )
            if not hmac.compare_digest(self._mac(entry), entry.mac):
                raise RuntimeError(
                    f"Journal chain broken for {entry.identity}: entry {entry.seq} was modified"
                )
            heads[entry.identity] = (entry.seq, entry.mac)

            if wanted_identity and entry.identity != wanted_identity:
                continue
            if event_type and entry.event_type != event_type.value:
                continue
            if wanted_operation and entry.operation != wanted_operation:
                continue
            if wanted_tx and (entry.tx_hash or "").lower() != wanted_tx:
                continue
            matched.append(entry)

        return matched[-limit:] if limit > 0 else matched


def _ensure_private(path: Path) -> None:
    """Create ``path`` (and a missing parent directory) readable by the owner only."""
    if not path.parent.exists():
        path.parent.mkdir(parents=True)
        path.parent.chmod(0o700)
    path.touch(exist_ok=True)
    path.chmod(0o600)
