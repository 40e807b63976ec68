"""
JSON-RPC ledger client for the token and deposit pool contracts.

Reads are plain ``eth_call``s. Writes are built, signed locally with
eth-account and dispatched as raw transactions; settlement waits for the
receipt. Every failure leaves this module as a LedgerError carrying the
node's structured error code when one was present, so the classifier
sees both the code and the text.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3

from .config import ContractAddresses
from .errors import LedgerError, SettlementError, SubmissionRejectedError
from .ledger import Amount, SettlementHandle, SettlementReceipt, WriteOperation

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT_SECONDS = 300.0

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

POOL_ABI: list[dict[str, Any]] = [
    {
        "name": "hasDeposited",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "flatDepositAmount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "courseFinalizedTime",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "deposit",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
]


class TransactionSigner(Protocol):
    @property
    def address(self) -> str: ...

    def sign_transaction(self, transaction: dict[str, Any]) -> bytes: ...


class EthAccountSigner:
    """Adapter that wraps an eth-account LocalAccount for transaction signing."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "EthAccountSigner":
        return cls(Account.from_key(private_key))

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, transaction: dict[str, Any]) -> bytes:
        signed = self._account.sign_transaction(transaction)
        return bytes(signed.raw_transaction)


class Web3LedgerClient:
    """LedgerClient backed by an Ethereum JSON-RPC endpoint.

    Without a signer the client is read-only: reads work, submissions
    raise SubmissionRejectedError.
    """

    def __init__(
        self,
        rpc_url: str,
        addresses: ContractAddresses,
        signer: Optional[TransactionSigner] = None,
        receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
        w3: Optional[AsyncWeb3] = None,
    ):
        addresses.validate()
        self.addresses = addresses
        self.signer = signer
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._pool_address = AsyncWeb3.to_checksum_address(addresses.pool)
        self._token_address = AsyncWeb3.to_checksum_address(addresses.token)
        self.pool = self.w3.eth.contract(address=self._pool_address, abi=POOL_ABI)
        self.token = self.w3.eth.contract(address=self._token_address, abi=ERC20_ABI)

    @property
    def sender(self) -> Optional[str]:
        return self.signer.address if self.signer is not None else None

    # ── Reads ──────────────────────────────────────────────────────

    async def read_has_committed(self, identity: str) -> bool:
        return bool(await self._call(self.pool.functions.hasDeposited(_checksum(identity))))

    async def read_required_amount(self) -> Amount:
        return int(await self._call(self.pool.functions.flatDepositAmount()))

    async def read_allowance(self, identity: str) -> Amount:
        return int(
            await self._call(self.token.functions.allowance(_checksum(identity), self._pool_address))
        )

    async def read_balance(self, identity: str) -> Amount:
        return int(await self._call(self.token.functions.balanceOf(_checksum(identity))))

    async def read_course_finalized_time(self) -> int:
        return int(await self._call(self.pool.functions.courseFinalizedTime()))

    async def _call(self, fn) -> Any:
        try:
            return await fn.call()
        except Exception as exc:
            raise _as_ledger_error(exc, LedgerError) from exc

    # ── Writes ─────────────────────────────────────────────────────

    async def submit_approve(self, amount: Amount) -> SettlementHandle:
        fn = self.token.functions.approve(self._pool_address, int(amount))
        return await self._submit(WriteOperation.APPROVE, fn)

    async def submit_deposit(self) -> SettlementHandle:
        return await self._submit(WriteOperation.DEPOSIT, self.pool.functions.deposit())

    async def _submit(self, operation: WriteOperation, fn) -> SettlementHandle:
        if self.signer is None:
            raise SubmissionRejectedError("No signer configured for submission")
        sender = AsyncWeb3.to_checksum_address(self.signer.address)
        try:
            nonce = await self.w3.eth.get_transaction_count(sender)
            tx = await fn.build_transaction(
                {
                    "from": sender,
                    "nonce": nonce,
                    "chainId": self.addresses.chain_id,
                }
            )
        except Exception as exc:
            raise _as_ledger_error(exc, SubmissionRejectedError) from exc

        # Signer refusals are already LedgerErrors and pass through unchanged.
        try:
            raw = self.signer.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(raw)
        except LedgerError:
            raise
        except Exception as exc:
            raise _as_ledger_error(exc, SubmissionRejectedError) from exc

        hex_hash = _hex(tx_hash)
        logger.debug("Dispatched %s from %s: %s", operation.value, sender, hex_hash)
        return SettlementHandle(tx_hash=hex_hash, operation=operation)

    async def await_settlement(self, handle: SettlementHandle) -> SettlementReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                handle.tx_hash, timeout=self.receipt_timeout_seconds
            )
        except Exception as exc:
            error = _as_ledger_error(exc, SettlementError)
            error.tx_hash = handle.tx_hash
            raise error from exc

        if receipt.get("status") == 0:
            raise SettlementError(
                f"execution reverted: {handle.operation.value} transaction failed",
                tx_hash=handle.tx_hash,
            )
        return SettlementReceipt(tx_hash=handle.tx_hash, block_number=receipt.get("blockNumber"))


def _checksum(address: str) -> str:
    return AsyncWeb3.to_checksum_address(address)


def _hex(value: Any) -> str:
    text = value.hex() if isinstance(value, (bytes, bytearray)) else str(value)
    return text if text.startswith("0x") else f"0x{text}"


def _error_code(exc: BaseException) -> Optional[Any]:
    """Pull a structured code from web3/provider exceptions when present."""
    code = getattr(exc, "code", None)
    if isinstance(code, (int, str)):
        return code
    for candidate in (getattr(exc, "rpc_response", None), *exc.args[:1]):
        if isinstance(candidate, dict):
            error = candidate.get("error", candidate)
            if isinstance(error, dict) and isinstance(error.get("code"), (int, str)):
                return error["code"]
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(response, "status", None)
    if isinstance(status, int):
        return status
    return None


def _error_text(exc: BaseException) -> str:
    for candidate in (getattr(exc, "rpc_response", None), *exc.args[:1]):
        if isinstance(candidate, dict):
            error = candidate.get("error", candidate)
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    text = str(exc)
    if isinstance(exc, OSError) and text:
        # Keep the transport class name, e.g. ClientConnectorError.
        return f"{type(exc).__name__}: {text}"
    return text or type(exc).__name__


def _as_ledger_error(exc: BaseException, error_cls: type) -> LedgerError:
    if isinstance(exc, LedgerError):
        return exc
    return error_cls(_error_text(exc), code=_error_code(exc))
