"""
Contract address and network configuration.

Addresses come from environment variables. A missing or malformed pool or
token address is a ConfigurationError: the engine refuses to start rather
than start into a broken state.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError


POOL_ADDRESS_ENV = "DEPOSITOR_POOL_ADDRESS"
TOKEN_ADDRESS_ENV = "DEPOSITOR_TOKEN_ADDRESS"
CHAIN_ID_ENV = "DEPOSITOR_CHAIN_ID"
RPC_URL_ENV = "DEPOSITOR_RPC_URL"

DEFAULT_TOKEN_ADDRESS = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
DEFAULT_CHAIN_ID = 1

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_CAIP_NETWORK_RE = re.compile(r"^eip155:(\d+)$")


class Network(str, Enum):
    ETHEREUM_MAINNET = "eip155:1"
    ETHEREUM_SEPOLIA = "eip155:11155111"
    BASE_MAINNET = "eip155:8453"
    BASE_SEPOLIA = "eip155:84532"


def network_for_chain(chain_id: int) -> str:
    return f"eip155:{int(chain_id)}"


def normalize_network(network: str) -> str:
    """Validate and normalize CAIP-2 network identifiers."""
    match = _CAIP_NETWORK_RE.match(str(network).strip())
    if match is None:
        raise ValueError(f"Invalid CAIP-2 network identifier: {network}")
    return network_for_chain(int(match.group(1)))


def is_valid_address(address: str) -> bool:
    return bool(_ADDRESS_RE.match(address or ""))


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


@dataclass(frozen=True)
class ContractAddresses:
    pool: str
    token: str = DEFAULT_TOKEN_ADDRESS
    chain_id: int = DEFAULT_CHAIN_ID

    @property
    def network(self) -> str:
        return network_for_chain(self.chain_id)

    @classmethod
    def from_env(cls) -> "ContractAddresses":
        raw_chain = os.getenv(CHAIN_ID_ENV, "").strip()
        try:
            chain_id = int(raw_chain) if raw_chain else DEFAULT_CHAIN_ID
        except ValueError as exc:
            raise ConfigurationError(f"{CHAIN_ID_ENV} must be an integer, got {raw_chain!r}") from exc
        return cls(
            pool=os.getenv(POOL_ADDRESS_ENV, "").strip(),
            token=os.getenv(TOKEN_ADDRESS_ENV, "").strip() or DEFAULT_TOKEN_ADDRESS,
            chain_id=chain_id,
        )

    def validate(self) -> None:
        if not self.pool:
            raise ConfigurationError(f"{POOL_ADDRESS_ENV} environment variable is required")
        if not self.token:
            raise ConfigurationError(f"{TOKEN_ADDRESS_ENV} environment variable is required")
        if not is_valid_address(self.pool):
            raise ConfigurationError("Invalid deposit pool contract address format")
        if not is_valid_address(self.token):
            raise ConfigurationError("Invalid token contract address format")
        if self.chain_id <= 0:
            raise ConfigurationError(f"Invalid chain id: {self.chain_id}")


def load_rpc_url() -> str:
    url = os.getenv(RPC_URL_ENV, "").strip()
    if not url:
        raise ConfigurationError(f"{RPC_URL_ENV} environment variable is required")
    return url


@dataclass
class EngineConfig:
    """Timing and network settings for the deposit engine."""

    required_network: str = field(default_factory=lambda: network_for_chain(DEFAULT_CHAIN_ID))
    poll_interval_seconds: float = 30.0
    backoff_base_seconds: float = 1.0
    max_retries: int = 3

    @classmethod
    def for_addresses(cls, addresses: ContractAddresses, **overrides) -> "EngineConfig":
        return cls(required_network=addresses.network, **overrides)

    def validate(self) -> None:
        try:
            normalize_network(self.required_network)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll_interval_seconds must be > 0")
        if self.backoff_base_seconds < 0:
            raise ConfigurationError("backoff_base_seconds must be >= 0")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
