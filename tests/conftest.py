"""Shared fixtures: an in-memory ledger, a controllable sleep, and an engine."""

import asyncio

import pytest

from depositor.config import ContractAddresses
from depositor.engine import DepositEngine
from depositor.local_ledger import InMemoryLedger


ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
POOL = "0x" + "11" * 20
NETWORK = "eip155:1"
OTHER_NETWORK = "eip155:8453"


class FakeSleep:
    """Records requested delays; sleepers only wake on ``advance()``."""

    def __init__(self):
        self.delays: list[float] = []
        self._pending: list[asyncio.Future] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        waiter = asyncio.get_running_loop().create_future()
        self._pending.append(waiter)
        await waiter

    def advance(self) -> None:
        pending, self._pending = self._pending, []
        for waiter in pending:
            if not waiter.done():
                waiter.set_result(None)


async def settle(rounds: int = 50) -> None:
    """Let background tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def sleep():
    return FakeSleep()


@pytest.fixture
def ledger():
    return InMemoryLedger(required_amount=150, sender=ALICE)


@pytest.fixture
def addresses():
    return ContractAddresses(pool=POOL)


@pytest.fixture
def engine(ledger, addresses, sleep):
    return DepositEngine(ledger, addresses=addresses, sleep=sleep)
