"""Tests for the in-memory ledger's contract semantics."""

import asyncio

import pytest

from conftest import ALICE, settle
from depositor.errors import LedgerError, SettlementError, SubmissionRejectedError
from depositor.ledger import LedgerClient, WriteOperation
from depositor.local_ledger import InMemoryLedger


def test_satisfies_ledger_client():
    assert isinstance(InMemoryLedger(), LedgerClient)


@pytest.mark.asyncio
async def test_reads_reflect_setup(ledger):
    ledger.fund(ALICE, 300)
    ledger.set_allowance(ALICE.upper().replace("0X", "0x"), 75)
    assert await ledger.read_balance(ALICE) == 300
    assert await ledger.read_allowance(ALICE) == 75
    assert await ledger.read_required_amount() == 150
    assert not await ledger.read_has_committed(ALICE)
    assert await ledger.read_course_finalized_time() == 0


@pytest.mark.asyncio
async def test_writes_apply_at_settlement(ledger):
    ledger.fund(ALICE, 300)
    handle = await ledger.submit_approve(150)
    assert ledger.allowances.get(ALICE, 0) == 0

    receipt = await ledger.await_settlement(handle)
    assert receipt.tx_hash == handle.tx_hash
    assert ledger.allowances[ALICE] == 150

    await ledger.await_settlement(await ledger.submit_deposit())
    assert ALICE in ledger.deposited
    assert ledger.balances[ALICE] == 150
    assert ledger.allowances[ALICE] == 0
    assert ledger.pool_balance == 150


@pytest.mark.asyncio
async def test_deposit_requires_allowance(ledger):
    ledger.fund(ALICE, 300)
    handle = await ledger.submit_deposit()
    with pytest.raises(SettlementError, match="insufficient allowance") as exc_info:
        await ledger.await_settlement(handle)
    assert exc_info.value.tx_hash == handle.tx_hash


@pytest.mark.asyncio
async def test_deposit_requires_balance(ledger):
    ledger.set_allowance(ALICE, 150)
    with pytest.raises(SettlementError, match="exceeds balance"):
        await ledger.await_settlement(await ledger.submit_deposit())


@pytest.mark.asyncio
async def test_one_deposit_per_account(ledger):
    ledger.fund(ALICE, 300)
    ledger.set_allowance(ALICE, 300)
    await ledger.await_settlement(await ledger.submit_deposit())
    with pytest.raises(SettlementError, match="already deposited"):
        await ledger.await_settlement(await ledger.submit_deposit())


@pytest.mark.asyncio
async def test_submission_without_sender():
    ledger = InMemoryLedger(required_amount=1)
    with pytest.raises(SubmissionRejectedError):
        await ledger.submit_approve(1)


@pytest.mark.asyncio
async def test_unknown_transaction(ledger):
    handle = await ledger.submit_approve(1)
    await ledger.await_settlement(handle)
    with pytest.raises(LedgerError, match="Unknown transaction"):
        await ledger.await_settlement(handle)


@pytest.mark.asyncio
async def test_injected_failures_are_consumed_in_order(ledger):
    ledger.fail_reads(LedgerError("first"), LedgerError("second"))
    ledger.fail_submission(WriteOperation.APPROVE, SubmissionRejectedError("declined"))

    with pytest.raises(LedgerError, match="first"):
        await ledger.read_balance(ALICE)
    with pytest.raises(LedgerError, match="second"):
        await ledger.read_allowance(ALICE)
    assert await ledger.read_balance(ALICE) == 0

    with pytest.raises(SubmissionRejectedError):
        await ledger.submit_approve(1)
    await ledger.submit_approve(1)


@pytest.mark.asyncio
async def test_held_settlement_waits_for_release(ledger):
    ledger.hold_settlements()
    handle = await ledger.submit_approve(150)
    pending = asyncio.ensure_future(ledger.await_settlement(handle))
    await settle()
    assert not pending.done()

    ledger.release_settlements()
    await settle()
    assert pending.done()
    assert ledger.allowances[ALICE] == 150
