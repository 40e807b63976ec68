"""Tests for the approve → deposit state machine, driven through the engine."""

import asyncio

import pytest

from conftest import ALICE, BOB, NETWORK, settle
from depositor.classifier import ErrorKind, SourceOperation
from depositor.errors import LedgerError, SettlementError, SubmissionRejectedError
from depositor.ledger import WriteOperation
from depositor.orchestrator import ApprovalState, DepositState


def _user_rejected():
    return SubmissionRejectedError("User rejected the transaction.", code=4001)


async def _activate(engine, identity=ALICE):
    engine.activate(identity, NETWORK)
    await settle()


@pytest.fixture
def approved_ledger(ledger):
    ledger.fund(ALICE, 150)
    ledger.set_allowance(ALICE, 150)
    return ledger


class TestApprove:
    @pytest.mark.asyncio
    async def test_short_balance_makes_no_ledger_calls(self, engine, ledger):
        ledger.fund(ALICE, 100)
        await _activate(engine)
        calls_before = list(ledger.calls)

        state = await engine.approve()

        assert state is ApprovalState.FAILED
        assert ledger.calls == calls_before
        error = engine.snapshot().error_record
        assert error.kind is ErrorKind.INSUFFICIENT_BALANCE
        assert error.source_operation is SourceOperation.APPROVE
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_approve_submits_required_amount(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)

        state = await engine.approve()

        assert state is ApprovalState.APPROVED
        assert ledger.allowances[ALICE] == 150
        assert ledger.calls.count("submit_approve") == 1
        assert engine.snapshot().error_record is None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_existing_allowance_is_picked_up_by_reconciliation(self, engine, approved_ledger):
        await _activate(engine)
        assert engine.snapshot().approval_state is ApprovalState.APPROVED
        assert "submit_approve" not in approved_ledger.calls
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_user_rejection_is_silent(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)
        ledger.fail_submission(WriteOperation.APPROVE, _user_rejected())

        state = await engine.approve()

        assert state is ApprovalState.IDLE
        assert engine.snapshot().error_record is None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_failure_is_surfaced_and_reenterable(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)
        ledger.fail_settlement(WriteOperation.APPROVE, SettlementError("nonce too low"))

        assert await engine.approve() is ApprovalState.FAILED
        assert engine.snapshot().error_record.kind is ErrorKind.NONCE_CONFLICT

        assert await engine.approve() is ApprovalState.APPROVED
        assert engine.snapshot().error_record is None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_fresh_read_catches_balance_drop(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)
        ledger.fund(ALICE, 10)

        assert await engine.approve() is ApprovalState.FAILED
        assert "submit_approve" not in ledger.calls
        assert engine.snapshot().error_record.kind is ErrorKind.INSUFFICIENT_BALANCE
        engine.deactivate()


class TestDeposit:
    @pytest.mark.asyncio
    async def test_deposit_success_is_reflected_immediately(self, engine, approved_ledger):
        await _activate(engine)

        state = await engine.deposit()

        snapshot = engine.snapshot()
        assert state is DepositState.SUCCESS
        assert snapshot.deposit_state is DepositState.SUCCESS
        assert snapshot.commitment_fact.has_committed
        assert ALICE in approved_ledger.deposited
        assert approved_ledger.pool_balance == 150
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_deposit_without_approval_is_a_noop(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)

        assert await engine.deposit() is DepositState.IDLE
        assert "submit_deposit" not in ledger.calls
        assert engine.snapshot().error_record is None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_user_rejection_returns_to_idle(self, engine, approved_ledger):
        await _activate(engine)
        approved_ledger.fail_submission(WriteOperation.DEPOSIT, _user_rejected())

        assert await engine.deposit() is DepositState.IDLE
        snapshot = engine.snapshot()
        assert snapshot.approval_state is ApprovalState.APPROVED
        assert snapshot.error_record is None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_insufficient_allowance_forces_reapproval(self, engine, approved_ledger):
        await _activate(engine)
        approved_ledger.fail_settlement(
            WriteOperation.DEPOSIT, SettlementError("execution reverted: ERC20: insufficient allowance")
        )

        assert await engine.deposit() is DepositState.FAILED
        snapshot = engine.snapshot()
        assert snapshot.approval_state is ApprovalState.IDLE
        assert snapshot.error_record.kind is ErrorKind.INSUFFICIENT_ALLOWANCE
        assert snapshot.error_record.source_operation is SourceOperation.DEPOSIT

        assert await engine.approve() is ApprovalState.APPROVED
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_gas_shortfall_keeps_approval(self, engine, approved_ledger):
        await _activate(engine)
        approved_ledger.fail_submission(
            WriteOperation.DEPOSIT, LedgerError("gas required exceeds allowance (0)", code=-32000)
        )

        assert await engine.deposit() is DepositState.FAILED
        snapshot = engine.snapshot()
        assert snapshot.approval_state is ApprovalState.APPROVED
        assert snapshot.error_record.kind is ErrorKind.GAS_FAILURE
        assert snapshot.error_record.source_operation is SourceOperation.DEPOSIT

        await engine.retry_failed_transaction()
        assert engine.snapshot().deposit_state is DepositState.SUCCESS
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_regressed_allowance_caught_before_submit(self, engine, approved_ledger):
        await _activate(engine)
        approved_ledger.set_allowance(ALICE, 0)

        assert await engine.deposit() is DepositState.FAILED
        await settle()

        snapshot = engine.snapshot()
        assert "submit_deposit" not in approved_ledger.calls
        assert snapshot.approval_state is ApprovalState.IDLE
        assert snapshot.error_record.kind is ErrorKind.INSUFFICIENT_ALLOWANCE

        assert await engine.approve() is ApprovalState.APPROVED
        assert approved_ledger.calls.count("submit_approve") == 1
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_already_deposited_counts_as_success(self, engine, approved_ledger):
        await _activate(engine)
        approved_ledger.fail_settlement(
            WriteOperation.DEPOSIT, SettlementError("execution reverted: already deposited")
        )

        assert await engine.deposit() is DepositState.SUCCESS
        snapshot = engine.snapshot()
        assert snapshot.error_record is None
        assert snapshot.commitment_fact.has_committed
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_other_failure_keeps_approval_and_retries(self, engine, approved_ledger):
        await _activate(engine)
        approved_ledger.fail_settlement(
            WriteOperation.DEPOSIT, SettlementError("execution reverted: course finalized")
        )

        assert await engine.deposit() is DepositState.FAILED
        snapshot = engine.snapshot()
        assert snapshot.approval_state is ApprovalState.APPROVED
        assert snapshot.error_record.kind is ErrorKind.CONTRACT_REVERTED

        await engine.retry_failed_transaction()
        snapshot = engine.snapshot()
        assert snapshot.deposit_state is DepositState.SUCCESS
        assert snapshot.error_record is None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_success_is_terminal(self, engine, approved_ledger):
        await _activate(engine)
        await engine.deposit()

        approved_ledger.deposited.clear()
        engine.retry_status_check()
        await settle()

        snapshot = engine.snapshot()
        assert snapshot.deposit_state is DepositState.SUCCESS
        assert snapshot.commitment_fact.has_committed

        calls_before = list(approved_ledger.calls)
        await engine.approve()
        await engine.deposit()
        assert approved_ledger.calls == calls_before
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_observed_commitment_forces_success(self, engine, ledger):
        ledger.mark_deposited(ALICE)
        await _activate(engine)
        assert engine.snapshot().deposit_state is DepositState.SUCCESS
        engine.deactivate()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_one_write_in_flight(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)
        ledger.hold_settlements()

        first = asyncio.ensure_future(engine.approve())
        await settle()
        assert engine.snapshot().approval_state is ApprovalState.PENDING

        assert await engine.approve() is ApprovalState.PENDING
        assert await engine.deposit() is DepositState.IDLE
        assert ledger.calls.count("submit_approve") == 1

        ledger.release_settlements()
        assert await first is ApprovalState.APPROVED
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_reads_do_not_touch_pending_state(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)
        ledger.hold_settlements()

        task = asyncio.ensure_future(engine.approve())
        await settle()
        ledger.set_allowance(ALICE, 150)
        engine.retry_status_check()
        await settle()
        assert engine.snapshot().approval_state is ApprovalState.PENDING

        ledger.release_settlements()
        await task
        assert engine.snapshot().approval_state is ApprovalState.APPROVED
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_identity_switch_supersedes_write(self, engine, ledger):
        ledger.fund(ALICE, 200)
        await _activate(engine)
        ledger.hold_settlements()

        task = asyncio.ensure_future(engine.approve())
        await settle()
        engine.activate(BOB, NETWORK)
        await settle()
        await task

        snapshot = engine.snapshot()
        assert engine.identity == BOB
        assert snapshot.approval_state is ApprovalState.IDLE
        assert snapshot.commitment_fact.identity == BOB
        assert not engine.orchestrator.write_in_flight
        assert ledger.allowances.get(ALICE, 0) == 0
        engine.deactivate()


class TestErrors:
    @pytest.mark.asyncio
    async def test_read_error_surfaces_then_clears(self, engine, ledger, sleep):
        ledger.fail_reads(LedgerError("503 Service Unavailable"))
        await _activate(engine)

        snapshot = engine.snapshot()
        assert snapshot.error_record.kind is ErrorKind.NETWORK_FAILURE
        assert snapshot.error_record.source_operation is SourceOperation.STATUS_READ
        assert snapshot.retry_state.attempt == 1

        sleep.advance()
        await settle()
        snapshot = engine.snapshot()
        assert snapshot.error_record is None
        assert snapshot.commitment_fact is not None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_read_error_does_not_replace_write_error(self, engine, approved_ledger):
        await _activate(engine)
        approved_ledger.fail_settlement(WriteOperation.DEPOSIT, SettlementError("execution reverted"))
        await engine.deposit()

        approved_ledger.fail_reads(LedgerError("network error"))
        engine.retry_status_check()
        await settle()

        assert engine.snapshot().error_record.source_operation is SourceOperation.DEPOSIT
        engine.dismiss_error()
        assert engine.snapshot().error_record is None
        engine.deactivate()

    @pytest.mark.asyncio
    async def test_retry_after_status_error_reads_again(self, engine, ledger, sleep):
        ledger.fail_reads(LedgerError("request timed out"))
        await _activate(engine)
        assert engine.snapshot().error_record is not None

        await engine.retry_failed_transaction()
        await settle()

        snapshot = engine.snapshot()
        assert snapshot.error_record is None
        assert snapshot.commitment_fact is not None
        assert snapshot.retry_state.attempt == 0
        engine.deactivate()
