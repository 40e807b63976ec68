"""Tests for binding a session provider to the engine."""

import pytest

from conftest import ALICE, BOB, NETWORK, OTHER_NETWORK, settle
from depositor.orchestrator import ApprovalState
from depositor.reconciler import ReconcilerState
from depositor.session import LocalSession, SessionBinding, SessionProvider


@pytest.fixture
def session():
    return LocalSession()


@pytest.fixture
def binding(engine, session):
    return SessionBinding(engine, session)


def test_local_session_satisfies_provider(session):
    assert isinstance(session, SessionProvider)


def test_local_session_notifies_listeners(session):
    seen = []
    unsubscribe = session.subscribe(lambda identity, network: seen.append((identity, network)))
    session.connect(ALICE, NETWORK)
    session.switch_network(NETWORK)
    session.switch_network(OTHER_NETWORK)
    session.disconnect()
    session.disconnect()
    unsubscribe()
    session.connect(BOB, NETWORK)

    assert seen == [(ALICE, NETWORK), (ALICE, OTHER_NETWORK), (None, None)]


@pytest.mark.asyncio
async def test_bind_applies_current_session(engine, session, binding):
    session.connect(ALICE, NETWORK)
    binding.bind()
    await settle()

    assert binding.bound
    assert engine.is_active
    assert engine.snapshot().commitment_fact.identity == ALICE
    binding.unbind()


@pytest.mark.asyncio
async def test_network_switch_suspends_and_resumes(engine, session, binding):
    binding.bind()
    session.connect(ALICE, NETWORK)
    await settle()

    session.switch_network(OTHER_NETWORK)
    assert engine.is_suspended
    assert engine.reconciler.state is ReconcilerState.STOPPED
    assert engine.snapshot().commitment_fact is None

    session.switch_network(NETWORK)
    await settle()
    assert engine.is_active
    assert engine.snapshot().commitment_fact is not None
    binding.unbind()


@pytest.mark.asyncio
async def test_identity_change_resets_state(engine, ledger, session, binding):
    ledger.fund(ALICE, 200)
    binding.bind()
    session.connect(ALICE, NETWORK)
    await settle()
    await engine.approve()
    assert engine.snapshot().approval_state is ApprovalState.APPROVED

    session.connect(BOB, NETWORK)
    await settle()
    snapshot = engine.snapshot()
    assert engine.identity == BOB
    assert snapshot.approval_state is ApprovalState.IDLE
    assert snapshot.commitment_fact.identity == BOB
    binding.unbind()


@pytest.mark.asyncio
async def test_disconnect_and_unbind(engine, ledger, session, binding):
    binding.bind()
    session.connect(ALICE, NETWORK)
    await settle()

    session.disconnect()
    assert engine.identity is None
    assert engine.reconciler.state is ReconcilerState.STOPPED

    binding.unbind()
    assert not binding.bound
    session.connect(ALICE, NETWORK)
    await settle()
    assert engine.identity is None
