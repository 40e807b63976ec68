"""CLI tests: demo flow, journal output and key handling."""

import pytest
from click.testing import CliRunner
from eth_account import Account

from depositor.classifier import ErrorClassifier, ErrorKind
from depositor.cli import ConfirmingSigner, _resolve_private_key, main
from depositor.config import POOL_ADDRESS_ENV
from depositor.errors import SubmissionRejectedError
from depositor.journal import EventType, Journal
from depositor.web3_ledger import EthAccountSigner


@pytest.fixture
def journal_args(tmp_path):
    return [
        "--journal-path", str(tmp_path / "journal.jsonl"),
        "--journal-key-path", str(tmp_path / "secret" / "journal_hmac.key"),
    ]


def test_demo_runs_full_flow(journal_args):
    runner = CliRunner()
    result = runner.invoke(main, [*journal_args, "demo"])

    assert result.exit_code == 0, result.output
    assert "Suspended: True" in result.output
    assert "Approval: idle" in result.output
    assert "approve_rejected" in result.output
    assert "Deposit:   success" in result.output
    assert "deposit_confirmed" in result.output
    assert "approve_failed" in result.output
    assert "Pool balance: 50.00 USDT" in result.output
    assert "Demo complete" in result.output


def test_journal_empty(journal_args):
    result = CliRunner().invoke(main, [*journal_args, "journal"])
    assert result.exit_code == 0
    assert "No journal entries found." in result.output


def test_journal_lists_demo_events(journal_args):
    runner = CliRunner()
    runner.invoke(main, [*journal_args, "demo"])
    result = runner.invoke(main, [*journal_args, "journal", "--limit", "3"])

    assert result.exit_code == 0
    lines = [line for line in result.output.splitlines() if line.strip()]
    assert len(lines) == 3
    assert "approve_failed" in lines[-1]


def test_deposit_rejects_raw_key_on_argv(journal_args):
    key = Account.create().key.hex()
    result = CliRunner().invoke(main, [*journal_args, "deposit", "--key", key])

    assert result.exit_code != 0
    assert "Refusing --key from argv" in result.output


def test_status_requires_configuration(monkeypatch):
    monkeypatch.delenv(POOL_ADDRESS_ENV, raising=False)
    result = CliRunner().invoke(main, ["status", "0x" + "a1" * 20])

    assert result.exit_code == 1
    assert POOL_ADDRESS_ENV in result.output


def test_status_rejects_bad_address():
    result = CliRunner().invoke(main, ["status", "not-an-address"])
    assert result.exit_code == 1
    assert "Invalid Ethereum address" in result.output


def test_resolve_private_key():
    raw = "11" * 32
    assert _resolve_private_key(raw) == "0x" + raw
    assert _resolve_private_key("0x" + raw) == "0x" + raw
    with pytest.raises(ValueError):
        _resolve_private_key("0x1234")


def test_declined_signature_is_a_user_rejection(monkeypatch):
    signer = ConfirmingSigner(EthAccountSigner(Account.create()))
    monkeypatch.setattr("depositor.cli.click.confirm", lambda *args, **kwargs: False)

    with pytest.raises(SubmissionRejectedError) as exc_info:
        signer.sign_transaction({"to": "0x" + "11" * 20})

    assert ErrorClassifier().kind_of(exc_info.value) is ErrorKind.USER_REJECTED


def test_auto_confirm_signs(monkeypatch):
    account = Account.create()
    signer = ConfirmingSigner(EthAccountSigner(account), auto_confirm=True)
    raw = signer.sign_transaction(
        {
            "to": Account.create().address,
            "value": 0,
            "gas": 21000,
            "gasPrice": 1,
            "nonce": 0,
            "chainId": 1,
        }
    )
    assert isinstance(raw, bytes) and raw
    assert signer.address == account.address


def test_journal_filters_normalize_identity(tmp_path, journal_args):
    alice = "0x" + "a1" * 20
    journal = Journal(path=tmp_path / "journal.jsonl", key_path=tmp_path / "secret" / "journal_hmac.key")
    journal.record(EventType.APPROVE_SUBMITTED, alice, tx_hash="0x01")
    journal.record(EventType.DEPOSIT_SUBMITTED, alice, tx_hash="0x02")
    journal.record(EventType.APPROVE_SUBMITTED, "0x" + "b2" * 20)

    runner = CliRunner()
    result = runner.invoke(
        main, [*journal_args, "journal", "--identity", " 0X" + "A1" * 20, "--operation", "deposit"]
    )
    assert result.exit_code == 0, result.output
    lines = [line for line in result.output.splitlines() if line.strip()]
    assert len(lines) == 1
    assert "deposit_submitted" in lines[0]
    assert "tx=0x02" in lines[0]

    result = runner.invoke(main, [*journal_args, "journal", "--identity", "not-an-address"])
    assert result.exit_code == 1
    assert "Invalid Ethereum address" in result.output
