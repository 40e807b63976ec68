"""
Depositor CLI: security deposit commitment from the command line.

Commands:
    depositor status    Read commitment, allowance and balance for an address
    depositor deposit   Approve the pool and make the deposit
    depositor watch     Follow an address and report state changes
    depositor journal   View the write-path journal
    depositor demo      Run the full flow against an in-memory ledger
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Optional

import click
import httpx
from click.core import ParameterSource
from eth_account import Account

from .classifier import ErrorClassifier, SourceOperation
from .config import ContractAddresses, EngineConfig, load_rpc_url, normalize_address
from .engine import DepositEngine, EngineSnapshot
from .errors import ConfigurationError, SubmissionRejectedError
from .journal import DEFAULT_JOURNAL_KEY_PATH, DEFAULT_JOURNAL_PATH, Journal
from .ledger import WriteOperation
from .local_ledger import InMemoryLedger
from .money import format_amount, to_base_units
from .orchestrator import ApprovalState, DepositState
from .session import LocalSession, SessionBinding
from .web3_ledger import EthAccountSigner, Web3LedgerClient

logger = logging.getLogger(__name__)


# ── Helpers ───────────────────────────────────────────────────────

def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _load_addresses() -> ContractAddresses:
    addresses = ContractAddresses.from_env()
    addresses.validate()
    return addresses


def _journal(ctx: click.Context) -> Journal:
    return Journal(path=ctx.obj["journal_path"], key_path=ctx.obj["journal_key_path"])


class ConfirmingSigner:
    """Asks for confirmation before each signature, the way a wallet does."""

    def __init__(self, signer: EthAccountSigner, auto_confirm: bool = False):
        self._signer = signer
        self._auto_confirm = auto_confirm

    @property
    def address(self) -> str:
        return self._signer.address

    def sign_transaction(self, transaction: dict[str, Any]) -> bytes:
        if not self._auto_confirm:
            target = transaction.get("to", "?")
            if not click.confirm(f"   Sign transaction to {target}?", default=False):
                raise SubmissionRejectedError("User rejected the transaction.", code=4001)
        return self._signer.sign_transaction(transaction)


async def _offer_retry(engine: DepositEngine) -> None:
    """Re-run the failed write for as long as the user asks to and it stays retriable."""
    while True:
        record = engine.snapshot().error_record
        if record is None:
            return
        click.echo(f"   ❌ {record.message}")
        if not record.retriable or not click.confirm("   Retry?", default=False):
            return
        await engine.retry_failed_transaction()


def _print_snapshot(snapshot: EngineSnapshot, indent: str = "   ") -> None:
    fact = snapshot.commitment_fact
    if fact is not None:
        click.echo(f"{indent}Committed: {'yes' if fact.has_committed else 'no'}")
        if fact.amounts_known:
            click.echo(f"{indent}Required:  {format_amount(fact.required_amount)}")
            click.echo(f"{indent}Allowance: {format_amount(fact.current_allowance)}")
            click.echo(f"{indent}Balance:   {format_amount(fact.owner_balance)}")
    click.echo(f"{indent}Approval:  {snapshot.approval_state.value}")
    click.echo(f"{indent}Deposit:   {snapshot.deposit_state.value}")
    if snapshot.error_record is not None:
        record = snapshot.error_record
        click.echo(f"{indent}❌ {record.message}")
        if record.detail:
            click.echo(f"{indent}   {record.detail}")
    retry = snapshot.retry_state
    if retry.exhausted:
        click.echo(f"{indent}Status checks paused after {retry.attempt} attempts")
    elif retry.attempt:
        click.echo(f"{indent}Status retry {retry.attempt} in {retry.next_delay:.0f}s")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
@click.option(
    "--journal-path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="DEPOSITOR_JOURNAL_PATH",
    default=DEFAULT_JOURNAL_PATH,
    show_default=True,
    help="Journal file location",
)
@click.option(
    "--journal-key-path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="DEPOSITOR_JOURNAL_KEY_PATH",
    default=DEFAULT_JOURNAL_KEY_PATH,
    show_default=True,
    help="Journal HMAC key location",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, journal_path: Path, journal_key_path: Path):
    """Depositor: security deposit commitment against an ERC-20 deposit pool."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    ctx.ensure_object(dict)
    ctx.obj["journal_path"] = journal_path
    ctx.obj["journal_key_path"] = journal_key_path


@main.command()
@click.argument("address")
def status(address: str):
    """Read the deposit status of ADDRESS from the ledger."""
    try:
        identity = normalize_address(address)
        addresses = _load_addresses()
        ledger = Web3LedgerClient(load_rpc_url(), addresses)
    except (ConfigurationError, ValueError) as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    async def read() -> dict:
        return {
            "has_committed": await ledger.read_has_committed(identity),
            "required": await ledger.read_required_amount(),
            "allowance": await ledger.read_allowance(identity),
            "balance": await ledger.read_balance(identity),
            "finalized": await ledger.read_course_finalized_time(),
        }

    try:
        result = asyncio.run(read())
    except Exception as exc:
        record = ErrorClassifier().classify(exc, source=SourceOperation.STATUS_READ)
        click.echo(f"❌ {record.message}", err=True)
        if record.detail:
            click.echo(f"   {record.detail}", err=True)
        sys.exit(1)

    click.echo(f"📊 Deposit status for {identity}")
    click.echo(f"   Pool:      {addresses.pool}")
    click.echo(f"   Network:   {addresses.network}")
    click.echo(f"   Committed: {'✅ yes' if result['has_committed'] else 'no'}")
    click.echo(f"   Required:  {format_amount(result['required'])}")
    click.echo(f"   Allowance: {format_amount(result['allowance'])}")
    click.echo(f"   Balance:   {format_amount(result['balance'])}")
    if result["finalized"]:
        finalized = time.strftime("%Y-%m-%d %H:%M", time.localtime(result["finalized"]))
        click.echo(f"   Finalized: {finalized}")


@main.command()
@click.option("--key", prompt=True, hide_input=True, help="Depositor private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--yes", "-y", is_flag=True, default=False, help="Sign without asking for each transaction")
@click.pass_context
def deposit(ctx: click.Context, key: str, unsafe_allow_key_arg: bool, yes: bool):
    """Approve the pool (if needed) and make the deposit."""
    key_from_argv = ctx.get_parameter_source("key") == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    try:
        private_key = _resolve_private_key(key)
        addresses = _load_addresses()
        signer = ConfirmingSigner(EthAccountSigner.from_key(private_key), auto_confirm=yes)
        ledger = Web3LedgerClient(load_rpc_url(), addresses, signer=signer)
        engine = DepositEngine(ledger, addresses=addresses, journal=_journal(ctx))
    except Exception as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    async def run() -> EngineSnapshot:
        engine.activate(signer.address, addresses.network)
        try:
            await engine.reconciler.refresh()
            if engine.snapshot().deposit_state is not DepositState.SUCCESS:
                click.echo("1️⃣  Approving token spend...")
                await engine.approve()
                await _offer_retry(engine)
                if engine.snapshot().approval_state is ApprovalState.APPROVED:
                    click.echo("2️⃣  Depositing...")
                    await engine.deposit()
                    await _offer_retry(engine)
            return engine.snapshot()
        finally:
            engine.deactivate()

    snapshot = asyncio.run(run())
    click.echo(f"🔐 Deposit for {signer.address}")
    _print_snapshot(snapshot)
    if snapshot.deposit_state is DepositState.SUCCESS:
        click.echo("✅ Deposit committed")
    else:
        sys.exit(1)


@main.command()
@click.argument("address")
@click.option("--webhook-url", default=None, help="Optional webhook URL notified once the deposit is committed")
@click.option("--interval", type=float, default=30.0, show_default=True, help="Polling interval in seconds")
def watch(address: str, webhook_url: Optional[str], interval: float):
    """Follow ADDRESS and report state changes until the deposit is committed."""
    try:
        identity = normalize_address(address)
        addresses = _load_addresses()
        ledger = Web3LedgerClient(load_rpc_url(), addresses)
        config = EngineConfig.for_addresses(addresses, poll_interval_seconds=interval)
        engine = DepositEngine(ledger, config=config, addresses=addresses)
    except (ConfigurationError, ValueError) as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    async def run() -> None:
        updates: asyncio.Queue[EngineSnapshot] = asyncio.Queue()
        unsubscribe = engine.subscribe(updates.put_nowait)
        engine.activate(identity, addresses.network)
        try:
            while True:
                snapshot = await updates.get()
                ts = time.strftime("%H:%M:%S")
                click.echo(f"  {ts} update for {identity}")
                _print_snapshot(snapshot, indent="     ")
                if snapshot.deposit_state is DepositState.SUCCESS:
                    break
        finally:
            unsubscribe()
            engine.deactivate()

        click.echo(f"✅ Deposit committed for {identity}")
        if webhook_url:
            async with httpx.AsyncClient(timeout=5.0) as client:
                await _post_webhook(client, webhook_url, identity, snapshot)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


async def _post_webhook(
    client: httpx.AsyncClient,
    webhook_url: str,
    identity: str,
    snapshot: EngineSnapshot,
) -> None:
    body = {"event": "deposit_committed", "identity": identity, **snapshot.to_dict()}
    try:
        response = await client.post(webhook_url, json=body)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        click.echo(f"❌ Failed to deliver webhook: {exc}", err=True)


@main.command()
@click.option("--identity", default=None, help="Filter by depositor address")
@click.option(
    "--operation",
    type=click.Choice([op.value for op in SourceOperation]),
    default=None,
    help="Filter by operation",
)
@click.option("--tx-hash", default=None, help="Filter by transaction hash")
@click.option("--limit", type=int, default=20, help="Number of entries")
@click.pass_context
def journal(
    ctx: click.Context,
    identity: Optional[str],
    operation: Optional[str],
    tx_hash: Optional[str],
    limit: int,
):
    """View the approve/deposit journal."""
    try:
        if identity is not None:
            identity = normalize_address(identity)
        entries = _journal(ctx).entries(
            identity=identity, operation=operation, tx_hash=tx_hash, limit=limit
        )
    except (ValueError, RuntimeError) as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    if not entries:
        click.echo("No journal entries found.")
        return

    for entry in entries:
        ts = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
        status = "✅" if entry.success else "❌"
        amount = f" {format_amount(entry.amount)}" if entry.amount else ""
        tx = f" tx={entry.tx_hash}" if entry.tx_hash else ""
        reason = f" ({entry.reason})" if entry.reason and not entry.success else ""
        click.echo(f"  {ts} {status} {entry.event_type} {entry.identity}#{entry.seq}{amount}{tx}{reason}")


@main.command()
@click.pass_context
def demo(ctx: click.Context):
    """Run a full demo of the deposit flow against an in-memory ledger."""
    click.echo("🎬 Depositor Demo: Approve → Deposit")
    click.echo("=" * 50)

    journal_ = _journal(ctx)
    addresses = ContractAddresses(pool="0x" + "11" * 20)
    required = to_base_units("50")

    async def run() -> None:
        click.echo("\n1️⃣  Generating test accounts...")
        alice = Account.create()
        bob = Account.create()
        click.echo(f"   Alice (funded):   {alice.address}")
        click.echo(f"   Bob   (unfunded): {bob.address}")

        ledger = InMemoryLedger(required_amount=required, sender=alice.address)
        ledger.fund(alice.address, to_base_units("120"))
        ledger.fund(bob.address, to_base_units("10"))

        engine = DepositEngine(
            ledger,
            config=EngineConfig.for_addresses(addresses, poll_interval_seconds=5.0),
            addresses=addresses,
            journal=journal_,
        )
        session = LocalSession()
        binding = SessionBinding(engine, session)
        binding.bind()

        click.echo("\n2️⃣  Connecting on the wrong network...")
        session.connect(alice.address, "eip155:8453")
        click.echo(f"   Suspended: {engine.is_suspended}")

        click.echo(f"\n3️⃣  Switching to {addresses.network}...")
        session.switch_network(addresses.network)
        await engine.reconciler.refresh()
        _print_snapshot(engine.snapshot())

        click.echo("\n4️⃣  Alice declines the first approval...")
        ledger.fail_submission(
            WriteOperation.APPROVE,
            SubmissionRejectedError("User rejected the transaction.", code=4001),
        )
        await engine.approve()
        click.echo(f"   Approval: {engine.snapshot().approval_state.value}")

        click.echo("\n5️⃣  Approving and depositing...")
        await engine.approve()
        await engine.deposit()
        _print_snapshot(engine.snapshot())

        click.echo("\n6️⃣  Bob tries with a short balance...")
        ledger.use_sender(bob.address)
        session.connect(bob.address, addresses.network)
        await engine.reconciler.refresh()
        await engine.approve()
        _print_snapshot(engine.snapshot())

        binding.unbind()
        click.echo(f"\n   Pool balance: {format_amount(ledger.pool_balance)}")

    asyncio.run(run())

    click.echo("\n7️⃣  Journal (last 10 events)...")
    for entry in journal_.entries(limit=10):
        ts = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
        status = "✅" if entry.success else "❌"
        amount = f" {format_amount(entry.amount)}" if entry.amount else ""
        click.echo(f"   {ts} {status} {entry.event_type}{amount}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Connect → Read → Approve → Deposit → Journal")


if __name__ == "__main__":
    main()
