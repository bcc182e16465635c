"""Headless control surface for a multisig wallet."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from . import __version__
from .abi import load_abi_file
from .chain import binding_factory
from .core import AppContext, Settings, get_context
from .errors import MultisigError
from .fetcher import CountFetcher
from .models import ActionResult, ConnectionState, SyncState, TransactionsView
from .owners import OwnerWorkflow
from .sync import ResyncPolicy, SyncEngine
from .tx import ActionGateway

console = Console()

SessionAction = Callable[[SyncEngine, ActionGateway], Awaitable[Any]]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="msigctl", description="Multisig wallet control surface")
    parser.add_argument("--version", action="store_true", help="Display version information and exit")
    parser.add_argument("--rpc", default=None, help="JSON-RPC endpoint (overrides RPC_URL)")
    parser.add_argument("--wallet", default=None, help="Multisig address (overrides MULTISIG_ADDRESS)")
    parser.add_argument("--account", default=None, help="Sending owner account (overrides MSIG_ACCOUNT)")
    subparsers = parser.add_subparsers(dest="command")

    # Reads --------------------------------------------------------------
    listing = subparsers.add_parser("list", help="List multisig transactions")
    listing.add_argument("--table", action="store_true", help="Render a table instead of JSON")
    listing.add_argument("--hydrate", action="store_true", help="Load details for every transaction")

    subparsers.add_parser("info", help="Show owners, threshold and transaction count")

    watch = subparsers.add_parser("watch", help="Follow Submission events and print list updates")
    watch.add_argument("--seconds", type=float, default=60.0, help="How long to watch")

    # Transactions -------------------------------------------------------
    submit = subparsers.add_parser("submit", help="Propose a call on a destination contract")
    submit.add_argument("destination")
    submit.add_argument("--abi", required=True, dest="abi_path", help="Destination ABI JSON file")
    submit.add_argument("--method", required=True)
    submit.add_argument("--arg", action="append", default=[], dest="call_args", metavar="NAME=VALUE")
    submit.add_argument("--value", type=int, default=0, help="Wei forwarded with the call")

    for name, help_text in (
        ("confirm", "Confirm a transaction"),
        ("revoke", "Revoke a confirmation"),
        ("execute", "Execute a confirmed transaction"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("transaction_id", type=int)

    # Owners -------------------------------------------------------------
    owners = subparsers.add_parser("owner", help="Propose owner changes")
    owner_sub = owners.add_subparsers(dest="owner_command")
    owner_add = owner_sub.add_parser("add", help="Propose a new owner")
    owner_add.add_argument("address")
    owner_replace = owner_sub.add_parser("replace", help="Propose replacing an owner")
    owner_replace.add_argument("old")
    owner_replace.add_argument("new")

    return parser


def _parse_call_args(pairs: Sequence[str]) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"argument must look like name=value: {pair!r}")
        try:
            parsed[name] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[name] = raw
    return parsed


def _engine(context: AppContext, settings: Settings, web3: Any) -> SyncEngine:
    return SyncEngine(
        binding_factory(web3),
        fetcher=CountFetcher(dedupe_interval=settings.dedupe_interval),
        supported_chain_ids=settings.supported_chain_ids,
        resync_policy=ResyncPolicy(settings.resync_policy),
        poll_interval=settings.poll_interval,
        ledger=context.ledger,
    )


async def _with_session(args: argparse.Namespace, action: SessionAction) -> Any:
    context = get_context()
    settings = context.settings()
    web3 = context.get_web3(rpc_url=args.rpc)
    account = args.account or settings.account
    connection = ConnectionState(
        chain_id=int(web3.eth.chain_id),
        account=account,
        is_connected=bool(web3.is_connected()),
    )
    engine = _engine(context, settings, web3)
    gateway = ActionGateway(engine, ledger=context.ledger)
    try:
        initial = engine.configure(connection, args.wallet or settings.wallet_address)
        if engine.precondition is not None:
            raise engine.precondition
        if initial is not None:
            await initial
        if engine.error is not None:
            raise engine.error
        return await action(engine, gateway)
    finally:
        engine.close()


def _render_table(view: TransactionsView) -> None:
    table = Table(title=f"Multisig transactions ({view.state.value})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Status", style="yellow", no_wrap=True)
    table.add_column("Destination", style="green")
    table.add_column("Value", justify="right")
    table.add_column("Confirmations", style="magenta")
    for tx in view.transactions:
        table.add_row(
            str(tx.id),
            tx.status.value if tx.status is not None else "-",
            tx.destination or "-",
            str(tx.value) if tx.value is not None else "-",
            str(len(tx.confirmations)) if tx.confirmations is not None else "-",
        )
    console.print(table)


def _handle_list(args: argparse.Namespace) -> Any:
    async def action(engine: SyncEngine, gateway: ActionGateway) -> Any:
        if args.hydrate:
            await engine.hydrate_all()
        view = engine.view
        if args.table:
            _render_table(view)
            return None
        return view.serialise()

    return asyncio.run(_with_session(args, action))


def _handle_info(args: argparse.Namespace) -> Any:
    async def action(engine: SyncEngine, gateway: ActionGateway) -> Any:
        binding = engine.binding
        assert binding is not None
        owners = await asyncio.to_thread(binding.owners)
        required = await asyncio.to_thread(binding.required)
        key = engine.session_key
        return {
            "wallet": binding.address,
            "chain_id": key.chain_id if key else None,
            "owners": owners,
            "required": required,
            "transaction_count": len(engine.transactions),
        }

    return asyncio.run(_with_session(args, action))


def _handle_watch(args: argparse.Namespace) -> Any:
    async def action(engine: SyncEngine, gateway: ActionGateway) -> Any:
        updates: List[int] = []

        def _print(view: TransactionsView) -> None:
            if view.state is not SyncState.READY or not view.transactions:
                return
            if updates and updates[-1] == view.transactions[0].id:
                return
            updates.append(view.transactions[0].id)
            console.print(f"[cyan]#{view.transactions[0].id}[/cyan] newest of {len(view.transactions)} transactions")

        remove = engine.on_change(_print)
        try:
            await asyncio.sleep(args.seconds)
        finally:
            remove()
        return {"updates": updates, "transactions": [tx.id for tx in engine.transactions]}

    return asyncio.run(_with_session(args, action))


def _handle_submit(args: argparse.Namespace) -> Any:
    target_abi = load_abi_file(args.abi_path)
    call_args = _parse_call_args(args.call_args)

    async def action(engine: SyncEngine, gateway: ActionGateway) -> ActionResult:
        return await gateway.add_new_transaction(
            args.destination,
            target_abi,
            args.method,
            call_args,
            value=args.value,
        )

    return asyncio.run(_with_session(args, action))


def _handle_transaction(args: argparse.Namespace) -> Any:
    async def action(engine: SyncEngine, gateway: ActionGateway) -> ActionResult:
        operations = {
            "confirm": gateway.confirm_transaction,
            "revoke": gateway.revoke_confirmation,
            "execute": gateway.execute_transaction,
        }
        return await operations[args.command](args.transaction_id)

    return asyncio.run(_with_session(args, action))


def _handle_owner(args: argparse.Namespace) -> Any:
    command = args.owner_command

    async def action(engine: SyncEngine, gateway: ActionGateway) -> ActionResult:
        workflow = OwnerWorkflow(gateway)
        if command == "add":
            return await workflow.add_owner(args.address)
        return await workflow.replace_owner(args.old, args.new)

    if command not in ("add", "replace"):
        raise ValueError("Unknown owner command")
    return asyncio.run(_with_session(args, action))


def _emit(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(f"msigctl {__version__}")
        return 0
    if args.command is None:
        parser.print_help()
        return 1
    handlers = {
        "list": _handle_list,
        "info": _handle_info,
        "watch": _handle_watch,
        "submit": _handle_submit,
        "confirm": _handle_transaction,
        "revoke": _handle_transaction,
        "execute": _handle_transaction,
        "owner": _handle_owner,
    }
    handler = handlers[args.command]
    try:
        result = handler(args)
    except (MultisigError, ValueError, OSError) as exc:
        _emit({"ok": False, "error": str(exc), "kind": type(exc).__name__})
        return 2
    if isinstance(result, ActionResult):
        _emit(result.serialise())
        return 0 if result.ok else 2
    if result is not None:
        _emit(result)
    return 0


__all__ = ["main"]
