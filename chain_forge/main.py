import functools
import json
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import List

import click
import gevent
import gevent.event
import structlog

from chain_forge import __version__
from chain_forge.accounts import Account
from chain_forge.constants import DEFAULT_DATA_ROOT, DEFAULT_INSTANCE_ID, ChainKind, NodeStatus
from chain_forge.exceptions import ChainForgeError, FundingError, NotRunningError
from chain_forge.instance import load_accounts, load_snapshot
from chain_forge.orchestrator import create_orchestrator
from chain_forge.registry import NodeRegistry
from chain_forge.rpc import BitcoinRpcClient, ChainRpcClient, SolanaRpcClient
from chain_forge.services.common.factories import serve
from chain_forge.utils.configuration import InstanceConfig, ProfilesConfig
from chain_forge.utils.logs import configure_logging

log = structlog.get_logger(__name__)

CHAIN_CHOICE = click.Choice([chain.value for chain in ChainKind])
CURRENCIES = {
    ChainKind.BITCOIN: BitcoinRpcClient.currency,
    ChainKind.SOLANA: SolanaRpcClient.currency,
}


def construct_log_file_name(sub_command: str, data_root: Path) -> Path:
    file_name = f"chain-forge-{sub_command}_{datetime.now():%Y-%m-%dT%H:%M:%S}.log"
    return data_root.joinpath("logs", file_name)


def data_root_option(func):
    """Decorator for adding '--data-root' to subcommands."""

    @click.option(
        "--data-root",
        default=str(DEFAULT_DATA_ROOT),
        envvar="CHAIN_FORGE_DATA_ROOT",
        type=click.Path(exists=False, dir_okay=True, file_okay=False),
        show_default=True,
        help="Directory holding the registry and all instance data.",
    )
    @functools.wraps(func)
    def wrapper(*args, data_root, **kwargs):
        return func(*args, data_root=Path(data_root), **kwargs)

    return wrapper


def instance_option(func):
    """Decorator for adding '--instance' to subcommands."""

    @click.option(
        "--instance",
        "instance_id",
        default=DEFAULT_INSTANCE_ID,
        show_default=True,
        help="Id of the instance, lowercase letters, digits and hyphens.",
    )
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def fail(error: Exception):
    click.secho(f"Error: {error}", fg="red", err=True)
    sys.exit(1)


def print_accounts(accounts: List[Account], currency: str):
    for index, account in enumerate(accounts):
        click.echo(f"  [{index}] {account.address}  {account.balance} {currency}")


@click.group(context_settings={"max_content_width": 120})
@click.version_option(__version__)
@click.option("--log-level", default="INFO", show_default=True, help="Console log level.")
@click.option("--log-json", is_flag=True, help="Render console logs as JSON.")
@click.pass_context
def main(ctx, log_level, log_json):
    ctx.ensure_object(dict)
    ctx.obj["log_config"] = {"": "WARNING", "chain_forge": log_level.upper()}
    ctx.obj["log_json"] = log_json
    configure_logging(ctx.obj["log_config"], log_json=log_json)


@main.command(name="start")
@click.argument("chain", type=CHAIN_CHOICE)
@instance_option
@click.option("--name", default=None, help="Display name of the instance.")
@click.option("--profile", default=None, help="Profile of the chain-forge.yaml to use.")
@click.option(
    "--config-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Profiles file. Defaults to ./chain-forge.yaml, then ~/chain-forge.yaml.",
)
@click.option("--accounts", type=int, default=None, help="Number of accounts to generate.")
@click.option("--balance", type=float, default=None, help="Target balance of each account.")
@click.option("--port", type=int, default=None, help="RPC port.")
@click.option("--p2p-port", type=int, default=None, help="P2P port (bitcoin only).")
@click.option("--mnemonic", default=None, help="Seed phrase to derive the accounts from.")
@click.option("--verbose", is_flag=True, help="Show the daemon's output on the console.")
@click.option("--keep-data", is_flag=True, help="Keep the instance data after stopping.")
@data_root_option
@click.pass_context
def start(
    ctx,
    chain,
    instance_id,
    name,
    profile,
    config_file,
    accounts,
    balance,
    port,
    p2p_port,
    mnemonic,
    verbose,
    keep_data,
    data_root,
):
    """Start an instance and keep it running until interrupted.

    Every start wipes the instance's previous data, including its accounts.
    Reuse --mnemonic to get the same accounts again.
    """
    chain = ChainKind(chain)
    log_file = construct_log_file_name("start", data_root)
    configure_logging(ctx.obj["log_config"], log_file=log_file, log_json=ctx.obj["log_json"])

    try:
        settings = ProfilesConfig.load(config_file and Path(config_file)).profile(chain, profile)
        config = InstanceConfig.for_chain(
            chain,
            instance_id=instance_id,
            data_root=data_root,
            rpc_port=port or settings.rpc_port,
            p2p_port=p2p_port or settings.p2p_port,
            accounts=accounts if accounts is not None else settings.accounts,
            balance=balance if balance is not None else settings.initial_balance,
            name=name,
            mnemonic=mnemonic,
            verbose=verbose,
            **(
                {"rpc_user": settings.rpc_user, "rpc_password": settings.rpc_password}
                if chain is ChainKind.BITCOIN
                else {}
            ),
        )
        config.validate()
    except ChainForgeError as e:
        fail(e)

    orchestrator = create_orchestrator(config, keep_data=keep_data)
    shutdown = gevent.event.Event()

    def request_shutdown():
        shutdown.set()
        orchestrator.stop()

    gevent.signal_handler(signal.SIGINT, request_shutdown)
    gevent.signal_handler(signal.SIGTERM, request_shutdown)

    click.secho(f"Starting {chain.value} instance '{config.display_name}'...", fg="yellow")
    with orchestrator:
        try:
            orchestrator.start()
        except FundingError as e:
            click.secho(f"Warning: {e}", fg="yellow", err=True)
        except ChainForgeError as e:
            fail(e)

        click.secho(f"Instance '{config.display_name}' is running", fg="green")
        click.echo(f"  RPC URL: {orchestrator.rpc_endpoint}")
        click.echo(f"  Logs: {log_file}")
        if orchestrator.mnemonic and not mnemonic:
            click.echo(f"  Mnemonic: {orchestrator.mnemonic}")
        click.echo("Accounts:")
        print_accounts(orchestrator.list_accounts(), CURRENCIES[chain])
        click.secho("Press Ctrl+C to stop.", fg="yellow")

        shutdown.wait()
    click.secho("Instance stopped", fg="green")


@main.command(name="accounts")
@click.argument("chain", type=CHAIN_CHOICE)
@instance_option
@click.option("--refresh", is_flag=True, help="Query live balances from the node.")
@click.option("--json", "as_json", is_flag=True, help="Print the accounts as JSON.")
@data_root_option
def accounts_command(chain, instance_id, refresh, as_json, data_root):
    """Show the accounts of an instance started by another process."""
    chain = ChainKind(chain)
    try:
        accounts = load_accounts(chain, instance_id, data_root)
        if refresh:
            client = load_snapshot(chain, instance_id, data_root).connect(chain)
            for account in accounts:
                account.balance = client.get_balance(account.address)
    except ChainForgeError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps([account.to_dict() for account in accounts], indent=2))
    else:
        print_accounts(accounts, CURRENCIES[chain])


def connect_running(chain: ChainKind, instance_id: str, data_root: Path) -> ChainRpcClient:
    """Connect to an instance the registry lists as running."""
    node_id = NodeRegistry.node_id(chain, instance_id)
    entry = NodeRegistry.for_data_root(data_root).get(node_id)
    if entry is None or entry.status is not NodeStatus.RUNNING:
        raise NotRunningError(f"Instance '{node_id}' is not running")
    return load_snapshot(chain, instance_id, data_root).connect(chain)


@main.command(name="fund")
@click.argument("chain", type=CHAIN_CHOICE)
@click.argument("address")
@click.argument("amount", type=float)
@instance_option
@data_root_option
def fund(chain, address, amount, instance_id, data_root):
    """Top up ADDRESS to AMOUNT on a running instance."""
    chain = ChainKind(chain)
    try:
        client = connect_running(chain, instance_id, data_root)
        description = client.set_balance(address, amount)
    except ChainForgeError as e:
        fail(e)
    click.secho(description, fg="green")


@main.command(name="transfer")
@click.argument("from_address", metavar="FROM")
@click.argument("to_address", metavar="TO")
@click.argument("amount", type=float)
@instance_option
@data_root_option
def transfer(from_address, to_address, amount, instance_id, data_root):
    """Send AMOUNT BTC from account FROM to TO on a running bitcoin instance.

    FROM must be one of the instance's accounts. A block is mined to confirm
    the transfer.
    """
    try:
        client = connect_running(ChainKind.BITCOIN, instance_id, data_root)
        txid = client.send_to(to_address, amount, from_address=from_address)
        client.mine_blocks(1, client.new_address("mining"))
        from_balance = client.get_balance(from_address)
        to_balance = client.get_balance(to_address)
    except ChainForgeError as e:
        fail(e)

    click.secho(f"Transferred {amount} BTC. TxID: {txid}", fg="green")
    click.echo(f"  From: {from_address}  {from_balance} BTC")
    click.echo(f"  To:   {to_address}  {to_balance} BTC")


@main.command(name="mine")
@click.option("--blocks", type=click.IntRange(min=1), default=1, show_default=True)
@click.option(
    "--address",
    default=None,
    help="Receiver of the block rewards. Defaults to a fresh wallet address.",
)
@instance_option
@data_root_option
def mine(blocks, address, instance_id, data_root):
    """Mine blocks on a running bitcoin instance."""
    try:
        client = connect_running(ChainKind.BITCOIN, instance_id, data_root)
        address = address or client.new_address("mining")
        block_hashes = client.mine_blocks(blocks, address)
        height = client.block_count()
    except ChainForgeError as e:
        fail(e)

    click.secho(f"Mined {len(block_hashes)} block(s) to {address}", fg="green")
    for block_hash in block_hashes:
        click.echo(f"  {block_hash}")
    click.echo(f"Current height: {height}")


@main.group(name="nodes")
def nodes():
    """Inspect the node registry."""


@nodes.command(name="list")
@click.option("--chain", type=CHAIN_CHOICE, default=None, help="Only list nodes of this chain.")
@data_root_option
def list_nodes(chain, data_root):
    registry = NodeRegistry.for_data_root(data_root)
    entries = registry.list_by_chain(chain) if chain else registry.list()
    if not entries:
        click.echo("No nodes registered.")
        return
    for entry in entries:
        color = "green" if entry.status is NodeStatus.RUNNING else None
        click.secho(
            f"{entry.node_id:<30} {entry.status.value:<8} {entry.rpc_url:<28} "
            f"{entry.display_name()}",
            fg=color,
        )


@nodes.command(name="cleanup")
@data_root_option
def cleanup(data_root):
    """Remove all stopped nodes from the registry."""
    removed = NodeRegistry.for_data_root(data_root).clear_stopped()
    click.echo(f"Removed {len(removed)} stopped node(s).")
    for node_id in removed:
        click.echo(f"  {node_id}")


@main.command(name="serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=3001, show_default=True)
@data_root_option
def serve_command(host, port, data_root):
    """Serve the HTTP API for the node registry."""
    serve(host, port, data_root)
