"""Lifecycle of a single chain instance.

Starting an instance runs through these steps, in order::

    check not running -> preflight ports -> wipe instance dir -> generate accounts
    -> spawn daemon -> check early exit -> write snapshot
    -> [wait for readiness -> fund accounts] -> write accounts -> publish to registry

The bracketed steps run in a greenlet which :meth:`InstanceOrchestrator.start`
joins before returning. A concurrent :meth:`InstanceOrchestrator.stop`
interrupts them through the orchestrator's cancel event.

Every start wipes the previous data of the instance. Only ``--keep-data`` on
stop preserves it, for inspection.
"""
import atexit
import shutil
from pathlib import Path
from typing import List, Optional

import gevent
import gevent.event
import structlog

from chain_forge import constants
from chain_forge.accounts import Account, AccountGenerator, AccountsStorage, generate_accounts
from chain_forge.constants import ChainKind, NodeStatus
from chain_forge.exceptions import (
    AlreadyRunningError,
    ChainForgeError,
    FundingError,
    NodeManagementError,
    NotRunningError,
    OtherError,
)
from chain_forge.funding import (
    ConfirmationFundingCoordinator,
    FaucetFundingCoordinator,
    FundingCoordinator,
    SettlementParams,
)
from chain_forge.hooks import get_account_generator
from chain_forge.instance import InstanceSnapshot, mark_stopped
from chain_forge.registry import NodeRegistry, RegistryEntry, utc_now
from chain_forge.rpc import BitcoinRpcClient, ChainRpcClient, SolanaRpcClient
from chain_forge.utils.configuration import InstanceConfig
from chain_forge.utils.process import ProcessSupervisor

log = structlog.get_logger(__name__)


class InstanceOrchestrator:
    """Starts, funds, publishes and stops one instance of a chain backend.

    Subclasses provide the backend specifics: the daemon command line, the
    RPC client and the funding strategy.
    """

    chain: ChainKind
    daemon_label = "daemon"
    open_files_limit: Optional[int] = None

    def __init__(
        self,
        config: InstanceConfig,
        registry: NodeRegistry = None,
        account_generator: AccountGenerator = None,
        keep_data: bool = False,
        early_exit_grace: float = constants.EARLY_EXIT_GRACE,
        readiness_attempts: int = constants.READINESS_ATTEMPTS,
        readiness_interval: float = constants.READINESS_INTERVAL,
    ):
        self.config = config
        self.registry = registry or NodeRegistry(config.registry_file)
        self._account_generator = account_generator
        self.keep_data = keep_data
        self.early_exit_grace = early_exit_grace
        self.readiness_attempts = readiness_attempts
        self.readiness_interval = readiness_interval

        self.supervisor = ProcessSupervisor(
            self.daemon_label, verbose=config.verbose, open_files_limit=self.open_files_limit
        )
        self.client: Optional[ChainRpcClient] = None
        self.accounts: List[Account] = []
        self.mnemonic: Optional[str] = None
        self._cancel = gevent.event.Event()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    @property
    def account_generator(self) -> AccountGenerator:
        if self._account_generator is None:
            self._account_generator = get_account_generator(self.chain)
        return self._account_generator

    @property
    def rpc_endpoint(self) -> str:
        return self.config.rpc_url

    def build_command(self, config: InstanceConfig) -> List[str]:
        raise NotImplementedError

    def create_rpc_client(self, config: InstanceConfig) -> ChainRpcClient:
        raise NotImplementedError

    def create_funding_coordinator(self, client: ChainRpcClient) -> FundingCoordinator:
        raise NotImplementedError

    def diagnostic_log(self, config: InstanceConfig) -> Optional[Path]:
        """The daemon's own log file, scanned for errors if it exits right away."""
        return None

    def prepare_data_dirs(self, config: InstanceConfig) -> None:
        config.instance_dir.mkdir(parents=True, exist_ok=True)

    def is_running(self) -> bool:
        return self.supervisor.is_running()

    def list_accounts(self) -> List[Account]:
        return list(self.accounts)

    def get_balance(self, address: str) -> float:
        return self._require_client().get_balance(address)

    def set_balance(self, address: str, amount: float) -> str:
        return self._require_client().set_balance(address, amount)

    def _require_client(self) -> ChainRpcClient:
        if self.client is None:
            raise NotRunningError()
        return self.client

    def _check_not_running(self, config: InstanceConfig) -> None:
        if self.supervisor.is_running():
            raise AlreadyRunningError()

        entry = self.registry.get(config.node_id)
        if entry is not None and entry.status is NodeStatus.RUNNING:
            raise AlreadyRunningError(
                f"Instance '{config.instance_id}' is already running on port {entry.rpc_port}. "
                f"Stop it first or use a different instance id."
            )

    def _wipe_instance_dir(self, config: InstanceConfig) -> None:
        if not config.instance_dir.exists():
            return
        try:
            shutil.rmtree(config.instance_dir)
        except OSError as e:
            raise NodeManagementError(
                f"Failed to clear instance data at {config.instance_dir}: {e}"
            ) from e
        log.debug("Cleared previous instance data", path=str(config.instance_dir))

    def start(self, config: InstanceConfig = None) -> None:
        """Start the instance described by `config` (or the one given on construction).

        Returns once the daemon is ready and every account was attempted.

        :raises AlreadyRunningError: if this orchestrator or another process runs the instance.
        :raises FundingError: if some accounts could not be funded. The instance
            is published and running nevertheless.
        """
        config = config or self.config
        config.validate()
        self._check_not_running(config)

        for port, label in config.reserved_ports():
            self.supervisor.preflight_port(port, label)

        self.config = config
        self._cancel.clear()
        node_log = log.bind(node_id=config.node_id)

        self._wipe_instance_dir(config)
        self.mnemonic, accounts = generate_accounts(
            self.account_generator, config.accounts, config.mnemonic
        )
        for account in accounts:
            account.balance = config.balance
        storage = AccountsStorage(config.accounts_file)
        storage.save(accounts)
        self.accounts = accounts

        self.prepare_data_dirs(config)
        self.supervisor.spawn(self.build_command(config), config.instance_dir)
        atexit.register(self.stop)
        node_log.info("Daemon spawned, waiting for it to become ready", pid=self.supervisor.pid)

        try:
            self.supervisor.check_early_exit(self.early_exit_grace, self.diagnostic_log(config))
            InstanceSnapshot.from_config(config).save(config.snapshot_file)
            self.client = self.create_rpc_client(config)

            worker = gevent.spawn(self._initialize, self.client, accounts, config.balance)
            result = worker.get()
            if isinstance(result, gevent.GreenletExit):
                raise OtherError("Instance initialization was cancelled")
        except Exception:
            self._abort_start(config)
            raise

        funding_error = result
        storage.save(accounts)

        try:
            self.registry.register(
                RegistryEntry(
                    node_id=config.node_id,
                    name=config.display_name,
                    chain=config.chain,
                    instance_id=config.instance_id,
                    rpc_url=config.rpc_url,
                    rpc_port=config.rpc_port,
                    accounts_count=len(accounts),
                    status=NodeStatus.RUNNING,
                    started_at=utc_now(),
                )
            )
        except ChainForgeError as e:
            node_log.warning("Failed to publish instance to registry", error=str(e))

        node_log.info("Instance started", rpc_url=config.rpc_url, accounts=len(accounts))
        if funding_error is not None:
            raise funding_error

    def _initialize(
        self, client: ChainRpcClient, accounts: List[Account], target: float
    ) -> Optional[FundingError]:
        client.wait_ready(self.readiness_attempts, self.readiness_interval, self._cancel)
        coordinator = self.create_funding_coordinator(client)
        try:
            coordinator.fund(accounts, target)
        except FundingError as e:
            return e
        return None

    def _abort_start(self, config: InstanceConfig) -> None:
        self.supervisor.stop()
        atexit.unregister(self.stop)
        self.client = None
        try:
            mark_stopped(config.snapshot_file)
        except ChainForgeError as e:
            log.warning("Failed to update instance info", error=str(e))

    def stop(self) -> None:
        """Stop the daemon, unpublish it and clear its data unless `keep_data` is set.

        Safe to call repeatedly, and while :meth:`start` is still in progress.
        """
        self._cancel.set()
        if not self.supervisor.stop():
            return

        atexit.unregister(self.stop)
        config = self.config
        self.client = None

        try:
            self.registry.update_status(config.node_id, NodeStatus.STOPPED)
        except ChainForgeError as e:
            log.warning("Failed to update registry", node_id=config.node_id, error=str(e))

        try:
            mark_stopped(config.snapshot_file)
        except ChainForgeError as e:
            log.warning("Failed to update instance info", error=str(e))

        if not self.keep_data:
            shutil.rmtree(config.instance_dir, ignore_errors=True)
        log.info("Instance stopped", node_id=config.node_id, kept_data=self.keep_data)


class BitcoinOrchestrator(InstanceOrchestrator):
    chain = ChainKind.BITCOIN
    daemon_label = "bitcoind"
    open_files_limit = constants.BITCOIN_OPEN_FILES_LIMIT

    def __init__(self, config: InstanceConfig, settlement: SettlementParams = None, **kwargs):
        super(BitcoinOrchestrator, self).__init__(config, **kwargs)
        self.settlement = settlement or SettlementParams()

    def prepare_data_dirs(self, config: InstanceConfig) -> None:
        config.backend_data_dir.mkdir(parents=True, exist_ok=True)

    def build_command(self, config: InstanceConfig) -> List[str]:
        return [
            "bitcoind",
            "-regtest",
            f"-rpcport={config.ports['rpc']}",
            f"-port={config.ports['p2p']}",
            f"-datadir={config.backend_data_dir}",
            f"-rpcuser={config.rpc_user}",
            f"-rpcpassword={config.rpc_password}",
            "-server=1",
            "-txindex=1",
            "-fallbackfee=0.0001",
            "-daemon=0",
            f"-printtoconsole={1 if config.verbose else 0}",
        ]

    def diagnostic_log(self, config: InstanceConfig) -> Optional[Path]:
        return config.backend_data_dir.joinpath("regtest", "debug.log")

    def create_rpc_client(self, config: InstanceConfig) -> BitcoinRpcClient:
        return BitcoinRpcClient(config.rpc_url, config.rpc_user, config.rpc_password)

    def create_funding_coordinator(self, client: ChainRpcClient) -> FundingCoordinator:
        return ConfirmationFundingCoordinator(client, self._cancel, params=self.settlement)


class SolanaOrchestrator(InstanceOrchestrator):
    chain = ChainKind.SOLANA
    daemon_label = "validator"

    def build_command(self, config: InstanceConfig) -> List[str]:
        ports = config.ports
        return [
            "solana-test-validator",
            "--rpc-port",
            str(ports["rpc"]),
            "--faucet-port",
            str(ports["faucet"]),
            "--gossip-port",
            str(ports["gossip"]),
            "--dynamic-port-range",
            f"{ports['dynamic_start']}-{ports['dynamic_end']}",
            "--ledger",
            str(config.backend_data_dir),
            "--reset",
        ]

    def diagnostic_log(self, config: InstanceConfig) -> Optional[Path]:
        return config.backend_data_dir.joinpath("validator.log")

    def create_rpc_client(self, config: InstanceConfig) -> SolanaRpcClient:
        return SolanaRpcClient(config.rpc_url, cancel=self._cancel)

    def create_funding_coordinator(self, client: ChainRpcClient) -> FundingCoordinator:
        return FaucetFundingCoordinator(client, self._cancel)


ORCHESTRATORS = {ChainKind.BITCOIN: BitcoinOrchestrator, ChainKind.SOLANA: SolanaOrchestrator}


def create_orchestrator(config: InstanceConfig, **kwargs) -> InstanceOrchestrator:
    """Return the orchestrator for `config`'s chain."""
    return ORCHESTRATORS[config.chain](config, **kwargs)
