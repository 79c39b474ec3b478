import json
import os
import socket
import sys
from contextlib import closing
from unittest.mock import patch

import gevent
import pytest

from chain_forge.accounts import AccountsStorage
from chain_forge.constants import ChainKind, NodeStatus
from chain_forge.exceptions import (
    AlreadyRunningError,
    FundingError,
    NodeManagementError,
    NotRunningError,
    StartCancelled,
)
from chain_forge.funding import FaucetFundingCoordinator
from chain_forge.orchestrator import (
    BitcoinOrchestrator,
    InstanceOrchestrator,
    SolanaOrchestrator,
    create_orchestrator,
)
from chain_forge.utils.configuration import InstanceConfig
from chain_forge.utils.process import DaemonExecutor, unused_port

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


class SleeperOrchestrator(InstanceOrchestrator):
    """Supervises a sleeping python process in place of a real backend."""

    chain = ChainKind.SOLANA
    daemon_label = "sleeper"

    def __init__(self, config, client, **kwargs):
        kwargs.setdefault("early_exit_grace", 0.05)
        kwargs.setdefault("readiness_attempts", 3)
        kwargs.setdefault("readiness_interval", 0)
        super(SleeperOrchestrator, self).__init__(config, **kwargs)
        self.stub_client = client

    def build_command(self, config):
        return SLEEPER

    def create_rpc_client(self, config):
        return self.stub_client

    def create_funding_coordinator(self, client):
        return FaucetFundingCoordinator(client, self._cancel, retry_delay=0, account_delay=0)


def process_exists(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.fixture
def config(data_root):
    return InstanceConfig.for_chain(
        ChainKind.SOLANA,
        instance_id="test-node",
        data_root=data_root,
        rpc_port=unused_port(),
        accounts=3,
        balance=5.0,
    )


@pytest.fixture
def make_orchestrator(config, registry, account_generator, stub_client):
    orchestrators = []

    def factory(client=stub_client, **kwargs):
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("account_generator", account_generator)
        orchestrator = SleeperOrchestrator(config, client, **kwargs)
        orchestrators.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in orchestrators:
        orchestrator.stop()


class TestStart:
    def test_start_publishes_funded_running_instance(self, make_orchestrator, config, registry):
        orchestrator = make_orchestrator()
        orchestrator.start()

        assert orchestrator.is_running()
        assert process_exists(orchestrator.supervisor.pid)

        entry = registry.get("solana:test-node")
        assert entry.status is NodeStatus.RUNNING
        assert entry.rpc_port == config.rpc_port
        assert entry.accounts_count == 3

        accounts = AccountsStorage(config.accounts_file).load()
        assert [account.balance for account in accounts] == [5.0, 5.0, 5.0]
        assert accounts == orchestrator.list_accounts()

        snapshot = json.loads(config.snapshot_file.read_text())
        assert snapshot["running"] is True
        assert snapshot["rpc_url"] == config.rpc_url

    def test_start_wipes_previous_instance_data(self, make_orchestrator, config):
        config.instance_dir.mkdir(parents=True)
        stale = config.instance_dir.joinpath("stale.txt")
        stale.write_text("old")

        make_orchestrator().start()

        assert not stale.exists()

    def test_same_mnemonic_yields_same_accounts(self, make_orchestrator, config):
        config.mnemonic = "legal winner thank year wave sausage worth useful legal winner"
        first = make_orchestrator()
        first.start()
        addresses = [account.address for account in first.list_accounts()]
        first.stop()

        second = make_orchestrator()
        second.start()

        assert [account.address for account in second.list_accounts()] == addresses
        assert second.mnemonic == config.mnemonic

    def test_start_of_registered_running_instance_is_refused(
        self, make_orchestrator, registry, make_entry, config, account_generator
    ):
        registry.register(make_entry("test-node", chain=ChainKind.SOLANA, port=config.rpc_port))
        config.instance_dir.mkdir(parents=True)
        marker = config.instance_dir.joinpath("accounts.json")
        marker.write_text("[]")

        orchestrator = make_orchestrator()
        with pytest.raises(AlreadyRunningError, match="already running on port"):
            orchestrator.start()

        assert not orchestrator.is_running()
        assert marker.read_text() == "[]"
        assert account_generator.calls == 0

    def test_second_start_on_same_orchestrator_is_refused(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.start()

        with pytest.raises(AlreadyRunningError):
            orchestrator.start()
        assert orchestrator.is_running()

    def test_occupied_port_fails_before_touching_data(self, make_orchestrator, config):
        config.instance_dir.mkdir(parents=True)
        marker = config.instance_dir.joinpath("marker")
        marker.touch()

        with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
            sock.bind(("0.0.0.0", config.rpc_port))
            sock.listen(1)
            orchestrator = make_orchestrator()
            with pytest.raises(NodeManagementError, match=f"RPC port {config.rpc_port}"):
                orchestrator.start()

        assert marker.exists()
        assert not orchestrator.is_running()

    def test_invalid_instance_id_is_rejected(self, make_orchestrator, config):
        config.instance_id = "My_Node"

        with pytest.raises(ValueError, match="Invalid name 'My_Node'"):
            make_orchestrator().start()

    def test_readiness_timeout_kills_daemon_and_publishes_nothing(
        self, make_orchestrator, stub_client_class, registry, config
    ):
        orchestrator = make_orchestrator(client=stub_client_class(ready=False))

        with pytest.raises(NodeManagementError, match="Stub did not start in time"):
            orchestrator.start()

        assert not orchestrator.is_running()
        assert orchestrator.client is None
        assert registry.get(config.node_id) is None
        assert json.loads(config.snapshot_file.read_text())["running"] is False

    def test_partial_funding_failure_still_publishes_instance(
        self, make_orchestrator, stub_client_class, account_generator, registry, config
    ):
        _, accounts = account_generator.generate(3)
        client = stub_client_class(failing={accounts[1].address})
        orchestrator = make_orchestrator(client=client)

        with pytest.raises(FundingError) as exc_info:
            orchestrator.start()

        assert [failure.index for failure in exc_info.value.failures] == [1]
        assert orchestrator.is_running()
        assert registry.get(config.node_id).status is NodeStatus.RUNNING
        balances = [account.balance for account in AccountsStorage(config.accounts_file).load()]
        assert balances == [5.0, 0.0, 5.0]

    def test_stop_during_start_cancels_initialization(
        self, make_orchestrator, stub_client_class, registry, config
    ):
        orchestrator = make_orchestrator(
            client=stub_client_class(ready=False), readiness_attempts=100, readiness_interval=5
        )
        starter = gevent.spawn(orchestrator.start)
        gevent.sleep(0.5)
        orchestrator.stop()

        with pytest.raises(StartCancelled):
            starter.get(timeout=10)
        assert not orchestrator.is_running()
        assert registry.get(config.node_id) is None


class TestStop:
    def test_stop_unpublishes_and_removes_data(self, make_orchestrator, registry, config):
        orchestrator = make_orchestrator()
        orchestrator.start()
        pid = orchestrator.supervisor.pid

        orchestrator.stop()

        assert not process_exists(pid)
        assert not orchestrator.is_running()
        assert registry.get(config.node_id).status is NodeStatus.STOPPED
        assert not config.instance_dir.exists()

    def test_stop_with_keep_data_marks_snapshot_stopped(self, make_orchestrator, config):
        orchestrator = make_orchestrator(keep_data=True)
        orchestrator.start()
        orchestrator.stop()

        assert config.accounts_file.exists()
        assert json.loads(config.snapshot_file.read_text())["running"] is False

    def test_stop_is_idempotent(self, make_orchestrator, registry, config):
        orchestrator = make_orchestrator()
        orchestrator.stop()
        orchestrator.start()

        with patch.object(
            DaemonExecutor, "kill", autospec=True, side_effect=DaemonExecutor.kill
        ) as mock_kill:
            orchestrator.stop()
            orchestrator.stop()

        assert mock_kill.call_count == 1

        assert registry.get(config.node_id).status is NodeStatus.STOPPED

    def test_context_manager_stops_on_exit(self, make_orchestrator):
        with make_orchestrator() as orchestrator:
            orchestrator.start()
            pid = orchestrator.supervisor.pid

        assert not process_exists(pid)

    def test_balance_operations_require_running_instance(self, make_orchestrator):
        orchestrator = make_orchestrator()

        with pytest.raises(NotRunningError, match="Chain not running"):
            orchestrator.get_balance("addr")
        with pytest.raises(NotRunningError):
            orchestrator.set_balance("addr", 1.0)

    def test_set_balance_tops_up_running_instance(self, make_orchestrator, stub_client):
        orchestrator = make_orchestrator()
        orchestrator.start()

        assert orchestrator.set_balance("someone", 2.5).startswith("Added 2.5 STB")
        assert orchestrator.get_balance("someone") == 2.5
        assert orchestrator.set_balance("someone", 1.0).startswith("Balance already at 2.5")


class TestBackendCommands:
    def test_bitcoin_command_uses_instance_ports_and_credentials(self, data_root):
        config = InstanceConfig.for_chain(
            ChainKind.BITCOIN, instance_id="btc", data_root=data_root, rpc_port=20443
        )
        command = BitcoinOrchestrator(config).build_command(config)

        assert command[:2] == ["bitcoind", "-regtest"]
        assert "-rpcport=20443" in command
        assert "-port=18444" in command
        assert f"-datadir={config.backend_data_dir}" in command
        assert "-rpcuser=chainforge" in command

    def test_solana_command_uses_derived_ports(self, data_root):
        config = InstanceConfig.for_chain(
            ChainKind.SOLANA, instance_id="sol", data_root=data_root, rpc_port=8999
        )
        command = SolanaOrchestrator(config).build_command(config)

        assert command[0] == "solana-test-validator"
        assert command[command.index("--faucet-port") + 1] == "10001"
        assert command[command.index("--dynamic-port-range") + 1] == "10003-10503"
        assert command[command.index("--ledger") + 1] == str(config.backend_data_dir)

    def test_create_orchestrator_picks_chain_backend(self, data_root):
        config = InstanceConfig.for_chain(ChainKind.BITCOIN, data_root=data_root)
        assert isinstance(create_orchestrator(config), BitcoinOrchestrator)

    @patch("chain_forge.orchestrator.get_account_generator")
    def test_account_generator_is_looked_up_lazily(self, mock_lookup, data_root):
        config = InstanceConfig.for_chain(ChainKind.SOLANA, data_root=data_root)
        orchestrator = SolanaOrchestrator(config)
        mock_lookup.assert_not_called()

        assert orchestrator.account_generator is mock_lookup.return_value
        mock_lookup.assert_called_once_with(ChainKind.SOLANA)
