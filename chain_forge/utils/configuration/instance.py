from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

from chain_forge import constants
from chain_forge.constants import ChainKind
from chain_forge.exceptions.config import ConfigurationError
from chain_forge.utils.validation import validate_name

log = structlog.get_logger(__name__)

#: Port keys which must be free before a daemon is spawned, with their labels.
RESERVED_PORT_LABELS = {
    ChainKind.BITCOIN: (("rpc", "RPC"), ("p2p", "P2P")),
    ChainKind.SOLANA: (
        ("rpc", "RPC"),
        ("faucet", "Faucet"),
        ("gossip", "Gossip"),
        ("dynamic_start", "Dynamic port range"),
    ),
}


def default_ports(chain: ChainKind, rpc_port: int = None, p2p_port: int = None) -> Dict[str, int]:
    """Build the port map of an instance.

    Solana derives its faucet, gossip and dynamic port range from the RPC port,
    so instances with distinct RPC ports do not collide.
    """
    if chain is ChainKind.BITCOIN:
        return {
            "rpc": rpc_port or constants.BITCOIN_RPC_PORT,
            "p2p": p2p_port or constants.BITCOIN_P2P_PORT,
        }

    rpc_port = rpc_port or constants.SOLANA_RPC_PORT
    faucet_port = rpc_port + constants.SOLANA_FAUCET_PORT_OFFSET
    return {
        "rpc": rpc_port,
        "faucet": faucet_port,
        "gossip": faucet_port + 1,
        "dynamic_start": faucet_port + 2,
        "dynamic_end": faucet_port + 2 + constants.SOLANA_DYNAMIC_PORT_SPAN,
    }


@dataclass
class InstanceConfig:
    """Everything needed to start one instance of a chain backend.

    All on-disk locations of the instance are derived from :attr:`data_root`,
    :attr:`chain` and :attr:`instance_id`::

        <data_root>/<chain>/instances/<instance_id>/
            accounts.json
            instance.json
            regtest-data/ | test-ledger/
    """

    chain: ChainKind
    instance_id: str = constants.DEFAULT_INSTANCE_ID
    name: Optional[str] = None
    ports: Dict[str, int] = field(default_factory=dict)
    accounts: int = constants.BITCOIN_ACCOUNTS
    balance: float = constants.BITCOIN_BALANCE
    mnemonic: Optional[str] = None
    data_root: Path = constants.DEFAULT_DATA_ROOT
    rpc_user: Optional[str] = None
    rpc_password: Optional[str] = None
    verbose: bool = False

    def __post_init__(self):
        self.chain = ChainKind(self.chain)
        self.data_root = Path(self.data_root)
        if not self.ports:
            self.ports = default_ports(self.chain)

    @classmethod
    def for_chain(
        cls,
        chain: ChainKind,
        instance_id: str = constants.DEFAULT_INSTANCE_ID,
        data_root: Path = constants.DEFAULT_DATA_ROOT,
        rpc_port: int = None,
        p2p_port: int = None,
        accounts: int = None,
        balance: float = None,
        **kwargs,
    ) -> "InstanceConfig":
        """Create a config populated with the chain's defaults for anything not given."""
        chain = ChainKind(chain)
        if chain is ChainKind.BITCOIN:
            kwargs.setdefault("rpc_user", constants.BITCOIN_RPC_USER)
            kwargs.setdefault("rpc_password", constants.BITCOIN_RPC_PASSWORD)
        return cls(
            chain=chain,
            instance_id=instance_id,
            data_root=data_root,
            ports=default_ports(chain, rpc_port, p2p_port),
            accounts=accounts if accounts is not None else constants.DEFAULT_ACCOUNT_COUNTS[chain],
            balance=balance if balance is not None else constants.DEFAULT_BALANCES[chain],
            **kwargs,
        )

    @property
    def node_id(self) -> str:
        return f"{self.chain.value}:{self.instance_id}"

    @property
    def display_name(self) -> str:
        return self.name or self.instance_id

    @property
    def rpc_port(self) -> int:
        return self.ports["rpc"]

    @property
    def rpc_url(self) -> str:
        return f"http://{constants.LOCALHOST}:{self.rpc_port}"

    @property
    def chain_dir(self) -> Path:
        return self.data_root.joinpath(self.chain.value)

    @property
    def instance_dir(self) -> Path:
        return self.chain_dir.joinpath("instances", self.instance_id)

    @property
    def accounts_file(self) -> Path:
        return self.instance_dir.joinpath(constants.ACCOUNTS_FILENAME)

    @property
    def snapshot_file(self) -> Path:
        return self.instance_dir.joinpath(constants.SNAPSHOT_FILENAME)

    @property
    def backend_data_dir(self) -> Path:
        return self.instance_dir.joinpath(constants.BACKEND_DATA_DIRS[self.chain])

    @property
    def registry_file(self) -> Path:
        return self.data_root.joinpath(constants.REGISTRY_FILENAME)

    def reserved_ports(self) -> List[Tuple[int, str]]:
        """Return `(port, label)` pairs of every port the daemon binds exclusively."""
        return [(self.ports[key], label) for key, label in RESERVED_PORT_LABELS[self.chain]]

    def validate(self) -> None:
        validate_name(self.instance_id)
        if self.accounts < 1:
            raise ConfigurationError(f"Account count must be at least 1, got {self.accounts}")
        if self.balance < 0:
            raise ConfigurationError(f"Target balance must not be negative, got {self.balance}")
        missing = [key for key, _ in RESERVED_PORT_LABELS[self.chain] if key not in self.ports]
        if missing:
            raise ConfigurationError(
                f"Missing {self.chain.value} port(s): {', '.join(missing)}"
            )
        if self.chain is ChainKind.BITCOIN and not (self.rpc_user and self.rpc_password):
            raise ConfigurationError("Bitcoin instances require RPC credentials")
