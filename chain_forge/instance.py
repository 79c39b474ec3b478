import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from chain_forge.accounts import Account, AccountsStorage
from chain_forge.constants import ChainKind
from chain_forge.exceptions import InstanceIOError, NotRunningError, SerializationError
from chain_forge.rpc import ChainRpcClient, create_client
from chain_forge.utils.configuration import InstanceConfig

log = structlog.get_logger(__name__)


@dataclass
class InstanceSnapshot:
    """Connection details of an instance, as written to its ``instance.json``.

    Short-lived commands read this to reach an instance started by another
    process. It is never consulted to decide whether an instance is running;
    the registry is.
    """

    instance_id: str
    rpc_url: str
    rpc_port: int
    accounts_count: int
    running: bool = True
    name: Optional[str] = None
    ports: Dict[str, int] = field(default_factory=dict)
    rpc_user: Optional[str] = None
    rpc_password: Optional[str] = None

    @classmethod
    def from_config(cls, config: InstanceConfig, running: bool = True) -> "InstanceSnapshot":
        return cls(
            instance_id=config.instance_id,
            name=config.name,
            rpc_url=config.rpc_url,
            rpc_port=config.rpc_port,
            ports=dict(config.ports),
            accounts_count=config.accounts,
            running=running,
            rpc_user=config.rpc_user,
            rpc_password=config.rpc_password,
        )

    def connect(self, chain: ChainKind, **kwargs) -> ChainRpcClient:
        """Build an RPC client for the instance this snapshot describes."""
        return create_client(chain, self.rpc_url, self.rpc_user, self.rpc_password, **kwargs)

    def save(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(asdict(self), indent=2))
        except OSError as e:
            raise InstanceIOError(f"Unable to write instance info to {path}: {e}") from e

    @classmethod
    def load(cls, path: Path) -> "InstanceSnapshot":
        try:
            content = Path(path).read_text()
        except FileNotFoundError as e:
            raise NotRunningError(f"No instance info found at {path}") from e
        except OSError as e:
            raise InstanceIOError(f"Unable to read instance info from {path}: {e}") from e

        try:
            return cls(**json.loads(content))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Corrupt instance info {path}: {e}") from e


def mark_stopped(path: Path) -> None:
    """Flip the `running` flag of the snapshot at `path`, if there is one."""
    if not path.exists():
        return
    snapshot = InstanceSnapshot.load(path)
    snapshot.running = False
    snapshot.save(path)


def load_snapshot(chain: ChainKind, instance_id: str, data_root: Path) -> InstanceSnapshot:
    """Load the snapshot of an instance started by another process."""
    config = InstanceConfig(chain=chain, instance_id=instance_id, data_root=data_root)
    return InstanceSnapshot.load(config.snapshot_file)


def load_accounts(chain: ChainKind, instance_id: str, data_root: Path) -> List[Account]:
    config = InstanceConfig(chain=chain, instance_id=instance_id, data_root=data_root)
    if not config.accounts_file.exists():
        raise NotRunningError(f"No accounts found for {config.node_id}")
    return AccountsStorage(config.accounts_file).load()
