"""Host-wide registry of chain instances, shared by every chain-forge process.

The registry is a single JSON document::

    {
        "nodes": {
            "bitcoin:default": {
                "node_id": "bitcoin:default",
                "name": "default",
                "chain": "bitcoin",
                "instance_id": "default",
                "rpc_url": "http://127.0.0.1:18443",
                "rpc_port": 18443,
                "accounts_count": 10,
                "status": "running",
                "started_at": "2024-05-01T12:00:00+00:00"
            }
        }
    }

Readers take a shared lock, writers an exclusive one. Both locks are taken on
a sidecar ``registry.json.lock`` file, since the registry file itself is
replaced by an atomic rename on every save. Mutations hold the exclusive lock
for the whole load-modify-save cycle, so concurrent writers in different
processes never drop each other's entries.

Before each save the current file is copied to ``registry.json.bak``. A
corrupt registry file is recovered from that backup, or treated as empty.
"""
import fcntl
import json
import os
import shutil
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import structlog

from chain_forge.constants import REGISTRY_FILENAME, ChainKind, NodeStatus
from chain_forge.exceptions import OtherError

log = structlog.get_logger(__name__)


@dataclass
class RegistryEntry:
    node_id: str
    name: str
    chain: ChainKind
    instance_id: str
    rpc_url: str
    rpc_port: int
    accounts_count: int
    status: NodeStatus = NodeStatus.RUNNING
    started_at: Optional[datetime] = None

    def __post_init__(self):
        self.chain = ChainKind(self.chain)
        self.status = NodeStatus(self.status)
        if isinstance(self.started_at, str):
            self.started_at = datetime.fromisoformat(self.started_at)

    def display_name(self) -> str:
        return self.name or self.instance_id

    def to_dict(self) -> dict:
        data = asdict(self)
        data["chain"] = self.chain.value
        data["status"] = self.status.value
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryEntry":
        return cls(**data)


@dataclass
class RegistryStore:
    nodes: Dict[str, RegistryEntry] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"nodes": {node_id: entry.to_dict() for node_id, entry in self.nodes.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryStore":
        nodes = data["nodes"]
        return cls(
            nodes={node_id: RegistryEntry.from_dict(entry) for node_id, entry in nodes.items()}
        )


class NodeRegistry:
    """File-backed registry of running and stopped instances.

    All methods are safe to call concurrently from independent processes.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + ".bak")
        self.temp_path = self.path.with_name(self.path.name + ".tmp")
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @classmethod
    def for_data_root(cls, data_root: Path) -> "NodeRegistry":
        return cls(Path(data_root).joinpath(REGISTRY_FILENAME))

    @staticmethod
    def node_id(chain: ChainKind, instance_id: str) -> str:
        return f"{ChainKind(chain).value}:{instance_id}"

    @contextmanager
    def _locked(self, exclusive: bool) -> Iterator[None]:
        mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(self.lock_path, "a+")
        except OSError as e:
            raise OtherError(f"Failed to open registry lock file {self.lock_path}: {e}") from e

        with lock_file:
            try:
                fcntl.flock(lock_file.fileno(), mode)
            except OSError as e:
                kind = "exclusive" if exclusive else "shared"
                raise OtherError(f"Failed to acquire {kind} lock on registry: {e}") from e
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _parse(self, path: Path) -> RegistryStore:
        return RegistryStore.from_dict(json.loads(path.read_text()))

    def _read(self) -> RegistryStore:
        if not self.path.exists():
            return RegistryStore()

        try:
            return self._parse(self.path)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning(
                "Registry file is corrupted, trying backup", path=str(self.path), error=str(e)
            )

        if self.backup_path.exists():
            try:
                store = self._parse(self.backup_path)
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                log.warning(
                    "Registry backup is corrupted", path=str(self.backup_path), error=str(e)
                )
            else:
                log.info("Recovered registry from backup", path=str(self.backup_path))
                return store

        log.warning("Starting with an empty registry")
        return RegistryStore()

    def _write(self, store: RegistryStore) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                shutil.copyfile(self.path, self.backup_path)

            with open(self.temp_path, "w") as temp_file:
                json.dump(store.to_dict(), temp_file, indent=2)
                temp_file.flush()
                os.fsync(temp_file.fileno())

            os.replace(self.temp_path, self.path)
        except OSError as e:
            raise OtherError(f"Failed to write registry {self.path}: {e}") from e

    def _mutate(self, mutation: Callable[[RegistryStore], None]) -> None:
        with self._locked(exclusive=True):
            store = self._read()
            mutation(store)
            self._write(store)

    def load(self) -> RegistryStore:
        """Return the current registry contents.

        Never fails because of corrupt content: falls back to the backup,
        then to an empty store.
        """
        if not self.path.exists():
            return RegistryStore()
        with self._locked(exclusive=False):
            return self._read()

    def save(self, store: RegistryStore) -> None:
        """Replace the registry contents with `store`."""
        with self._locked(exclusive=True):
            self._write(store)

    def register(self, entry: RegistryEntry) -> None:
        def add(store):
            store.nodes[entry.node_id] = entry

        self._mutate(add)
        log.debug("Registered node", node_id=entry.node_id)

    def unregister(self, node_id: str) -> None:
        def remove(store):
            store.nodes.pop(node_id, None)

        self._mutate(remove)

    def update_status(self, node_id: str, status: NodeStatus) -> None:
        """Set the status of `node_id`. Unknown ids are ignored."""

        def update(store):
            if node_id in store.nodes:
                store.nodes[node_id].status = NodeStatus(status)

        self._mutate(update)

    def get(self, node_id: str) -> Optional[RegistryEntry]:
        return self.load().nodes.get(node_id)

    def list(self) -> List[RegistryEntry]:
        return list(self.load().nodes.values())

    def list_by_chain(self, chain: ChainKind) -> List[RegistryEntry]:
        chain = ChainKind(chain)
        return [entry for entry in self.list() if entry.chain is chain]

    def mark_all_stopped(self, chain: ChainKind) -> None:
        chain = ChainKind(chain)

        def stop_all(store):
            for entry in store.nodes.values():
                if entry.chain is chain:
                    entry.status = NodeStatus.STOPPED

        self._mutate(stop_all)

    def clear_stopped(self) -> List[str]:
        """Drop every stopped entry and return the removed node ids."""
        removed = []

        def clear(store):
            for node_id, entry in list(store.nodes.items()):
                if entry.status is NodeStatus.STOPPED:
                    removed.append(node_id)
                    del store.nodes[node_id]

        self._mutate(clear)
        return removed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
