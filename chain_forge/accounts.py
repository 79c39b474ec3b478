import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from chain_forge.constants import ChainKind
from chain_forge.exceptions import (
    AccountGenerationError,
    ChainForgeError,
    InstanceIOError,
    SerializationError,
)

log = structlog.get_logger(__name__)


@dataclass
class Account:
    """A funded test account of an instance.

    `secret` holds the spend key in the chain's native encoding (WIF for
    Bitcoin, a base58 encoded keypair for Solana).
    """

    address: str
    secret: str
    balance: float = 0.0
    public_key: Optional[str] = None
    mnemonic: Optional[str] = None
    derivation_path: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        return cls(**data)


class AccountsStorage:
    """Persists the ordered account list of an instance as one JSON array.

    The file is always rewritten as a whole.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def save(self, accounts: List[Account]) -> None:
        try:
            payload = json.dumps([account.to_dict() for account in accounts], indent=2)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Unable to encode accounts: {e}") from e

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(payload)
        except OSError as e:
            raise InstanceIOError(f"Unable to write accounts to {self.path}: {e}") from e

    def load(self) -> List[Account]:
        try:
            content = self.path.read_text()
        except OSError as e:
            raise InstanceIOError(f"Unable to read accounts from {self.path}: {e}") from e

        try:
            return [Account.from_dict(data) for data in json.loads(content)]
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Corrupt accounts file {self.path}: {e}") from e


class AccountGenerator(ABC):
    """Derives an ordered list of accounts from seed material.

    The same mnemonic and count always yield the same accounts. Implementations
    are provided by plugins via the ``account_generator`` hook.
    """

    chain: ChainKind

    @abstractmethod
    def generate(self, count: int, mnemonic: Optional[str] = None) -> Tuple[str, List[Account]]:
        """Return the mnemonic used and `count` accounts derived from it.

        If `mnemonic` is None, fresh seed material is generated and returned.
        """


def generate_accounts(
    generator: AccountGenerator, count: int, mnemonic: Optional[str] = None
) -> Tuple[str, List[Account]]:
    """Call `generator`, converting any failure into an :exc:`AccountGenerationError`."""
    try:
        mnemonic, accounts = generator.generate(count, mnemonic)
    except ChainForgeError:
        raise
    except Exception as e:
        raise AccountGenerationError(f"Failed to generate accounts: {e}") from e

    if len(accounts) != count:
        raise AccountGenerationError(
            f"Account generator returned {len(accounts)} account(s), expected {count}"
        )
    log.debug("Generated accounts", count=count)
    return mnemonic, accounts
