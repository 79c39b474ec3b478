"""Per-chain defaults read from a ``chain-forge.yaml`` file.

The file is looked up in the current working directory first, then in the
user's home directory. Its layout mirrors the chains we support::

    bitcoin:
      default:
        accounts: 5
        initial_balance: 2.5
        rpc_port: 18443
        p2p_port: 18444
        rpc_user: chainforge
        rpc_password: chainforge
      profiles:
        heavy:
          accounts: 50

    solana:
      default:
        accounts: 10
        initial_balance: 100.0
        port: 8899

Options missing from a named profile fall back to the chain's ``default``
section, then to the built-in defaults.
"""
from pathlib import Path
from typing import Optional

import structlog
import yaml

from chain_forge import constants
from chain_forge.constants import ChainKind
from chain_forge.exceptions.config import ProfileConfigurationError, ProfileFileError
from chain_forge.utils.configuration.base import ConfigMapping

log = structlog.get_logger(__name__)

BUILTIN_PROFILES = {
    ChainKind.BITCOIN: {
        "accounts": constants.BITCOIN_ACCOUNTS,
        "initial_balance": constants.BITCOIN_BALANCE,
        "rpc_port": constants.BITCOIN_RPC_PORT,
        "p2p_port": constants.BITCOIN_P2P_PORT,
        "rpc_user": constants.BITCOIN_RPC_USER,
        "rpc_password": constants.BITCOIN_RPC_PASSWORD,
    },
    ChainKind.SOLANA: {
        "accounts": constants.SOLANA_ACCOUNTS,
        "initial_balance": constants.SOLANA_BALANCE,
        "port": constants.SOLANA_RPC_PORT,
    },
}


class ProfileConfig(ConfigMapping):
    """Settings of a single chain profile."""

    CONFIGURATION_ERROR = ProfileConfigurationError

    def __init__(self, chain: ChainKind, loaded_yaml: dict):
        merged = dict(BUILTIN_PROFILES[chain])
        merged.update(loaded_yaml or {})
        super(ProfileConfig, self).__init__(merged)
        self.chain = chain
        self.validate()

    @property
    def accounts(self) -> int:
        return self.dict["accounts"]

    @property
    def initial_balance(self) -> float:
        return float(self.dict["initial_balance"])

    @property
    def rpc_port(self) -> int:
        if self.chain is ChainKind.SOLANA:
            return self.dict["port"]
        return self.dict["rpc_port"]

    @property
    def p2p_port(self) -> Optional[int]:
        return self.dict.get("p2p_port")

    @property
    def rpc_user(self) -> Optional[str]:
        return self.dict.get("rpc_user")

    @property
    def rpc_password(self) -> Optional[str]:
        return self.dict.get("rpc_password")

    def validate(self):
        self.assert_option(
            isinstance(self.accounts, int) and self.accounts > 0,
            f"'accounts' must be a positive integer, got {self.accounts!r}",
        )
        self.assert_option(
            isinstance(self.dict["initial_balance"], (int, float))
            and self.initial_balance >= 0,
            f"'initial_balance' must be a non-negative number, got "
            f"{self.dict['initial_balance']!r}",
        )
        self.assert_option(
            isinstance(self.rpc_port, int) and 0 < self.rpc_port < 65536,
            f"RPC port must be a valid port number, got {self.rpc_port!r}",
        )


class ProfilesConfig(ConfigMapping):
    """The parsed ``chain-forge.yaml`` file."""

    CONFIGURATION_ERROR = ProfileConfigurationError

    def __init__(self, loaded_yaml: dict, path: Optional[Path] = None):
        super(ProfilesConfig, self).__init__(loaded_yaml)
        self.path = path
        self.validate()

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProfilesConfig":
        """Load the profiles file at `path`, or look it up in the default locations.

        If no file is found, an empty config is returned, resolving every
        profile to the built-in defaults.
        """
        path = path or cls.find()
        if path is None:
            return cls({})
        try:
            loaded = yaml.safe_load(Path(path).read_text())
        except (OSError, yaml.YAMLError) as e:
            raise ProfileFileError(f"Unable to read profiles from {path}: {e}") from e
        log.debug("Loaded profiles", path=str(path))
        return cls(loaded, path=Path(path))

    @staticmethod
    def find() -> Optional[Path]:
        for directory in (Path.cwd(), Path.home()):
            candidate = directory.joinpath(constants.PROFILES_FILENAME)
            if candidate.is_file():
                return candidate
        return None

    def profile(self, chain: ChainKind, name: Optional[str] = None) -> ProfileConfig:
        chain_section = self.dict.get(chain.value) or {}
        settings = dict(chain_section.get("default") or {})
        if name is not None:
            profiles = chain_section.get("profiles") or {}
            self.assert_option(
                name in profiles, f"Unknown {chain.value} profile '{name}' in {self.path}"
            )
            settings.update(profiles[name] or {})
        return ProfileConfig(chain, settings)

    def validate(self):
        self.assert_option(
            isinstance(self.dict, dict), f"Profiles file must contain a mapping: {self.path}"
        )
        unknown = set(self.dict) - {chain.value for chain in ChainKind}
        self.assert_option(not unknown, f"Unknown chain sections: {', '.join(sorted(unknown))}")
