from enum import Enum
from pathlib import Path

#: The namespace plugins should use as a prefix when creating a :class:`pluggy.HookimplMarker`.
HOST_NAMESPACE = "chain_forge"


class ChainKind(Enum):
    BITCOIN = "bitcoin"
    SOLANA = "solana"


class NodeStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


DATA_DIR_NAME = ".chain-forge"
DEFAULT_DATA_ROOT = Path.home().joinpath(DATA_DIR_NAME)
DEFAULT_INSTANCE_ID = "default"
LOCALHOST = "127.0.0.1"

REGISTRY_FILENAME = "registry.json"
ACCOUNTS_FILENAME = "accounts.json"
SNAPSHOT_FILENAME = "instance.json"
PROFILES_FILENAME = "chain-forge.yaml"

#: Directory name of the daemon's own data inside an instance directory.
BACKEND_DATA_DIRS = {ChainKind.BITCOIN: "regtest-data", ChainKind.SOLANA: "test-ledger"}

# Bitcoin regtest defaults.
BITCOIN_RPC_PORT = 18443
BITCOIN_P2P_PORT = 18444
BITCOIN_ACCOUNTS = 10
BITCOIN_BALANCE = 10.0
BITCOIN_RPC_USER = "chainforge"
BITCOIN_RPC_PASSWORD = "chainforge"
BITCOIN_WALLET_NAME = "chain-forge"
BITCOIN_OPEN_FILES_LIMIT = 10240

# Settlement parameters of the regtest chain.
COINBASE_MATURITY = 100
INITIAL_BLOCK_REWARD = 50.0
HALVING_INTERVAL = 150
MIN_BLOCK_REWARD = 1e-8
CONFIRMATION_BLOCKS = 6
FEE_BUFFER_PER_ACCOUNT = 0.001

# Solana test validator defaults.
SOLANA_RPC_PORT = 8899
SOLANA_ACCOUNTS = 10
SOLANA_BALANCE = 100.0
SOLANA_FAUCET_PORT_OFFSET = 1002
SOLANA_DYNAMIC_PORT_SPAN = 500
LAMPORTS_PER_SOL = 1_000_000_000

DEFAULT_BALANCES = {ChainKind.BITCOIN: BITCOIN_BALANCE, ChainKind.SOLANA: SOLANA_BALANCE}
DEFAULT_ACCOUNT_COUNTS = {ChainKind.BITCOIN: BITCOIN_ACCOUNTS, ChainKind.SOLANA: SOLANA_ACCOUNTS}

# Timings, in seconds.
EARLY_EXIT_GRACE = 1.0
READINESS_ATTEMPTS = 60
READINESS_INTERVAL = 0.5
RPC_TIMEOUT = 30
WALLET_SETTLE_DELAY = 0.5
SEND_SETTLE_DELAY = 0.1
FAUCET_ATTEMPTS = 3
FAUCET_RETRY_DELAY = 2.0
FAUCET_ACCOUNT_DELAY = 0.5
AIRDROP_CONFIRMATION_ATTEMPTS = 30
AIRDROP_CONFIRMATION_INTERVAL = 0.5
