from chain_forge.exceptions.base import (
    AccountGenerationError,
    AlreadyRunningError,
    ChainForgeError,
    InstanceIOError,
    InsufficientFundsError,
    NodeManagementError,
    NotRunningError,
    OtherError,
    SerializationError,
    StartCancelled,
)
from chain_forge.exceptions.config import ConfigurationError, InvalidNameError
from chain_forge.exceptions.rpc import (
    FundingError,
    FundingFailure,
    RpcConnectionError,
    RpcError,
    RpcResponseError,
)

__all__ = [
    "AccountGenerationError",
    "AlreadyRunningError",
    "ChainForgeError",
    "ConfigurationError",
    "FundingError",
    "FundingFailure",
    "InstanceIOError",
    "InsufficientFundsError",
    "InvalidNameError",
    "NodeManagementError",
    "NotRunningError",
    "OtherError",
    "RpcConnectionError",
    "RpcError",
    "RpcResponseError",
    "SerializationError",
    "StartCancelled",
]
