from typing import Optional

from chain_forge.constants import ChainKind
from chain_forge.rpc.base import ChainRpcClient, JSONRPCSession, TimeOutHTTPAdapter
from chain_forge.rpc.bitcoin import BitcoinRpcClient
from chain_forge.rpc.solana import SolanaRpcClient

__all__ = [
    "BitcoinRpcClient",
    "ChainRpcClient",
    "JSONRPCSession",
    "SolanaRpcClient",
    "TimeOutHTTPAdapter",
    "create_client",
]


def create_client(
    chain: ChainKind,
    url: str,
    rpc_user: Optional[str] = None,
    rpc_password: Optional[str] = None,
    **kwargs,
) -> ChainRpcClient:
    """Build the RPC client matching `chain`."""
    if ChainKind(chain) is ChainKind.BITCOIN:
        return BitcoinRpcClient(url, rpc_user, rpc_password, **kwargs)
    return SolanaRpcClient(url, **kwargs)
