from typing import Optional

import gevent.event
import structlog

from chain_forge.constants import (
    AIRDROP_CONFIRMATION_ATTEMPTS,
    AIRDROP_CONFIRMATION_INTERVAL,
    LAMPORTS_PER_SOL,
)
from chain_forge.exceptions import RpcError
from chain_forge.rpc.base import ChainRpcClient, sleep_unless_cancelled

log = structlog.get_logger(__name__)

CONFIRMED_STATUSES = ("confirmed", "finalized")


def sol_to_lamports(amount: float) -> int:
    return int(round(amount * LAMPORTS_PER_SOL))


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


class SolanaRpcClient(ChainRpcClient):
    """Client for a ``solana-test-validator``.

    Funds are moved exclusively through the validator's faucet.
    """

    backend_name = "Validator"
    currency = "SOL"

    def __init__(
        self,
        url: str,
        confirmation_attempts: int = AIRDROP_CONFIRMATION_ATTEMPTS,
        confirmation_interval: float = AIRDROP_CONFIRMATION_INTERVAL,
        cancel: Optional[gevent.event.Event] = None,
        **kwargs,
    ):
        super(SolanaRpcClient, self).__init__(url, **kwargs)
        self.confirmation_attempts = confirmation_attempts
        self.confirmation_interval = confirmation_interval
        self.cancel = cancel

    def is_ready(self) -> bool:
        try:
            self.rpc.call("getVersion")
        except RpcError:
            return False
        return True

    def get_balance(self, address: str) -> float:
        result = self.rpc.call("getBalance", address, {"commitment": "confirmed"})
        return lamports_to_sol(result["value"])

    def request_airdrop(self, address: str, amount: float) -> str:
        """Request `amount` SOL from the faucet and wait for the airdrop to confirm."""
        signature = self.rpc.call(
            "requestAirdrop", address, sol_to_lamports(amount), {"commitment": "confirmed"}
        )
        self.confirm(signature)
        return signature

    def confirm(self, signature: str) -> None:
        for _ in range(self.confirmation_attempts):
            result = self.rpc.call(
                "getSignatureStatuses", [signature], {"searchTransactionHistory": True}
            )
            status = ((result or {}).get("value") or [None])[0]
            if status:
                if status.get("err"):
                    raise RpcError(f"Transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return
            sleep_unless_cancelled(self.confirmation_interval, self.cancel)
        raise RpcError(f"Transaction {signature} was not confirmed in time")

    def send_to(self, address: str, amount: float, from_address: Optional[str] = None) -> str:
        if from_address is not None:
            raise RpcError("The faucet cannot spend from an account, only airdrop new funds")
        return self.request_airdrop(address, amount)
