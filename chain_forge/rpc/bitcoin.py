from typing import List, Optional

import structlog

from chain_forge.constants import BITCOIN_WALLET_NAME
from chain_forge.exceptions import RpcError
from chain_forge.rpc.base import ChainRpcClient, JSONRPCSession

log = structlog.get_logger(__name__)


class BitcoinRPCSession(JSONRPCSession):
    JSONRPC_VERSION = "1.0"


class BitcoinRpcClient(ChainRpcClient):
    """Client for a ``bitcoind`` regtest node and its funding wallet.

    Node level calls go to the root endpoint, wallet calls to
    ``/wallet/<wallet_name>``.
    """

    backend_name = "Bitcoin node"
    currency = "BTC"

    def __init__(
        self,
        url: str,
        rpc_user: str,
        rpc_password: str,
        wallet_name: str = BITCOIN_WALLET_NAME,
        **kwargs,
    ):
        self.url = url
        self.wallet_name = wallet_name
        self.rpc = BitcoinRPCSession(url, auth=(rpc_user, rpc_password), **kwargs)

    @property
    def wallet_path(self) -> str:
        return f"/wallet/{self.wallet_name}"

    def wallet_call(self, method: str, *params):
        return self.rpc.call(method, *params, path=self.wallet_path)

    def is_ready(self) -> bool:
        try:
            self.rpc.call("getblockchaininfo")
        except RpcError:
            return False
        return True

    def block_count(self) -> int:
        return self.rpc.call("getblockcount")

    def ensure_wallet(self) -> None:
        """Make sure the funding wallet is loaded, creating it if necessary."""
        if self.wallet_name in self.rpc.call("listwallets"):
            return
        try:
            self.rpc.call("loadwallet", self.wallet_name)
        except RpcError:
            log.debug("Creating wallet", wallet=self.wallet_name)
            try:
                self.rpc.call("createwallet", self.wallet_name)
            except RpcError as e:
                raise RpcError(f"Failed to create wallet: {e}") from e

    def new_address(self, label: str = "mining") -> str:
        return self.wallet_call("getnewaddress", label, "bech32")

    def wallet_balance(self) -> float:
        return float(self.wallet_call("getbalance"))

    def mine_blocks(self, count: int, address: str) -> List[str]:
        try:
            return self.rpc.call("generatetoaddress", count, address)
        except RpcError as e:
            raise RpcError(f"Failed to mine {count} block(s): {e}") from e

    def send_to(self, address: str, amount: float, from_address: Optional[str] = None) -> str:
        """Send `amount` to `address` out of the wallet.

        With `from_address`, only the coins of that address are spent and the
        change goes back to it. Its key must have been imported into the wallet.
        """
        amount = round(amount, 8)
        if from_address is None:
            return self.wallet_call("sendtoaddress", address, amount)

        utxos = self.wallet_call("listunspent", 1, 9999999, [from_address])
        available = round(sum(float(utxo["amount"]) for utxo in utxos), 8)
        if available < amount:
            raise RpcError(
                f"Insufficient funds in {from_address}: "
                f"{available} BTC available, {amount} BTC needed"
            )

        options = {
            "inputs": [{"txid": utxo["txid"], "vout": utxo["vout"]} for utxo in utxos],
            "add_inputs": False,
            "change_address": from_address,
        }
        result = self.wallet_call("send", {address: amount}, None, "unset", None, options)
        if not result.get("complete"):
            raise RpcError(f"Wallet could not sign the transfer from {from_address}")
        return result["txid"]

    def import_spend_key(self, address: str, wif: str, label: str) -> None:
        """Import the key of `address` into the wallet as a ``wpkh`` descriptor.

        A failed rescan is expected for fresh addresses on a fresh chain and
        is not treated as an error.
        """
        info = self.rpc.call("getdescriptorinfo", f"wpkh({wif})")
        descriptor = f"wpkh({wif})#{info['checksum']}"
        results = self.wallet_call(
            "importdescriptors", [{"desc": descriptor, "timestamp": "now", "label": label}]
        )
        if not results:
            return
        first = results[0]
        if first.get("success"):
            return
        message = (first.get("error") or {}).get("message", "Unknown error")
        if "Rescan failed" in message:
            log.debug("Ignoring rescan failure of fresh address", address=address)
            return
        raise RpcError(f"Failed to import address {address}: {message}")

    def get_balance(self, address: str) -> float:
        """Return the UTXO total of `address`, independent of wallet state."""
        result = self.rpc.call("scantxoutset", "start", [f"addr({address})"])
        return float(result.get("total_amount", 0.0)) if result else 0.0

    def set_balance(self, address: str, target: float, confirm: bool = True) -> str:
        """Top up `address` to `target`, mining a block to confirm the transfer if requested.

        Balances are read from the UTXO set, so unconfirmed transfers are not visible.
        """
        description = super(BitcoinRpcClient, self).set_balance(address, target)
        if confirm and description.startswith("Added"):
            self.mine_blocks(1, self.new_address("mining"))
        return description
